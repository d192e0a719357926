"""
Installs and updates a server package published as a GitHub release asset.

Update strategy:
- The registry is asked at most once per UPDATE_CHECK_INTERVAL; the time of the last check is part of the
  persisted install record (`SERVER-INFO`), so the window survives restarts
- A newer release or a corrupt installation triggers a download of the release asset
- The registry being unreachable never blocks a working installation
- Installs into the same directory are mutually exclusive (in-process and across processes)
"""

import asyncio
import logging
import os
import time
from collections.abc import Callable
from enum import Enum

from sensai.util.logging import LogTime

from kotlinls.ls_config import ServerKind
from kotlinls.ls_exceptions import FileSystemError, MissingAssetError, NetworkError, ParseError
from kotlinls.ls_install_state import InstallRecord, InstallStateStore
from kotlinls.ls_release import ReleaseAsset, ReleaseMetadataClient
from kotlinls.ls_utils import FileUtils, PlatformUtils
from kotlinls.util.install_integrity import CorruptionDetector
from kotlinls.util.install_lock import DEFAULT_LOCK_TIMEOUT, InstallDirectoryLock
from kotlinls.util.versions import is_newer_version

log = logging.getLogger(__name__)

ProgressSink = Callable[[str], None]


class InstallOutcome(Enum):
    CACHED = "cached"
    """The last check is recent enough; the registry was not asked."""
    OFFLINE = "offline"
    """The registry (or the download) failed, the existing installation is used."""
    UP_TO_DATE = "up_to_date"
    """The registry was asked and the installation is current and intact."""
    UPDATED = "updated"
    """A release was downloaded and extracted."""


def _ignore_progress(msg: str) -> None:
    pass


class AssetInstaller:
    """
    Keeps the package of one server kind in its install directory current.
    """

    UPDATE_CHECK_INTERVAL = 480
    """seconds during which a previous registry check is trusted"""

    def __init__(
        self,
        kind: ServerKind,
        install_dir: str,
        release_client: ReleaseMetadataClient | None = None,
        corruption_detector: CorruptionDetector | None = None,
        clock: Callable[[], float] = time.time,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        """
        :param kind: the server kind, defining the GitHub project, asset name and package layout
        :param install_dir: the directory owning the extracted package and its state file
        :param clock: returns the current time in epoch seconds
        """
        self.kind = kind
        self.install_dir = install_dir
        self.release_client = release_client or ReleaseMetadataClient()
        self.corruption_detector = corruption_detector or CorruptionDetector()
        self.state_store = InstallStateStore(install_dir)
        self._clock = clock
        self._lock_timeout = lock_timeout

    @property
    def package_dir(self) -> str:
        return os.path.join(self.install_dir, self.kind.package_subpath)

    def executable_path(self) -> str:
        return os.path.join(self.package_dir, "bin", PlatformUtils.script_name(self.kind.executable_name))

    def installed_record(self) -> InstallRecord:
        return self.state_store.read()

    def _now_millis(self) -> int:
        return int(self._clock() * 1000)

    def _has_prior_install(self, record: InstallRecord) -> bool:
        return not record.is_absent() and os.path.isfile(self.executable_path())

    async def download_server_if_needed(self, progress_sink: ProgressSink | None = None) -> InstallOutcome:
        """
        Checks the registry (unless checked recently) and installs the latest release if it is newer than the
        installed one or if the installation is corrupt.

        :param progress_sink: receives human-readable progress messages
        :raises NetworkError: if the registry cannot be reached and nothing is installed yet
        :raises ParseError: if the registry answer is malformed and nothing is installed yet
        :raises MissingAssetError: if an install is needed but the release lacks the expected asset
        :raises FileSystemError: if the package cannot be written
        """
        progress_sink = progress_sink or _ignore_progress
        async with InstallDirectoryLock(self.install_dir, timeout=self._lock_timeout):
            record = await asyncio.to_thread(self.state_store.read)
            seconds_since_last_check = record.seconds_since_last_check(self._now_millis())
            if seconds_since_last_check <= self.UPDATE_CHECK_INTERVAL:
                log.debug(f"Registry checked {seconds_since_last_check:.0f}s ago, using installed {self.kind.display_name} {record.version}")
                return InstallOutcome.CACHED

            prior_install = self._has_prior_install(record)
            try:
                release = await self.release_client.fetch_latest_release_async(self.kind.github_project)
            except (NetworkError, ParseError) as e:
                if not prior_install:
                    raise
                log.warning(f"Could not check for {self.kind.display_name} updates, using installed version {record.version}: {e}")
                return InstallOutcome.OFFLINE

            needs_update = is_newer_version(release.version, record.version)
            corruption = await asyncio.to_thread(self.corruption_detector.inspect, self.package_dir)
            new_version = record.version
            outcome = InstallOutcome.UP_TO_DATE

            if needs_update or corruption is not None:
                if needs_update:
                    log.info(f"New {self.kind.display_name} version available: {release.version} (installed: {record.version})")
                else:
                    log.info(f"Reinstalling {self.kind.display_name} {release.version}: {corruption}")
                asset = release.find_asset(self.kind.asset_name)
                if asset is None:
                    raise MissingAssetError(self.kind.github_project, self.kind.asset_name)
                try:
                    await self._install(asset, release.version, progress_sink)
                except NetworkError as e:
                    if prior_install and corruption is None:
                        log.warning(f"Download of {self.kind.display_name} {release.version} failed, keeping version {record.version}: {e}")
                        return InstallOutcome.OFFLINE
                    raise
                new_version = release.version
                outcome = InstallOutcome.UPDATED
            else:
                log.debug(f"{self.kind.display_name} is up to date: {record.version}")

            # written even if nothing was downloaded, restarting the check window
            await asyncio.to_thread(self.state_store.write, InstallRecord(new_version, self._now_millis()))
            return outcome

    async def _install(self, asset: ReleaseAsset, version: str, progress_sink: ProgressSink) -> None:
        name = self.kind.display_name
        loop = asyncio.get_running_loop()
        os.makedirs(self.install_dir, exist_ok=True)
        download_dest = os.path.join(self.install_dir, f"download-{asset.name}")

        def on_download_progress(fraction: float) -> None:
            loop.call_soon_threadsafe(progress_sink, f"Downloading {name} {version}: {round(fraction * 100)} %")

        try:
            progress_sink(f"Downloading {name} {version}...")
            with LogTime(f"Download of {asset.download_url}", logger=log):
                await asyncio.to_thread(
                    FileUtils.download_file, asset.download_url, download_dest, on_download_progress, self.release_client.user_agent
                )
            progress_sink(f"Unpacking {name} {version}...")
            with LogTime(f"Extraction of {asset.name}", logger=log):
                await asyncio.to_thread(self._replace_package, download_dest)
        finally:
            if os.path.exists(download_dest):
                try:
                    os.remove(download_dest)
                except OSError as e:
                    log.warning(f"Could not remove downloaded archive {download_dest}: {e}")
        progress_sink(f"Initializing {name}...")

    def _replace_package(self, archive_path: str) -> None:
        """
        Removes the previously extracted package and extracts the archive in its place.
        A failed extraction leaves no partially written package behind.
        """
        FileUtils.remove_tree(self.package_dir)
        try:
            FileUtils.extract_zip(archive_path, self.install_dir)
            if not os.path.isdir(self.package_dir):
                raise FileSystemError(f"Archive {os.path.basename(archive_path)} does not contain the directory '{self.kind.package_subpath}'")
        except FileSystemError:
            log.error(f"Extraction into {self.install_dir} failed, removing partially extracted package")
            try:
                FileUtils.remove_tree(self.package_dir)
            except FileSystemError as cleanup_error:
                log.error(f"Cleanup failed: {cleanup_error}")
            raise
        PlatformUtils.make_executable(self.executable_path())
