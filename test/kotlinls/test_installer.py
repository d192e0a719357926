import os
import stat
from pathlib import Path

import pytest
import requests

from kotlinls.ls_config import ServerKind
from kotlinls.ls_exceptions import FileSystemError, MissingAssetError, NetworkError, ParseError
from kotlinls.ls_install_state import InstallRecord, InstallStateStore
from kotlinls.ls_installer import AssetInstaller, InstallOutcome
from test.conftest import (
    FakeRequests,
    FakeResponse,
    RecordingSink,
    asset_url,
    build_server_zip,
    is_windows,
    release_json,
    release_url,
    serve_release,
)

NOW = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    return tmp_path / "langServerInstall"


@pytest.fixture
def installer(install_dir: Path, clock: Clock) -> AssetInstaller:
    return AssetInstaller(ServerKind.LANGUAGE_SERVER, str(install_dir), clock=clock, lock_timeout=5)


def _archive(tmp_path: Path, name: str, libs: tuple[str, ...] = ("kotlin-stdlib-1.9.0.jar", "guava-31.1-jre.jar")) -> bytes:
    return build_server_zip(tmp_path / name, libs=libs)


async def _install_version(installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, tag: str, **kwargs) -> InstallOutcome:
    serve_release(fake_requests, tag, _archive(tmp_path, f"{tag}.zip", **kwargs))
    return await installer.download_server_if_needed()


class TestFreshInstall:
    @pytest.mark.asyncio
    async def test_installs_latest_release(self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, install_dir: Path) -> None:
        serve_release(fake_requests, "1.2.3", _archive(tmp_path, "server.zip"))
        progress = RecordingSink()

        outcome = await installer.download_server_if_needed(progress)

        assert outcome == InstallOutcome.UPDATED
        assert os.path.isfile(installer.executable_path())
        assert installer.executable_path() == str(install_dir / "server" / "bin" / os.path.basename(installer.executable_path()))
        assert installer.installed_record() == InstallRecord("1.2.3", int(NOW * 1000))
        assert fake_requests.called_urls() == [release_url(), asset_url("1.2.3", "server.zip")]

        assert progress.messages[0] == "Downloading Kotlin Language Server 1.2.3..."
        assert "Downloading Kotlin Language Server 1.2.3: 100 %" in progress.messages
        assert progress.messages[-2:] == ["Unpacking Kotlin Language Server 1.2.3...", "Initializing Kotlin Language Server..."]
        # only the package, the state file and the lock file remain
        assert sorted(os.listdir(install_dir)) == [".install.lock", "SERVER-INFO", "server"]

    @pytest.mark.skipif(is_windows, reason="Unix permissions")
    @pytest.mark.asyncio
    async def test_start_script_is_executable(self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        assert os.stat(installer.executable_path()).st_mode & stat.S_IXUSR

    @pytest.mark.asyncio
    async def test_leading_v_of_tag_is_stripped(self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path) -> None:
        await _install_version(installer, fake_requests, tmp_path, "v0.9.0")
        assert installer.installed_record().version == "0.9.0"

    @pytest.mark.asyncio
    async def test_registry_unreachable(self, installer: AssetInstaller, fake_requests: FakeRequests, install_dir: Path) -> None:
        fake_requests.routes[release_url()] = requests.ConnectionError("offline")
        with pytest.raises(NetworkError):
            await installer.download_server_if_needed()
        assert InstallStateStore(str(install_dir)).read().is_absent()

    @pytest.mark.asyncio
    async def test_registry_answers_with_error_status(self, installer: AssetInstaller, fake_requests: FakeRequests) -> None:
        fake_requests.routes[release_url()] = FakeResponse(status_code=403)
        with pytest.raises(NetworkError) as exc_info:
            await installer.download_server_if_needed()
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_malformed_release(self, installer: AssetInstaller, fake_requests: FakeRequests) -> None:
        fake_requests.routes[release_url()] = FakeResponse(json_body={"assets": []})
        with pytest.raises(ParseError):
            await installer.download_server_if_needed()

    @pytest.mark.asyncio
    async def test_missing_asset(self, installer: AssetInstaller, fake_requests: FakeRequests, install_dir: Path) -> None:
        fake_requests.routes[release_url()] = FakeResponse(json_body=release_json("1.2.3", ["adapter.zip", "server.zip.sha256"]))
        with pytest.raises(MissingAssetError) as exc_info:
            await installer.download_server_if_needed()
        assert str(exc_info.value) == "Latest GitHub release for fwcd/kotlin-language-server does not contain the asset 'server.zip'!"
        assert not os.path.exists(installer.package_dir)
        assert InstallStateStore(str(install_dir)).read().is_absent()

    @pytest.mark.asyncio
    async def test_broken_archive(self, installer: AssetInstaller, fake_requests: FakeRequests, install_dir: Path) -> None:
        serve_release(fake_requests, "1.2.3", b"definitely not a zip archive")
        with pytest.raises(FileSystemError):
            await installer.download_server_if_needed()
        assert not os.path.exists(installer.package_dir)
        assert not os.path.exists(install_dir / "download-server.zip")
        assert InstallStateStore(str(install_dir)).read().is_absent()

    @pytest.mark.asyncio
    async def test_archive_without_package_directory(self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path) -> None:
        archive = build_server_zip(tmp_path / "adapter.zip", kind=ServerKind.DEBUG_ADAPTER)
        serve_release(fake_requests, "1.2.3", archive)
        with pytest.raises(FileSystemError):
            await installer.download_server_if_needed()
        assert not os.path.exists(installer.package_dir)

    @pytest.mark.asyncio
    async def test_debug_adapter_layout(self, tmp_path: Path, fake_requests: FakeRequests, clock: Clock) -> None:
        installer = AssetInstaller(ServerKind.DEBUG_ADAPTER, str(tmp_path / "debugAdapterInstall"), clock=clock)
        archive = build_server_zip(tmp_path / "adapter.zip", kind=ServerKind.DEBUG_ADAPTER)
        serve_release(fake_requests, "0.4.4", archive, kind=ServerKind.DEBUG_ADAPTER)
        assert await installer.download_server_if_needed() == InstallOutcome.UPDATED
        assert os.path.isfile(installer.executable_path())
        assert os.path.join("adapter", "bin") in installer.executable_path()


class TestUpdateCheck:
    @pytest.mark.asyncio
    async def test_recent_check_skips_registry(self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        fake_requests.calls.clear()

        clock.advance(100)
        assert await installer.download_server_if_needed() == InstallOutcome.CACHED
        clock.advance(AssetInstaller.UPDATE_CHECK_INTERVAL - 100)
        assert await installer.download_server_if_needed() == InstallOutcome.CACHED
        assert fake_requests.calls == []
        assert installer.installed_record() == InstallRecord("1.2.3", int(NOW * 1000))

    @pytest.mark.asyncio
    async def test_check_without_update_restarts_window(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        fake_requests.calls.clear()

        clock.advance(AssetInstaller.UPDATE_CHECK_INTERVAL + 1)
        assert await installer.download_server_if_needed() == InstallOutcome.UP_TO_DATE
        assert fake_requests.called_urls() == [release_url()]
        assert installer.installed_record() == InstallRecord("1.2.3", int(clock.now * 1000))

        assert await installer.download_server_if_needed() == InstallOutcome.CACHED
        assert len(fake_requests.calls) == 1

    @pytest.mark.asyncio
    async def test_newer_release_replaces_package(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3", libs=("server-1.2.3.jar", "guava-30.0-jre.jar"))
        clock.advance(3600)

        outcome = await _install_version(installer, fake_requests, tmp_path, "1.3.0", libs=("server-1.3.0.jar", "guava-31.1-jre.jar"))

        assert outcome == InstallOutcome.UPDATED
        assert installer.installed_record().version == "1.3.0"
        assert sorted(os.listdir(os.path.join(installer.package_dir, "lib"))) == ["guava-31.1-jre.jar", "server-1.3.0.jar"]
        assert installer.corruption_detector.inspect(installer.package_dir) is None

    @pytest.mark.asyncio
    async def test_older_release_is_ignored(self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.3.0")
        clock.advance(3600)
        fake_requests.calls.clear()
        serve_release(fake_requests, "1.2.9", _archive(tmp_path, "old.zip"))

        assert await installer.download_server_if_needed() == InstallOutcome.UP_TO_DATE
        assert installer.installed_record().version == "1.3.0"
        assert fake_requests.called_urls() == [release_url()]

    @pytest.mark.asyncio
    async def test_release_with_invalid_tag_is_ignored(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.3.0")
        clock.advance(3600)
        serve_release(fake_requests, "nightly", _archive(tmp_path, "nightly.zip"))

        assert await installer.download_server_if_needed() == InstallOutcome.UP_TO_DATE
        assert installer.installed_record().version == "1.3.0"

    @pytest.mark.asyncio
    async def test_corrupt_install_is_reinstalled(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        stray = Path(installer.package_dir) / "lib" / "guava-30.0-jre.jar"
        stray.write_bytes(b"left over from an older install")
        assert installer.corruption_detector.inspect(installer.package_dir) is not None
        clock.advance(AssetInstaller.UPDATE_CHECK_INTERVAL + 1)
        fake_requests.calls.clear()

        assert await installer.download_server_if_needed() == InstallOutcome.UPDATED

        assert not stray.exists()
        assert installer.corruption_detector.inspect(installer.package_dir) is None
        assert fake_requests.called_urls() == [release_url(), asset_url("1.2.3", "server.zip")]
        assert installer.installed_record() == InstallRecord("1.2.3", int(clock.now * 1000))

    @pytest.mark.asyncio
    async def test_corruption_is_not_detected_within_check_window(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        (Path(installer.package_dir) / "lib" / "guava-30.0-jre.jar").write_bytes(b"stray")
        clock.advance(10)
        assert await installer.download_server_if_needed() == InstallOutcome.CACHED


class TestOfflineTolerance:
    @pytest.mark.asyncio
    async def test_unreachable_registry_keeps_existing_install(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        record = installer.installed_record()
        clock.advance(3600)
        fake_requests.routes[release_url()] = requests.ConnectionError("offline")

        assert await installer.download_server_if_needed() == InstallOutcome.OFFLINE
        assert installer.installed_record() == record
        assert os.path.isfile(installer.executable_path())

    @pytest.mark.asyncio
    async def test_malformed_registry_answer_keeps_existing_install(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        clock.advance(3600)
        fake_requests.routes[release_url()] = FakeResponse(content=b"<html>")
        assert await installer.download_server_if_needed() == InstallOutcome.OFFLINE

    @pytest.mark.asyncio
    async def test_failed_download_keeps_existing_install(
        self, installer: AssetInstaller, fake_requests: FakeRequests, tmp_path: Path, clock: Clock
    ) -> None:
        await _install_version(installer, fake_requests, tmp_path, "1.2.3")
        record = installer.installed_record()
        clock.advance(3600)
        fake_requests.routes[release_url()] = FakeResponse(json_body=release_json("1.3.0", ["server.zip"]))
        fake_requests.routes[asset_url("1.3.0", "server.zip")] = FakeResponse(status_code=502)

        assert await installer.download_server_if_needed() == InstallOutcome.OFFLINE
        assert installer.installed_record() == record
        assert os.path.isfile(installer.executable_path())

    @pytest.mark.asyncio
    async def test_state_without_package_counts_as_not_installed(
        self, installer: AssetInstaller, fake_requests: FakeRequests, install_dir: Path
    ) -> None:
        InstallStateStore(str(install_dir)).write(InstallRecord("1.2.3", 0))
        fake_requests.routes[release_url()] = requests.ConnectionError("offline")
        with pytest.raises(NetworkError):
            await installer.download_server_if_needed()
