"""
This file contains various utility functions like downloads, archive extraction and platform handling.
"""

import logging
import os
import platform
import shutil
import stat
import zipfile
from collections.abc import Callable

import requests

from kotlinls.ls_exceptions import FileSystemError, NetworkError

log = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 60
DOWNLOAD_CHUNK_SIZE = 64 * 1024
ZIP_SYSTEM_UNIX = 3  # zip file created on Unix system


class FileUtils:
    """
    Utility functions for file operations.
    """

    @staticmethod
    def download_file(url: str, target_path: str, progress: Callable[[float], None] | None = None, user_agent: str | None = None) -> None:
        """
        Downloads the file from the given URL to the given {target_path}.

        :param progress: called with the completed fraction (0.0 to 1.0) whenever it changes by at least one percent;
            only called if the server announces the content length
        """
        os.makedirs(os.path.dirname(target_path), exist_ok=True)
        headers = {"User-Agent": user_agent} if user_agent else None
        try:
            response = requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT, headers=headers)
        except requests.RequestException as exc:
            log.error(f"Error downloading file '{url}': {exc}")
            raise NetworkError(f"Error downloading file '{url}'", url=url, cause=exc) from exc
        with response:
            if response.status_code != 200:
                log.error(f"Error downloading file '{url}': {response.status_code}")
                raise NetworkError(f"Error downloading file '{url}': HTTP {response.status_code}", url=url, status_code=response.status_code)
            total = int(response.headers.get("Content-Length") or 0)
            received = 0
            last_percent = -1
            try:
                with open(target_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        received += len(chunk)
                        if progress is not None and total > 0:
                            percent = min(100, received * 100 // total)
                            if percent != last_percent:
                                last_percent = percent
                                progress(percent / 100)
            except requests.RequestException as exc:
                log.error(f"Error downloading file '{url}': {exc}")
                raise NetworkError(f"Download of '{url}' was interrupted", url=url, cause=exc) from exc
            except OSError as exc:
                raise FileSystemError(f"Could not write download to {target_path}", cause=exc) from exc
        log.debug(f"Downloaded {received} bytes from {url} to {target_path}")

    @staticmethod
    def _is_safe_member(name: str, target_dir: str) -> bool:
        """Check if an archive member stays inside the target directory (prevent path traversal attack)."""
        if ".." in name.split("/") or ".." in name.split("\\"):
            return False
        abs_target = os.path.abspath(target_dir)
        abs_member = os.path.abspath(os.path.join(target_dir, name))
        return abs_member.startswith(abs_target + os.sep) or abs_member == abs_target

    @classmethod
    def extract_zip(cls, archive_path: str, target_dir: str) -> list[str]:
        """
        Extracts the zip archive into {target_dir}, preserving Unix permissions.

        :return: the names of the top-level entries of the archive
        """
        os.makedirs(target_dir, exist_ok=True)
        top_level: list[str] = []
        try:
            with zipfile.ZipFile(archive_path, "r") as zip_ref:
                for zip_info in zip_ref.infolist():
                    if not cls._is_safe_member(zip_info.filename, target_dir):
                        raise FileSystemError(f"Unsafe zip member detected (path traversal): {zip_info.filename}")
                for zip_info in zip_ref.infolist():
                    extracted_path = zip_ref.extract(zip_info, target_dir)
                    top = zip_info.filename.replace("\\", "/").split("/")[0]
                    if top and top not in top_level:
                        top_level.append(top)
                    if zip_info.create_system != ZIP_SYSTEM_UNIX:
                        continue
                    # extractall() does not preserve permissions
                    # see. https://github.com/python/cpython/issues/59999
                    attrs = (zip_info.external_attr >> 16) & 0o777
                    if attrs:
                        os.chmod(extracted_path, attrs)
        except zipfile.BadZipFile as exc:
            raise FileSystemError(f"Archive {archive_path} is not a valid zip file", cause=exc) from exc
        except OSError as exc:
            raise FileSystemError(f"Error extracting archive {archive_path} to {target_dir}", cause=exc) from exc
        return top_level

    @staticmethod
    def remove_tree(path: str) -> None:
        if not os.path.exists(path):
            return
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except OSError as exc:
            raise FileSystemError(f"Could not remove {path}", cause=exc) from exc


class PlatformUtils:
    """
    This class provides utilities for platform detection and platform-specific file names.
    """

    @staticmethod
    def is_windows() -> bool:
        return platform.system() == "Windows"

    @classmethod
    def script_name(cls, name: str) -> str:
        """
        :return: the file name of the start script generated for {name} (`.bat` on Windows)
        """
        return name + (".bat" if cls.is_windows() else "")

    @classmethod
    def binary_name(cls, name: str) -> str:
        return name + (".exe" if cls.is_windows() else "")

    @classmethod
    def make_executable(cls, path: str) -> None:
        """
        Ensures the owner, group and others may execute the file; no-op on Windows.
        """
        if cls.is_windows() or not os.path.isfile(path):
            return
        mode = os.stat(path).st_mode
        wanted = mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
        if wanted != mode:
            try:
                os.chmod(path, wanted)
            except OSError as e:
                log.warning(f"Could not make {path} executable: {e}")


class JavaUtils:
    """
    Locates the Java runtime needed by the start scripts.
    """

    @staticmethod
    def _find_in_java_home(java_home: str, binname: str) -> str | None:
        for candidate_home in java_home.split(os.pathsep):
            if not candidate_home:
                continue
            binpath = os.path.join(candidate_home, "bin", binname)
            if os.path.isfile(binpath):
                return binpath
        return None

    @classmethod
    def find_java_executable(cls, java_home: str | None = None) -> str | None:
        """
        Searches the given java_home (a path list), then $JAVA_HOME, then PATH.

        :return: the path to the java executable or None if none was found
        """
        binname = PlatformUtils.binary_name("java")

        if java_home:
            log.debug(f"Looking for Java in configured java home: {java_home}")
            candidate = cls._find_in_java_home(java_home, binname)
            if candidate is not None:
                return candidate

        env_java_home = os.environ.get("JAVA_HOME")
        if env_java_home:
            log.debug(f"Looking for Java in JAVA_HOME (environment variable): {env_java_home}")
            candidate = cls._find_in_java_home(env_java_home, binname)
            if candidate is not None:
                return candidate

        log.debug("Looking for Java in PATH")
        return shutil.which(binname)

    @staticmethod
    def java_home_of(java_executable: str) -> str:
        """
        :return: the JDK directory containing `bin/java`, following symlinks (e.g. /usr/bin/java)
        """
        return os.path.dirname(os.path.dirname(os.path.realpath(java_executable)))
