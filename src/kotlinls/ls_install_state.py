"""
Persistence of the version stamp of an install directory (what is installed and when the registry was last asked).
"""

import json
import logging
import math
import os
import tempfile
from dataclasses import dataclass

from kotlinls.ls_exceptions import FileSystemError
from kotlinls.util.versions import SENTINEL_VERSION, is_valid_version, normalize_version

log = logging.getLogger(__name__)

SERVER_INFO_FILENAME = "SERVER-INFO"


@dataclass(frozen=True)
class InstallRecord:
    version: str
    last_check: float
    """
    epoch milliseconds of the last registry check; -inf for an absent record
    """

    @classmethod
    def absent(cls) -> "InstallRecord":
        return cls(SENTINEL_VERSION, -math.inf)

    def is_absent(self) -> bool:
        return self.version == SENTINEL_VERSION and self.last_check == -math.inf

    def seconds_since_last_check(self, now_millis: float) -> float:
        return (now_millis - self.last_check) / 1000

    def to_json_dict(self) -> dict:
        return {"version": self.version, "lastUpdate": int(self.last_check)}


class InstallStateStore:
    """
    Reads and writes the `SERVER-INFO` file of an install directory.
    """

    def __init__(self, install_dir: str, filename: str = SERVER_INFO_FILENAME) -> None:
        self.install_dir = install_dir
        self.path = os.path.join(install_dir, filename)

    def read(self) -> InstallRecord:
        """
        :return: the stored record or InstallRecord.absent() if the file is missing, unreadable or holds an invalid version
        """
        if not os.path.exists(self.path):
            return InstallRecord.absent()
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning(f"Could not read install state from {self.path}: {e}")
            return InstallRecord.absent()
        if not isinstance(data, dict):
            return InstallRecord.absent()
        version = data.get("version")
        last_update = data.get("lastUpdate")
        if not isinstance(version, str) or not is_valid_version(version):
            log.warning(f"Ignoring install state with invalid version {version!r}")
            return InstallRecord.absent()
        if isinstance(last_update, bool) or not isinstance(last_update, int | float):
            last_update = -math.inf
        return InstallRecord(normalize_version(version), last_update)

    def write(self, record: InstallRecord) -> None:
        """
        Replaces the stored record; the file is either fully written or left untouched.
        """
        os.makedirs(self.install_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".server-info-", dir=self.install_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_json_dict(), f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise FileSystemError(f"Failed to write install state to {self.path}", cause=e) from e
        log.debug(f"Stored install state {record} in {self.path}")
