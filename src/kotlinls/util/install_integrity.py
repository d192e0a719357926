"""
Utilities for detecting structural damage of an extracted server package.

A package extracted over an older one (or an interrupted extraction) can leave two versions of the same
library in `lib`. The start script puts every jar in `lib` on the classpath, so duplicates collide at runtime.
Damage detected here is never an error; it only forces a reinstall on the next check.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum

log = logging.getLogger(__name__)

LIB_DIR_NAME = "lib"

# the version segment starts at the first dash that is followed by a digit, e.g. kotlin-stdlib-jdk8-1.9.0
_VERSION_SEGMENT = re.compile(r"-\d.*$")


class InstallIntegrityStatus(Enum):
    """Status of an extracted package directory."""

    OK = "ok"
    MISSING_LIB_DIR = "missing_lib_dir"
    DUPLICATE_LIBRARIES = "duplicate_libraries"


@dataclass
class InstallIntegrityReport:
    status: InstallIntegrityStatus
    reason: str | None = None

    def is_corrupt(self) -> bool:
        return self.status != InstallIntegrityStatus.OK


def library_prefix(filename: str) -> str:
    """
    Strips the extension and the trailing version segment from a library file name.

    >>> library_prefix("guava-31.1-jre.jar")
    'guava'
    """
    stem, _ext = os.path.splitext(filename)
    return _VERSION_SEGMENT.sub("", stem)


def check_install_integrity(package_dir: str) -> InstallIntegrityReport:
    """
    :param package_dir: the extracted package directory (containing `bin` and `lib`)
    :return: the first problem found, or an OK report
    """
    lib_dir = os.path.join(package_dir, LIB_DIR_NAME)
    if not os.path.isdir(lib_dir):
        return InstallIntegrityReport(InstallIntegrityStatus.MISSING_LIB_DIR, f"Library directory {lib_dir} is missing")

    seen: dict[str, str] = {}
    for filename in sorted(os.listdir(lib_dir)):
        if not os.path.isfile(os.path.join(lib_dir, filename)):
            continue
        prefix = library_prefix(filename)
        if prefix in seen:
            return InstallIntegrityReport(
                InstallIntegrityStatus.DUPLICATE_LIBRARIES,
                f"Duplicate libraries in {lib_dir}: {seen[prefix]} and {filename}",
            )
        seen[prefix] = filename
    return InstallIntegrityReport(InstallIntegrityStatus.OK)


class CorruptionDetector:
    """
    Inspects an install directory for damage that would break the server at runtime.
    """

    def inspect(self, package_dir: str) -> str | None:
        """
        :return: the reason the package is considered corrupt, or None if it looks intact
        """
        report = check_install_integrity(package_dir)
        if report.is_corrupt():
            log.info(f"Installation at {package_dir} is corrupt: {report.reason}")
            return report.reason
        return None
