"""
Helpers for validating and ordering the semantic versions used as release tags.
"""

import logging
import re

from packaging.version import InvalidVersion, Version

log = logging.getLogger(__name__)

SENTINEL_VERSION = "0.0.0"

# https://semver.org/#is-there-a-suggested-regular-expression-regex-to-check-a-semver-string
_SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def normalize_version(version: str | None) -> str:
    """Normalize version string by removing 'v' prefix and whitespace."""
    if not version:
        return ""
    return version.strip().lstrip("vV")


def is_valid_version(version: str | None) -> bool:
    return bool(_SEMVER_PATTERN.match(normalize_version(version)))


def _to_comparable(version: str) -> Version:
    match = _SEMVER_PATTERN.match(version)
    if match is None:
        raise InvalidVersion(version)
    major, minor, patch, prerelease, _build = match.groups()
    # build metadata does not take part in the ordering
    core = f"{major}.{minor}.{patch}"
    if prerelease is None:
        return Version(core)
    try:
        parsed = Version(f"{core}-{prerelease}")
    except InvalidVersion:
        parsed = None
    if parsed is None or not parsed.is_prerelease:
        # pre-release identifiers that PEP 440 cannot express (or reads as post-releases) still sort before the release
        return Version(f"{core}rc0")
    return parsed


def is_newer_version(candidate: str | None, installed: str | None) -> bool:
    """
    :param candidate: the version offered by the registry
    :param installed: the installed version
    :return: True if candidate is strictly newer than installed; an invalid candidate is never newer
    """
    candidate_norm = normalize_version(candidate)
    installed_norm = normalize_version(installed) or SENTINEL_VERSION
    try:
        candidate_version = _to_comparable(candidate_norm)
    except InvalidVersion:
        log.warning(f"Ignoring release with invalid version '{candidate}'")
        return False
    try:
        installed_version = _to_comparable(installed_norm)
    except InvalidVersion:
        log.warning(f"Installed version '{installed}' is invalid, treating any valid release as newer")
        return True
    return candidate_version > installed_version
