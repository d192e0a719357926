"""
Client for the release registry (the GitHub releases API).
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field

import requests

from kotlinls.ls_exceptions import NetworkError, ParseError
from kotlinls.util.versions import normalize_version

log = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_USER_AGENT = "vscode-kotlin-ide"
NETWORK_TIMEOUT = 10


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    download_url: str


@dataclass(frozen=True)
class ReleaseDescriptor:
    tag: str
    assets: list[ReleaseAsset] = field(default_factory=list)

    @property
    def version(self) -> str:
        """the tag without a leading 'v'"""
        return normalize_version(self.tag)

    def find_asset(self, name: str) -> ReleaseAsset | None:
        for asset in self.assets:
            if asset.name == name:
                return asset
        return None

    @classmethod
    def from_json(cls, data: object) -> "ReleaseDescriptor":
        """
        Builds the descriptor from the body of a GitHub "latest release" response.
        """
        if not isinstance(data, dict):
            raise ParseError(f"Expected a JSON object describing a release, got {type(data).__name__}")
        tag = data.get("tag_name")
        if not isinstance(tag, str) or not tag.strip():
            raise ParseError("Release does not have a tag_name")
        raw_assets = data.get("assets", [])
        if not isinstance(raw_assets, list):
            raise ParseError("Release assets are not a list")
        assets = []
        for raw_asset in raw_assets:
            if not isinstance(raw_asset, dict):
                raise ParseError(f"Invalid release asset: {raw_asset!r}")
            name = raw_asset.get("name")
            url = raw_asset.get("browser_download_url")
            if not isinstance(name, str) or not isinstance(url, str):
                raise ParseError(f"Release asset without name or download URL: {raw_asset!r}")
            assets.append(ReleaseAsset(name, url))
        return cls(tag.strip(), assets)


class ReleaseMetadataClient:
    """
    Queries the latest published release of a GitHub project. Performs no retries; callers decide how
    tolerant to be.
    """

    def __init__(self, api_url: str = GITHUB_API_URL, user_agent: str = DEFAULT_USER_AGENT, timeout: float = NETWORK_TIMEOUT) -> None:
        self.api_url = api_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout

    def latest_release_url(self, project_id: str) -> str:
        """
        :param project_id: the GitHub project in the form `org/name`
        """
        return f"{self.api_url}/repos/{project_id}/releases/latest"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json", "User-Agent": self.user_agent}
        # Support GITHUB_TOKEN for CI environments with rate limits
        github_token = os.environ.get("GITHUB_TOKEN")
        if github_token:
            headers["Authorization"] = f"token {github_token}"
        return headers

    def fetch_latest_release(self, project_id: str) -> ReleaseDescriptor:
        url = self.latest_release_url(project_id)
        log.info(f"Querying GitHub API for the latest release of {project_id}")
        try:
            response = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Could not reach {url}", url=url, cause=e) from e
        if not 200 <= response.status_code < 300:
            raise NetworkError(f"Request to {url} failed with HTTP {response.status_code}", url=url, status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"Response from {url} is not valid JSON", cause=e) from e
        release = ReleaseDescriptor.from_json(data)
        log.debug(f"Latest release of {project_id}: {release.tag} with assets {[a.name for a in release.assets]}")
        return release

    async def fetch_latest_release_async(self, project_id: str) -> ReleaseDescriptor:
        return await asyncio.to_thread(self.fetch_latest_release, project_id)
