import io
import json
import logging
import os
import platform
import stat
import sys
import zipfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import requests
from sensai.util.logging import configure

from kotlinls.ls_config import ServerKind
from kotlinls.ls_utils import PlatformUtils

configure(level=logging.INFO)

log = logging.getLogger(__name__)

is_windows = platform.system() == "Windows"

GITHUB_API_URL = "https://api.github.com"
ASSET_BASE_URL = "https://github.com/fwcd/kotlin-language-server/releases/download"


def release_url(kind: ServerKind = ServerKind.LANGUAGE_SERVER) -> str:
    return f"{GITHUB_API_URL}/repos/{kind.github_project}/releases/latest"


def asset_url(tag: str, asset_name: str) -> str:
    return f"{ASSET_BASE_URL}/{tag}/{asset_name}"


def release_json(tag: str, asset_names: list[str]) -> dict[str, Any]:
    return {
        "tag_name": tag,
        "name": tag,
        "assets": [{"name": name, "browser_download_url": asset_url(tag, name)} for name in asset_names],
    }


def build_server_zip(
    zip_path: Path,
    kind: ServerKind = ServerKind.LANGUAGE_SERVER,
    libs: tuple[str, ...] = ("kotlin-stdlib-1.9.0.jar", "guava-31.1-jre.jar"),
    script: str = "#!/bin/sh\necho started\n",
) -> bytes:
    """
    Creates a release archive laid out like the published ones (`<subpath>/bin/<script>` and `<subpath>/lib/*.jar`).

    :return: the bytes of the archive
    """
    with zipfile.ZipFile(zip_path, "w") as zf:
        info = zipfile.ZipInfo(f"{kind.package_subpath}/bin/{PlatformUtils.script_name(kind.executable_name)}")
        info.create_system = 3
        info.external_attr = (stat.S_IFREG | 0o755) << 16
        zf.writestr(info, script)
        for lib in libs:
            zf.writestr(f"{kind.package_subpath}/lib/{lib}", b"PK fake jar")
    return zip_path.read_bytes()


class FakeResponse:
    """
    Stands in for `requests.Response` (JSON bodies and streamed downloads).
    """

    def __init__(self, status_code: int = 200, json_body: Any = None, content: bytes = b"", send_content_length: bool = True) -> None:
        self.status_code = status_code
        self.content = content if json_body is None else json.dumps(json_body).encode()
        self.headers = {"Content-Length": str(len(self.content))} if send_content_length else {}

    def json(self) -> Any:
        return json.loads(self.content.decode())

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        stream = io.BytesIO(self.content)
        while chunk := stream.read(chunk_size):
            yield chunk

    def close(self) -> None:
        pass

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class FakeRequests:
    """
    Replacement for `requests.get` answering from a URL table; a table entry may also be an exception to raise.
    """

    def __init__(self, routes: dict[str, FakeResponse | Exception] | None = None) -> None:
        self.routes = routes or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs))
        if url not in self.routes:
            raise requests.ConnectionError(f"No route to {url}")
        answer = self.routes[url]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def called_urls(self) -> list[str]:
        return [url for url, _ in self.calls]


def serve_release(fake: FakeRequests, tag: str, archive: bytes, kind: ServerKind = ServerKind.LANGUAGE_SERVER) -> None:
    fake.routes[release_url(kind)] = FakeResponse(json_body=release_json(tag, [kind.asset_name]))
    fake.routes[asset_url(tag, kind.asset_name)] = FakeResponse(content=archive)


FAKE_SERVER_SCRIPT = """#!{python}
import os
import signal
import socket
import sys
import time

mode = os.environ.get("FAKE_SERVER_MODE", "echo")
sys.stderr.write("fake server starting\\n")
sys.stderr.write("JAVA_HOME=" + os.environ.get("JAVA_HOME", "") + "\\n")
sys.stderr.write("opts=" + os.environ.get("KOTLIN_LANGUAGE_SERVER_OPTS", "") + "\\n")
sys.stderr.flush()
if mode == "exit":
    sys.stderr.write("fatal: cannot start\\n")
    sys.exit(3)
if mode == "hang":
    time.sleep(600)
if mode == "ignore-term":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

if "--tcpClientPort" in sys.argv:
    port = int(sys.argv[sys.argv.index("--tcpClientPort") + 1])
    sock = socket.create_connection(("127.0.0.1", port))
    print("connected to port %d" % port, flush=True)
    reader = sock.makefile("rb")
    writer = sock.makefile("wb")
else:
    reader = sys.stdin.buffer
    writer = sys.stdout.buffer

for line in reader:
    if mode == "exit-on-input":
        sys.exit(5)
    writer.write(line)
    writer.flush()

if mode == "ignore-term":
    time.sleep(600)
"""


def write_fake_server(path: Path) -> str:
    """
    Writes an executable server stand-in that echoes lines over its channel (stdio, or TCP with `--tcpClientPort`).
    Its behaviour is selected with the environment variable FAKE_SERVER_MODE.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FAKE_SERVER_SCRIPT.replace("{python}", sys.executable))
    os.chmod(path, 0o755)
    return str(path)


@pytest.fixture
def fake_requests() -> Iterator[FakeRequests]:
    fake = FakeRequests()
    with patch("requests.get", fake):
        yield fake


@pytest.fixture
def fake_server(tmp_path: Path) -> str:
    return write_fake_server(tmp_path / "fake-server")


class RecordingSink:
    """Collects the messages passed to a sink."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    def __call__(self, msg: str) -> None:
        self.messages.append(msg)
