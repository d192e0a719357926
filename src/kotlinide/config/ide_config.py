"""
Configuration of the Kotlin IDE backend: where servers are installed and how each server kind is launched
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Self

import yaml
from sensai.util import logging
from sensai.util.string import ToStringMixin

from kotlinide.constants import CONFIG_FILENAME, KOTLIN_IDE_FILE_ENCODING, KOTLIN_IDE_HOME_ENV_VAR, KOTLIN_IDE_MANAGED_DIR_NAME
from kotlinls.ls_config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DEBUG_ATTACH_PORT,
    DebugAttachConfig,
    ServerConfig,
    ServerKind,
    TransportConfig,
    TransportKind,
)

log = logging.getLogger(__name__)


class KotlinIdePaths:
    """
    Provides the paths of the directories and files managed by the Kotlin IDE backend.
    """

    def __init__(self, home_dir: str | None = None) -> None:
        if home_dir is None:
            home_dir = os.getenv(KOTLIN_IDE_HOME_ENV_VAR)
        if home_dir is None or home_dir.strip() == "":
            home_dir = str(Path.home() / KOTLIN_IDE_MANAGED_DIR_NAME)
        else:
            home_dir = home_dir.strip()
        self.home_dir: str = home_dir
        """
        the storage directory; ~/.kotlin-ide by default, overridden via the KOTLIN_IDE_HOME environment variable
        """

    @property
    def config_file(self) -> str:
        return os.path.join(self.home_dir, CONFIG_FILENAME)

    def install_dir(self, kind: ServerKind) -> str:
        return os.path.join(self.home_dir, kind.install_dir_name)


def _config_key(kind: ServerKind) -> str:
    match kind:
        case ServerKind.LANGUAGE_SERVER:
            return "languageServer"
        case ServerKind.DEBUG_ADAPTER:
            return "debugAdapter"
    raise ValueError(f"Unhandled server kind: {kind}")


def _parse_transport(data: dict[str, Any], section: str) -> TransportConfig:
    transport_str = str(data.get("transport", TransportKind.STDIO.value)).strip().lower()
    port = int(data.get("port", 0) or 0)
    if transport_str == TransportKind.TCP.value:
        return TransportConfig.tcp(port)
    if transport_str != TransportKind.STDIO.value:
        log.warning(f"Unknown transport '{transport_str}' in section '{section}', using stdio")
    return TransportConfig.stdio()


def _parse_server_config(data: dict[str, Any] | None, section: str) -> ServerConfig:
    if not data:
        return ServerConfig()
    if not isinstance(data, dict):
        raise ValueError(f"Section '{section}' must be a mapping, got {type(data).__name__}")
    debug_attach_data = data.get("debugAttach") or {}
    debug_attach = DebugAttachConfig(
        enabled=bool(debug_attach_data.get("enabled", False)),
        auto_suspend=bool(debug_attach_data.get("autoSuspend", False)),
        port=int(debug_attach_data.get("port", DEFAULT_DEBUG_ATTACH_PORT)),
    )
    server_path = data.get("path") or None
    java_home = data.get("javaHome") or None
    return ServerConfig(
        server_path=os.path.expanduser(server_path) if server_path else None,
        transport=_parse_transport(data, section),
        debug_attach=debug_attach,
        java_home=java_home,
        connect_timeout=float(data.get("connectTimeout", DEFAULT_CONNECT_TIMEOUT)),
    )


@dataclass(kw_only=True)
class KotlinIdeConfig(ToStringMixin):
    home_dir: str = field(default_factory=lambda: KotlinIdePaths().home_dir)
    language_server: ServerConfig = field(default_factory=ServerConfig)
    debug_adapter: ServerConfig = field(default_factory=ServerConfig)

    @property
    def paths(self) -> KotlinIdePaths:
        return KotlinIdePaths(self.home_dir)

    def server_config(self, kind: ServerKind) -> ServerConfig:
        match kind:
            case ServerKind.LANGUAGE_SERVER:
                return self.language_server
            case ServerKind.DEBUG_ADAPTER:
                return self.debug_adapter
        raise ValueError(f"Unhandled server kind: {kind}")

    @classmethod
    def from_dict(cls, data: dict[str, Any], home_dir: str | None = None) -> Self:
        """
        :param data: the configuration as read from YAML, with the sections `languageServer` and `debugAdapter`
        :param home_dir: the storage directory; if None, `storagePath` from the data or the default path is used
        """
        if home_dir is None:
            home_dir = data.get("storagePath") or KotlinIdePaths().home_dir
        return cls(
            home_dir=os.path.expanduser(home_dir),
            language_server=_parse_server_config(data.get(_config_key(ServerKind.LANGUAGE_SERVER)), "languageServer"),
            debug_adapter=_parse_server_config(data.get(_config_key(ServerKind.DEBUG_ADAPTER)), "debugAdapter"),
        )

    @classmethod
    def load(cls, path: str | None = None, home_dir: str | None = None) -> Self:
        """
        Loads the configuration from the given YAML file.
        If no path is given, the config file in the storage directory is used (if it exists).
        """
        if path is None:
            path = KotlinIdePaths(home_dir).config_file
            if not os.path.exists(path):
                log.info(f"No configuration file at {path}, using defaults")
                return cls(home_dir=KotlinIdePaths(home_dir).home_dir)
        log.info(f"Loading configuration from {path}")
        with open(path, encoding=KOTLIN_IDE_FILE_ENCODING) as f:
            data = yaml.safe_load(f)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        return cls.from_dict(data, home_dir=home_dir)
