"""
Configuration objects for the managed servers
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Self

DEFAULT_CONNECT_TIMEOUT = 60.0
"""Seconds to wait for a server launched with TCP transport to dial back."""
DEFAULT_DEBUG_ATTACH_PORT = 5005


class ServerKind(str, Enum):
    """
    Enumeration of the servers that can be installed and supervised.
    Both kinds are structurally identical: a zip asset of a GitHub release containing a start script in `bin`
    and the jars in `lib`.
    """

    LANGUAGE_SERVER = "language_server"
    DEBUG_ADAPTER = "debug_adapter"

    @classmethod
    def iter_all(cls) -> Iterable[Self]:
        yield from cls

    @classmethod
    def from_str(cls, kind_str: str) -> "ServerKind":
        normalized = kind_str.strip().lower().replace("-", "_")
        for kind in cls:
            if kind.value == normalized:
                return kind
        raise ValueError(f"Unknown server kind '{kind_str}': valid values are {[k.value for k in cls]}")

    def __str__(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        match self:
            case self.LANGUAGE_SERVER:
                return "Kotlin Language Server"
            case self.DEBUG_ADAPTER:
                return "Kotlin Debug Adapter"
        raise ValueError(f"Unhandled server kind: {self}")

    @property
    def github_project(self) -> str:
        """
        :return: the GitHub project (`org/name`) publishing the releases of this server
        """
        match self:
            case self.LANGUAGE_SERVER:
                return "fwcd/kotlin-language-server"
            case self.DEBUG_ADAPTER:
                return "fwcd/kotlin-debug-adapter"
        raise ValueError(f"Unhandled server kind: {self}")

    @property
    def asset_name(self) -> str:
        match self:
            case self.LANGUAGE_SERVER:
                return "server.zip"
            case self.DEBUG_ADAPTER:
                return "adapter.zip"
        raise ValueError(f"Unhandled server kind: {self}")

    @property
    def package_subpath(self) -> str:
        """
        :return: the name of the top-level directory contained in the release archive
        """
        match self:
            case self.LANGUAGE_SERVER:
                return "server"
            case self.DEBUG_ADAPTER:
                return "adapter"
        raise ValueError(f"Unhandled server kind: {self}")

    @property
    def executable_name(self) -> str:
        match self:
            case self.LANGUAGE_SERVER:
                return "kotlin-language-server"
            case self.DEBUG_ADAPTER:
                return "kotlin-debug-adapter"
        raise ValueError(f"Unhandled server kind: {self}")

    @property
    def install_dir_name(self) -> str:
        match self:
            case self.LANGUAGE_SERVER:
                return "langServerInstall"
            case self.DEBUG_ADAPTER:
                return "debugAdapterInstall"
        raise ValueError(f"Unhandled server kind: {self}")

    @property
    def opts_env_var(self) -> str:
        """
        :return: the environment variable read by the start script for additional JVM options
        """
        match self:
            case self.LANGUAGE_SERVER:
                return "KOTLIN_LANGUAGE_SERVER_OPTS"
            case self.DEBUG_ADAPTER:
                return "KOTLIN_DEBUG_ADAPTER_OPTS"
        raise ValueError(f"Unhandled server kind: {self}")


class TransportKind(str, Enum):
    STDIO = "stdio"
    """The server's standard input/output streams are the channel."""
    TCP = "tcp"
    """The server dials back to a listening socket opened by us (rendezvous)."""


@dataclass(frozen=True)
class TransportConfig:
    kind: TransportKind = TransportKind.STDIO
    port: int = 0
    """
    the port to listen on for the TCP rendezvous; 0 selects an ephemeral port. Ignored for stdio.
    """

    @classmethod
    def stdio(cls) -> "TransportConfig":
        return cls(TransportKind.STDIO)

    @classmethod
    def tcp(cls, port: int = 0) -> "TransportConfig":
        if port < 0 or port > 65535:
            raise ValueError(f"Invalid TCP port: {port}")
        return cls(TransportKind.TCP, port)

    def is_tcp(self) -> bool:
        return self.kind == TransportKind.TCP

    def describe(self) -> str:
        """
        :return: a suffix for status messages, e.g. " via TCP port 4000"
        """
        if not self.is_tcp():
            return ""
        if self.port == 0:
            return " via TCP"
        return f" via TCP port {self.port}"


@dataclass(frozen=True)
class DebugAttachConfig:
    enabled: bool = False
    auto_suspend: bool = False
    """whether the JVM waits for a debugger to attach before running the server"""
    port: int = DEFAULT_DEBUG_ATTACH_PORT

    def jvm_agent_flag(self) -> str:
        suspend = "y" if self.auto_suspend else "n"
        return f"-agentlib:jdwp=transport=dt_socket,server=y,suspend={suspend},quiet=y,address={self.port}"


@dataclass(frozen=True)
class ServerConfig:
    """
    Every option recognized when launching one server kind.
    """

    server_path: str | None = None
    """
    path to a custom start script; if set, nothing is downloaded and the script is used as is
    """
    transport: TransportConfig = field(default_factory=TransportConfig.stdio)
    debug_attach: DebugAttachConfig = field(default_factory=DebugAttachConfig)
    java_home: str | None = None
    """
    an explicit JDK location (may be a path list), searched before $JAVA_HOME and PATH
    """
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def build_env(self, kind: ServerKind) -> dict[str, str]:
        """
        :return: the environment variables to add to the child process environment (excluding JAVA_HOME)
        """
        env: dict[str, str] = {}
        if self.debug_attach.enabled:
            env[kind.opts_env_var] = self.debug_attach.jvm_agent_flag()
        return env
