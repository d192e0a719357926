"""
Lifecycle management of a supervised server: install, launch, stop and restart, one operation at a time.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

from overrides import override
from sensai.util import logging
from sensai.util.logging import LogTime

from kotlinls.ls_config import ServerConfig, ServerKind
from kotlinls.ls_exceptions import ControllerStateError
from kotlinls.ls_installer import AssetInstaller
from kotlinls.ls_process import DuplexChannel, OutputSink, ProcessState, ProcessSupervisor, ServerProcessHandle
from kotlinls.ls_utils import JavaUtils

log = logging.getLogger(__name__)

StatusSink = Callable[[str], None]
NotificationSink = Callable[[str], None]


class ControllerState(Enum):
    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class ProtocolClient(ABC):
    """
    The collaborator speaking the wire protocol over the channel of a launched server.
    """

    @abstractmethod
    async def start(self, channel: DuplexChannel) -> None:
        """
        Takes over the channel and returns once the ready handshake with the server has completed.
        """

    @abstractmethod
    async def stop(self) -> None:
        """
        Releases the channel and all subscriptions of the client.
        """


class PassthroughProtocolClient(ProtocolClient):
    """
    A client without a handshake: ready as soon as it holds the channel, which it exposes to its users.
    """

    def __init__(self) -> None:
        self.channel: DuplexChannel | None = None

    @override
    async def start(self, channel: DuplexChannel) -> None:
        self.channel = channel

    @override
    async def stop(self) -> None:
        self.channel = None


def _log_notification(msg: str) -> None:
    log.error(msg)


def _ignore_status(msg: str) -> None:
    pass


class LifecycleController:
    """
    Owns the current server process of one server kind.
    start, stop and restart are serialized: while one of them runs, later calls wait and then see the resulting state.
    """

    def __init__(
        self,
        kind: ServerKind,
        config: ServerConfig,
        installer: AssetInstaller,
        supervisor: ProcessSupervisor,
        protocol_client: ProtocolClient | None = None,
        status_sink: StatusSink | None = None,
        notification_sink: NotificationSink | None = None,
        output_sink: OutputSink | None = None,
        cwd: str | None = None,
    ) -> None:
        """
        :param installer: the installer providing the server; not used if the config names a custom server path
        :param status_sink: receives short status messages (including download progress)
        :param notification_sink: receives fatal startup errors meant for the user (once per failure)
        :param output_sink: receives the restart separator; should be the sink the supervisor forwards output to
        :param cwd: the working directory of the server process
        """
        self.kind = kind
        self.config = config
        self.installer = installer
        self.supervisor = supervisor
        self.protocol_client = protocol_client or PassthroughProtocolClient()
        self._status = status_sink or _ignore_status
        self._notify = notification_sink or _log_notification
        self._output = output_sink
        self.cwd = cwd
        self.state = ControllerState.UNINSTALLED
        self.last_error: Exception | None = None
        self._handle: ServerProcessHandle | None = None
        self._executable_path: str | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.kind.display_name

    @property
    def handle(self) -> ServerProcessHandle | None:
        return self._handle

    @property
    def channel(self) -> DuplexChannel | None:
        return self._handle.channel if self._handle is not None else None

    def is_running(self) -> bool:
        return self.state == ControllerState.RUNNING

    def _report_failure(self, msg: str, error: Exception) -> None:
        self.last_error = error
        log.error(msg, exc_info=error)
        try:
            self._notify(msg)
        except Exception as e:
            log.error(f"Notification sink failed: {e}", exc_info=e)

    def _write_output(self, line: str) -> None:
        if self._output is not None:
            self._output(line)
        else:
            log.info(line)

    async def start(self) -> bool:
        """
        Installs (or updates) the server if needed and launches it.

        :return: whether the server is running; on failure, the error was reported to the notification sink and is
            available as `last_error`
        """
        async with self._lock:
            if self.state in (ControllerState.RUNNING, ControllerState.LAUNCHING):
                log.info(f"{self.name} is already running")
                return True
            if self.state == ControllerState.CRASHED:
                await self._stop_current()
            self.last_error = None
            self._status(f"Activating {self.name}...")
            executable_path = await self._ensure_installed()
            if executable_path is None:
                return False
            return await self._launch(executable_path)

    async def _ensure_installed(self) -> str | None:
        if self.config.server_path:
            log.info(f"Using custom {self.name} at {self.config.server_path}")
            self.state = ControllerState.IDLE
            return self.config.server_path

        self.state = ControllerState.INSTALLING
        try:
            outcome = await self.installer.download_server_if_needed(self._status)
        except Exception as e:
            self._report_failure(f"Could not update/download {self.name}: {e}", e)
            has_install = not self.installer.installed_record().is_absent()
            self.state = ControllerState.IDLE if has_install else ControllerState.UNINSTALLED
            return None
        log.info(f"{self.name} installation: {outcome.value}")
        self.state = ControllerState.IDLE
        return self.installer.executable_path()

    def _build_env(self) -> dict[str, str]:
        env = self.config.build_env(self.kind)
        java_executable = JavaUtils.find_java_executable(self.config.java_home)
        if java_executable is None:
            log.warning(f"Could not locate java in $JAVA_HOME or $PATH, {self.name} may fail to start")
        else:
            env["JAVA_HOME"] = JavaUtils.java_home_of(java_executable)
        return env

    async def _launch(self, executable_path: str) -> bool:
        self.state = ControllerState.LAUNCHING
        self._executable_path = executable_path
        self._status(f"Initializing {self.name}{self.config.transport.describe()}...")
        try:
            with LogTime(f"Launch of {self.name}", logger=log):
                handle = await self.supervisor.launch(
                    executable_path, self.config.transport, env=self._build_env(), cwd=self.cwd, on_exit=self._on_process_exit
                )
        except Exception as e:
            self._report_failure(f"Could not start {self.name}: {e}", e)
            self.state = ControllerState.IDLE
            return False
        self._handle = handle

        assert handle.channel is not None
        try:
            await self.protocol_client.start(handle.channel)
        except Exception as e:
            self._report_failure(f"Could not connect to {self.name}: {e}", e)
            await self.supervisor.stop(handle)
            self._handle = None
            self.state = ControllerState.IDLE
            return False

        if not handle.is_running():
            error = ControllerStateError(f"{self.name} exited during startup with code {handle.returncode}")
            self._report_failure(str(error), error)
            self.state = ControllerState.CRASHED
            return False
        handle.mark_running()
        self.state = ControllerState.RUNNING
        self._status(f"{self.name} is running")
        return True

    def _on_process_exit(self, handle: ServerProcessHandle) -> None:
        if handle is not self._handle or handle.state != ProcessState.CRASHED:
            return
        if self.state in (ControllerState.RUNNING, ControllerState.LAUNCHING):
            log.warning(f"{self.name} crashed (exit code {handle.returncode})")
            self.state = ControllerState.CRASHED

    async def _stop_current(self) -> None:
        handle = self._handle
        self.state = ControllerState.STOPPING
        try:
            await self.protocol_client.stop()
        except Exception as e:
            log.error(f"Error while stopping the protocol client of {self.name}: {e}", exc_info=e)
        if handle is not None:
            await self.supervisor.stop(handle)
        self._handle = None
        self.state = ControllerState.IDLE

    async def stop(self) -> None:
        """
        Stops the protocol client and the server process. Does nothing if no server is running.
        """
        async with self._lock:
            if self.state not in (ControllerState.RUNNING, ControllerState.CRASHED):
                log.debug(f"{self.name} is not running (state: {self.state.value}), nothing to stop")
                return
            log.info(f"Stopping {self.name}")
            await self._stop_current()

    async def restart(self) -> bool:
        """
        Stops the current server and launches it again with the same executable and configuration.

        :return: whether the server is running again
        :raises ControllerStateError: if the server is neither running nor crashed
        """
        async with self._lock:
            if self.state not in (ControllerState.RUNNING, ControllerState.CRASHED):
                raise ControllerStateError(f"Cannot restart {self.name} in state '{self.state.value}'")
            executable_path = self._executable_path
            assert executable_path is not None
            await self._stop_current()
            self._write_output("")
            self._write_output(f" === {self.name} Restart ===")
            self._write_output("")
            return await self._launch(executable_path)
