import asyncio
import logging
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import psutil
from sensai.util.string import ToStringMixin

from kotlinls.ls_config import DEFAULT_CONNECT_TIMEOUT, TransportConfig
from kotlinls.ls_exceptions import ProcessSpawnError, SocketError
from kotlinls.ls_utils import PlatformUtils

log = logging.getLogger(__name__)

OutputSink = Callable[[str], None]
TCP_CLIENT_PORT_ARG = "--tcpClientPort"
DEFAULT_STOP_TIMEOUT = 5.0
OUTPUT_ENCODING = "utf-8"
# longer lines are forwarded in pieces
MAX_FORWARDED_LINE_LENGTH = 2**20


class ProcessState(Enum):
    SPAWNING = "spawning"
    """The process was created, the channel is not established yet (includes the TCP accept wait)."""
    CONNECTED = "connected"
    """The channel is established."""
    RUNNING = "running"
    """The protocol client has completed its handshake over the channel."""
    STOPPED = "stopped"
    CRASHED = "crashed"

    def is_terminal(self) -> bool:
        return self in (ProcessState.STOPPED, ProcessState.CRASHED)


@dataclass
class DuplexChannel:
    """
    The byte channel between client and server: the server's stdout/stdin or the accepted TCP connection.
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            log.debug(f"Error while closing channel: {e}")


def signal_process_tree(pid: int, terminate: bool = True) -> None:
    """Send signal (terminate or kill) to the process and all its children."""
    signal_method = "terminate" if terminate else "kill"
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.Error as e:
        log.debug(f"Cannot signal process tree of {pid}: {e}")
        return

    # Signal children first
    for child in children:
        try:
            getattr(child, signal_method)()
        except psutil.Error:
            pass

    try:
        getattr(parent, signal_method)()
    except psutil.Error as e:
        log.debug(f"Cannot {signal_method} process {pid}: {e}")


class ServerProcessHandle(ToStringMixin):
    """
    Owns a spawned server process and its duplex channel.
    """

    def __init__(self, executable_path: str, transport: TransportConfig, process: asyncio.subprocess.Process) -> None:
        self.executable_path = executable_path
        self.transport = transport
        self.process = process
        self.state = ProcessState.SPAWNING
        self.channel: DuplexChannel | None = None
        self.tcp_port: int | None = None
        """the port the server was told to dial back to (TCP transport only)"""
        self._stopping = False
        self._output_tasks: list[asyncio.Task] = []
        self._exit_task: asyncio.Task | None = None
        self._exited = asyncio.Event()

    def _tostring_includes(self) -> list[str]:
        return ["executable_path", "state", "tcp_port"]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_running(self) -> bool:
        return self.process.returncode is None

    def _set_channel(self, channel: DuplexChannel) -> None:
        self.channel = channel
        if self.state == ProcessState.SPAWNING:
            self.state = ProcessState.CONNECTED

    def mark_running(self) -> None:
        """
        Called once the protocol client has completed its handshake.
        """
        if self.state == ProcessState.CONNECTED:
            self.state = ProcessState.RUNNING

    async def wait_for_exit(self) -> int:
        await self._exited.wait()
        assert self.process.returncode is not None
        return self.process.returncode


class ProcessSupervisor:
    """
    Launches a server executable over a transport and reports its output and exit.
    The supervisor never restarts a process on its own.
    """

    def __init__(
        self,
        name: str = "server",
        output_sink: OutputSink | None = None,
        host: str = "127.0.0.1",
        connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        start_independent_process: bool = True,
    ) -> None:
        """
        :param name: the name used in messages, e.g. "Kotlin Language Server"
        :param output_sink: receives the process output line by line and a summary line on exit
        :param host: the address the TCP rendezvous listens on
        :param connect_timeout: seconds to wait for a server launched with TCP transport to connect; None waits forever
        :param stop_timeout: seconds to wait after terminating before the process is killed
        :param start_independent_process: whether to start the process in its own session, so that signals sent to us
            do not reach it
        """
        self.name = name
        self.output_sink = output_sink
        self.host = host
        self.connect_timeout = connect_timeout
        self.stop_timeout = stop_timeout
        self.start_independent_process = start_independent_process

    def _output(self, line: str) -> None:
        if self.output_sink is None:
            log.info(line)
            return
        try:
            self.output_sink(line)
        except Exception as e:
            log.error(f"Output sink failed: {e}", exc_info=e)

    async def _spawn(self, cmd: list[str], env: dict[str, str], cwd: str | None, stdin: int) -> asyncio.subprocess.Process:
        kwargs = {}
        if not PlatformUtils.is_windows():
            kwargs["start_new_session"] = self.start_independent_process
        log.info(f"Starting {self.name} process via command: {cmd}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
                **kwargs,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Could not start {self.name} at {cmd[0]}", cause=e) from e

    async def launch(
        self,
        executable_path: str,
        transport: TransportConfig,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        on_exit: Callable[[ServerProcessHandle], None] | None = None,
    ) -> ServerProcessHandle:
        """
        Spawns the executable and establishes the duplex channel.

        :param env: variables added to the current environment
        :param on_exit: called (on the event loop) when the process has exited, for whatever reason
        :raises ProcessSpawnError: if the executable cannot be started or exits before connecting
        :raises SocketError: if the TCP rendezvous cannot be set up or times out
        """
        if not os.path.isfile(executable_path):
            raise ProcessSpawnError(f"{self.name} executable not found at {executable_path}")
        PlatformUtils.make_executable(executable_path)
        child_env = os.environ.copy()
        child_env.update(env or {})
        if transport.is_tcp():
            handle = await self._launch_tcp(executable_path, transport, child_env, cwd)
        else:
            handle = await self._launch_stdio(executable_path, transport, child_env, cwd)
        handle._exit_task = asyncio.create_task(self._watch_exit(handle, on_exit), name=f"{self.name}-exit-watcher")
        log.info(f"{self.name} process {handle.pid} connected{transport.describe()}")
        return handle

    async def _launch_stdio(self, executable_path: str, transport: TransportConfig, env: dict[str, str], cwd: str | None) -> ServerProcessHandle:
        process = await self._spawn([executable_path], env, cwd, stdin=asyncio.subprocess.PIPE)
        handle = ServerProcessHandle(executable_path, transport, process)
        assert process.stdout is not None and process.stdin is not None and process.stderr is not None
        # stdout carries the protocol, only stderr is output
        handle._output_tasks.append(asyncio.create_task(self._forward_lines(process.stderr), name=f"{self.name}-stderr"))
        handle._set_channel(DuplexChannel(process.stdout, process.stdin))
        return handle

    async def _launch_tcp(self, executable_path: str, transport: TransportConfig, env: dict[str, str], cwd: str | None) -> ServerProcessHandle:
        loop = asyncio.get_running_loop()
        connection: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]] = loop.create_future()
        listener: asyncio.Server | None = None

        async def on_client_connected(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            if connection.done():
                writer.close()
                return
            log.info("Closing listener since the server has connected")
            if listener is not None:
                listener.close()
            connection.set_result((reader, writer))

        try:
            listener = await asyncio.start_server(on_client_connected, self.host, transport.port)
        except OSError as e:
            raise SocketError(f"Could not listen on {self.host}:{transport.port}", cause=e) from e
        port = listener.sockets[0].getsockname()[1]
        log.info(f"Waiting for {self.name} to connect to {self.host}:{port}")

        try:
            process = await self._spawn([executable_path, TCP_CLIENT_PORT_ARG, str(port)], env, cwd, stdin=asyncio.subprocess.DEVNULL)
        except ProcessSpawnError:
            listener.close()
            raise
        handle = ServerProcessHandle(executable_path, transport, process)
        handle.tcp_port = port
        assert process.stdout is not None and process.stderr is not None
        handle._output_tasks.append(asyncio.create_task(self._forward_lines(process.stdout), name=f"{self.name}-stdout"))
        handle._output_tasks.append(asyncio.create_task(self._forward_lines(process.stderr), name=f"{self.name}-stderr"))

        process_exit = asyncio.create_task(process.wait(), name=f"{self.name}-rendezvous-exit")
        try:
            done, _pending = await asyncio.wait({connection, process_exit}, timeout=self.connect_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # the listener only serves a single rendezvous; closing it refuses later connections
            listener.close()

        if connection in done:
            process_exit.cancel()
            reader, writer = connection.result()
            handle._set_channel(DuplexChannel(reader, writer))
            return handle

        if not connection.done():
            connection.cancel()
        if process_exit in done:
            await self._report_exit(handle)
            handle.state = ProcessState.CRASHED
            handle._exited.set()
            raise ProcessSpawnError(f"{self.name} exited with code {process.returncode} before connecting to port {port}")
        process_exit.cancel()
        await self.stop(handle)
        raise SocketError(f"{self.name} did not connect to {self.host}:{port} within {self.connect_timeout} seconds")

    async def _forward_lines(self, stream: asyncio.StreamReader) -> None:
        pending = b""
        while True:
            try:
                chunk = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # end of stream, possibly after an unterminated last line
                if pending or e.partial:
                    self._emit_line(pending + e.partial)
                return
            except asyncio.LimitOverrunError as e:
                # line longer than the stream limit; the data is still buffered
                pending += await stream.read(e.consumed)
                if len(pending) >= MAX_FORWARDED_LINE_LENGTH:
                    self._emit_line(pending)
                    pending = b""
                continue
            self._emit_line(pending + chunk)
            pending = b""

    def _emit_line(self, line: bytes) -> None:
        self._output(line.decode(OUTPUT_ENCODING, errors="replace").rstrip("\r\n"))

    async def _drain_output(self, handle: ServerProcessHandle) -> None:
        if not handle._output_tasks:
            return
        _done, pending = await asyncio.wait(handle._output_tasks, timeout=1.0)
        for task in pending:
            task.cancel()

    @staticmethod
    def _describe_exit(returncode: int) -> tuple[int | None, str | None]:
        if returncode < 0:
            try:
                return None, signal.Signals(-returncode).name
            except ValueError:
                return None, str(-returncode)
        return returncode, None

    async def _report_exit(self, handle: ServerProcessHandle) -> int:
        """
        Waits for the process, forwards its remaining output and writes the exit line.
        """
        returncode = await handle.process.wait()
        await self._drain_output(handle)
        code, sig = self._describe_exit(returncode)
        self._output(f"The {self.name} exited, code: {code}, signal: {sig}")
        return returncode

    async def _watch_exit(self, handle: ServerProcessHandle, on_exit: Callable[[ServerProcessHandle], None] | None) -> None:
        returncode = await self._report_exit(handle)
        if handle._stopping:
            handle.state = ProcessState.STOPPED
        else:
            log.warning(f"{self.name} process {handle.pid} terminated unexpectedly with code {returncode}")
            handle.state = ProcessState.CRASHED
        handle._exited.set()
        if on_exit is not None:
            try:
                on_exit(handle)
            except Exception as e:
                log.error(f"Error in exit callback of {self.name}: {e}", exc_info=e)

    async def stop(self, handle: ServerProcessHandle) -> None:
        """
        Closes the channel and terminates the process tree (killing it if it does not exit in time).
        Calling stop on an already stopped handle does nothing.
        """
        if handle.state.is_terminal() and handle._exited.is_set() and (handle.channel is None or handle.channel.writer.is_closing()):
            return
        handle._stopping = True
        if handle.channel is not None:
            await handle.channel.close()

        process = handle.process
        if process.returncode is None:
            log.info(f"Terminating {self.name} process {process.pid}")
            signal_process_tree(process.pid, terminate=True)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except TimeoutError:
                log.warning(f"{self.name} process {process.pid} did not terminate within {self.stop_timeout}s, killing it")
                signal_process_tree(process.pid, terminate=False)
                await process.wait()

        if handle._exit_task is not None:
            await handle._exit_task
        else:
            await self._report_exit(handle)
            handle._exited.set()
        if not handle.state.is_terminal():
            handle.state = ProcessState.STOPPED
