import asyncio
import math
import os
import sys
from collections.abc import Callable
from datetime import datetime

import click
from sensai.util import logging

from kotlinide.config.ide_config import KotlinIdeConfig
from kotlinide.constants import KOTLIN_IDE_LOG_FORMAT
from kotlinide.lifecycle import LifecycleController
from kotlinide.server_setup import create_controller, create_installer
from kotlinide.util.logging import OutputChannel
from kotlinls.ls_config import ServerKind
from kotlinls.ls_exceptions import KotlinLSException
from kotlinls.util.install_integrity import CorruptionDetector

log = logging.getLogger(__name__)

_KIND_CHOICES = [kind.value for kind in ServerKind.iter_all()]
_PROXY_CHUNK_SIZE = 2**16


def _configure_logging(log_level: str) -> None:
    """
    Logs to stderr only, since stdout may carry the server channel.
    """
    logging.configure(format=KOTLIN_IDE_LOG_FORMAT, level=logging.getLevelName(log_level), stream=sys.stderr)


def _load_config(config_path: str | None, home_dir: str | None) -> KotlinIdeConfig:
    try:
        return KotlinIdeConfig.load(config_path, home_dir=home_dir)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Could not load configuration: {e}") from e


def _common_options(func: Callable) -> Callable:
    func = click.option(
        "--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]), default="WARNING", help="Log level."
    )(func)
    func = click.option("--home", "home_dir", type=click.Path(file_okay=False), default=None, help="Storage directory.")(func)
    func = click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None, help="YAML config file.")(
        func
    )
    func = click.option(
        "--kind", type=click.Choice(_KIND_CHOICES), default=ServerKind.LANGUAGE_SERVER.value, show_default=True, help="Server kind."
    )(func)
    return func


class AutoRegisteringGroup(click.Group):
    """
    A click group which automatically registers all click commands defined as class attributes.
    """

    def __init__(self, name: str, help: str):
        super().__init__(name=name, help=help)
        for attr in dir(self.__class__):
            cmd = getattr(self.__class__, attr)
            if isinstance(cmd, click.Command):
                self.add_command(cmd)


class TopLevelCommands(AutoRegisteringGroup):
    def __init__(self) -> None:
        super().__init__(name="kotlin-ide", help="Installs and runs the Kotlin Language Server and the Kotlin Debug Adapter.")

    @staticmethod
    @click.command("install", help="Download or update the server if a newer release is available.")
    @_common_options
    def install(kind: str, config_path: str | None, home_dir: str | None, log_level: str) -> None:
        _configure_logging(log_level)
        server_kind = ServerKind.from_str(kind)
        config = _load_config(config_path, home_dir)
        if config.server_config(server_kind).server_path:
            click.echo(f"A custom path is configured for the {server_kind.display_name}, nothing to install.")
            return
        installer = create_installer(server_kind, config)
        try:
            outcome = asyncio.run(installer.download_server_if_needed(click.echo))
        except KotlinLSException as e:
            raise click.ClickException(f"Could not update/download {server_kind.display_name}: {e}") from e
        record = installer.installed_record()
        click.echo(f"{server_kind.display_name} {record.version} ({outcome.value}): {installer.executable_path()}")

    @staticmethod
    @click.command("status", help="Show the installed version and the location of the server.")
    @_common_options
    def status(kind: str, config_path: str | None, home_dir: str | None, log_level: str) -> None:
        _configure_logging(log_level)
        server_kind = ServerKind.from_str(kind)
        config = _load_config(config_path, home_dir)
        click.echo(server_kind.display_name)
        server_path = config.server_config(server_kind).server_path
        if server_path:
            click.echo(f"  custom path: {server_path}")
            return
        installer = create_installer(server_kind, config)
        record = installer.installed_record()
        if record.is_absent():
            click.echo("  not installed")
            return
        click.echo(f"  version: {record.version}")
        if math.isinf(record.last_check):
            click.echo("  last update check: never")
        else:
            click.echo(f"  last update check: {datetime.fromtimestamp(record.last_check / 1000).isoformat(sep=' ', timespec='seconds')}")
        executable = installer.executable_path()
        click.echo(f"  executable: {executable}{'' if os.path.isfile(executable) else ' (missing)'}")
        corruption = CorruptionDetector().inspect(installer.package_dir)
        click.echo(f"  integrity: {corruption or 'ok'}")

    @staticmethod
    @click.command("run", help="Start the server and connect its channel to stdin/stdout until either side closes.")
    @_common_options
    def run(kind: str, config_path: str | None, home_dir: str | None, log_level: str) -> None:
        _configure_logging(log_level)
        server_kind = ServerKind.from_str(kind)
        config = _load_config(config_path, home_dir)
        output_channel = OutputChannel(server_kind.display_name)
        output_channel.add_emit_callback(lambda line: click.echo(line, err=True))
        controller = create_controller(
            server_kind,
            config,
            output_channel=output_channel,
            status_sink=lambda msg: click.echo(msg, err=True),
            notification_sink=lambda msg: click.echo(msg, err=True),
            cwd=os.getcwd(),
        )
        exit_code = asyncio.run(_run_server(controller))
        if exit_code != 0:
            sys.exit(exit_code)


async def _run_server(controller: LifecycleController) -> int:
    if not await controller.start():
        return 1
    channel = controller.channel
    assert channel is not None
    loop = asyncio.get_running_loop()
    stdin_reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(stdin_reader), sys.stdin)

    async def server_to_stdout() -> None:
        while chunk := await channel.reader.read(_PROXY_CHUNK_SIZE):
            sys.stdout.buffer.write(chunk)
            sys.stdout.buffer.flush()

    async def stdin_to_server() -> None:
        while chunk := await stdin_reader.read(_PROXY_CHUNK_SIZE):
            channel.writer.write(chunk)
            await channel.writer.drain()

    tasks = [asyncio.create_task(server_to_stdout()), asyncio.create_task(stdin_to_server())]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        log.info("Interrupted")
    finally:
        for task in tasks:
            task.cancel()
        await controller.stop()
    return 0


def get_help() -> str:
    """Retrieve the help text for the top-level kotlin-ide CLI."""
    return top_level.get_help(click.Context(top_level, info_name="kotlin-ide"))


top_level = TopLevelCommands()

if __name__ == "__main__":
    top_level()
