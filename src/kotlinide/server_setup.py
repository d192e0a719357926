"""
Wiring of installer, supervisor and lifecycle controller for the language server and the debug adapter
"""

from sensai.util import logging

from kotlinide.config.ide_config import KotlinIdeConfig
from kotlinide.constants import PRODUCT_ID
from kotlinide.lifecycle import LifecycleController, NotificationSink, ProtocolClient, StatusSink
from kotlinide.util.logging import OutputChannel
from kotlinls.ls_config import ServerKind
from kotlinls.ls_installer import AssetInstaller
from kotlinls.ls_process import ProcessSupervisor
from kotlinls.ls_release import ReleaseMetadataClient

log = logging.getLogger(__name__)


def create_installer(kind: ServerKind, config: KotlinIdeConfig, release_client: ReleaseMetadataClient | None = None) -> AssetInstaller:
    release_client = release_client or ReleaseMetadataClient(user_agent=PRODUCT_ID)
    return AssetInstaller(kind, config.paths.install_dir(kind), release_client=release_client)


def create_controller(
    kind: ServerKind,
    config: KotlinIdeConfig,
    protocol_client: ProtocolClient | None = None,
    output_channel: OutputChannel | None = None,
    status_sink: StatusSink | None = None,
    notification_sink: NotificationSink | None = None,
    release_client: ReleaseMetadataClient | None = None,
    cwd: str | None = None,
) -> LifecycleController:
    """
    Creates the lifecycle controller for the given server kind.

    :param output_channel: the channel receiving the server's output; a new channel named after the server if None
    """
    server_config = config.server_config(kind)
    output_channel = output_channel or OutputChannel(kind.display_name)
    supervisor = ProcessSupervisor(
        name=kind.display_name,
        output_sink=output_channel,
        connect_timeout=server_config.connect_timeout,
    )
    log.debug(f"Creating controller for {kind.display_name} with {server_config}")
    return LifecycleController(
        kind,
        server_config,
        installer=create_installer(kind, config, release_client),
        supervisor=supervisor,
        protocol_client=protocol_client,
        status_sink=status_sink,
        notification_sink=notification_sink,
        output_sink=output_channel,
        cwd=cwd,
    )
