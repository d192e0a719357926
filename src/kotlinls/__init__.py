# ruff: noqa
from .ls_config import ServerConfig, ServerKind, TransportConfig
from .ls_installer import AssetInstaller, InstallOutcome
from .ls_process import ProcessSupervisor, ServerProcessHandle
