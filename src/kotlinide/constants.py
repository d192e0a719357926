KOTLIN_IDE_MANAGED_DIR_NAME = ".kotlin-ide"
KOTLIN_IDE_HOME_ENV_VAR = "KOTLIN_IDE_HOME"

KOTLIN_IDE_FILE_ENCODING = "utf-8"
"""The encoding used for the configuration file."""
CONFIG_FILENAME = "kotlin_ide_config.yml"

KOTLIN_IDE_LOG_FORMAT = "%(levelname)-5s %(asctime)-15s [%(threadName)s] %(name)s:%(funcName)s:%(lineno)d - %(message)s"

OUTPUT_CHANNEL_BUFFER_SIZE = 2500
"""The maximum number of lines retained by an output channel."""

PRODUCT_ID = "vscode-kotlin-ide"
"""Sent as user agent to the release registry."""
