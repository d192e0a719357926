__version__ = "0.3.0"


def kotlin_ide_version() -> str:
    return __version__
