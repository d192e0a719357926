"""
Errors raised while acquiring, launching and supervising the Kotlin servers.
"""


class KotlinLSException(Exception):
    """
    Base class of all errors raised by kotlinls.

    :param message: what went wrong, phrased for the user
    :param cause: the lower-level exception behind this error, if any
        (e.g. the requests exception behind a NetworkError or the OSError behind a FileSystemError)
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        message = super().__str__()
        if self.cause is None:
            return message
        separator = "\n" if "\n" in message else " "
        return f"{message}{separator}(caused by {self.cause})"


class NetworkError(KotlinLSException):
    """
    Raised when the release registry or a download URL cannot be reached or answers with a non-2xx status.
    """

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None, cause: Exception | None = None) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(message, cause=cause)


class ParseError(KotlinLSException):
    """
    Raised when the release registry answers with a body that cannot be interpreted as a release.
    """


class MissingAssetError(KotlinLSException):
    """
    Raised when the latest release does not contain the asset we need to install.
    """

    def __init__(self, project_id: str, asset_name: str) -> None:
        self.project_id = project_id
        self.asset_name = asset_name
        super().__init__(f"Latest GitHub release for {project_id} does not contain the asset '{asset_name}'!")


class FileSystemError(KotlinLSException):
    """
    Raised when writing to the install directory fails (permissions, disk space, broken archive).
    """


class ProcessSpawnError(KotlinLSException):
    """
    Raised when the server process cannot be started or exits before the channel is established.
    """


class SocketError(KotlinLSException):
    """
    Raised when the TCP rendezvous fails: the listener cannot be bound or no connection arrives in time.
    """


class InstallLockError(KotlinLSException):
    """
    Raised when the install directory stays locked by another live installer for longer than the lock timeout.
    """

    def __init__(self, lock_path: str, owner_pid: int | None = None) -> None:
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        super().__init__(f"Install directory is locked by another process (pid={owner_pid}, lock file: {lock_path})")


class ControllerStateError(KotlinLSException):
    """
    Raised when a lifecycle operation is requested in a state that does not allow it (e.g. restart before start).
    """
