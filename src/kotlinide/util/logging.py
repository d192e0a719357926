import threading
from collections.abc import Callable
from dataclasses import dataclass

from sensai.util import logging

from kotlinide.constants import OUTPUT_CHANNEL_BUFFER_SIZE

log = logging.getLogger(__name__)


@dataclass
class OutputLines:
    lines: list[str]
    """
    the retained lines, ordered from oldest to newest
    """
    max_idx: int
    """
    the 0-based index of the last line in `lines` (in the full output history)
    """


class OutputChannel:
    """
    A named, thread-safe sink for the raw output of a server process and for the status messages about it.
    Retains an (optionally limited) number of lines, notifies emit callbacks and mirrors every line to a logger.
    """

    def __init__(self, name: str, max_lines: int | None = OUTPUT_CHANNEL_BUFFER_SIZE, logger: logging.Logger | None = None) -> None:
        self.name = name
        self._max_lines = max_lines
        self._lines: list[str] = []
        self._max_idx = -1
        """
        the 0-based index of the most recently appended line
        """
        self._lock = threading.Lock()
        self._emit_callbacks: list[Callable[[str], None]] = []
        self._logger = logger or logging.getLogger(f"{__name__}.{name.replace(' ', '')}")

    def add_emit_callback(self, callback: Callable[[str], None]) -> None:
        """
        Adds a callback that will be called with each appended line.
        """
        self._emit_callbacks.append(callback)

    def append_line(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._max_idx += 1
            if self._max_lines is not None and len(self._lines) > self._max_lines:
                excess = len(self._lines) - self._max_lines
                self._lines = self._lines[excess:]
        self._logger.info(line)
        for callback in self._emit_callbacks:
            try:
                callback(line)
            except Exception as e:
                log.error(f"Output channel callback failed: {e}", exc_info=e)

    # the output channel is used directly as an output sink
    __call__ = append_line

    def clear(self) -> None:
        with self._lock:
            self._lines = []
            self._max_idx = -1

    def get_lines(self, from_idx: int = 0) -> OutputLines:
        """
        :param from_idx: the 0-based index of the first line to return.
            If from_idx is less than or equal to the index of the oldest retained line, all retained lines are returned.
        """
        from_idx = max(from_idx, 0)
        with self._lock:
            first_stored_idx = self._max_idx - len(self._lines) + 1
            if from_idx <= first_stored_idx:
                lines = self._lines.copy()
            else:
                lines = self._lines[from_idx - first_stored_idx :].copy()
            return OutputLines(lines=lines, max_idx=self._max_idx)

    @property
    def lines(self) -> list[str]:
        return self.get_lines().lines
