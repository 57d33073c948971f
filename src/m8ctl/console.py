"""Human-readable progress output.

A silent ``Progress`` prints nothing, which keeps stdout clean for commands
whose output is consumed by another program (e.g. kubectl).
"""

from rich.console import Console
from rich.status import Status


class Progress:
    """Spinner plus occasional messages, all suppressed when silent."""

    def __init__(self, silent: bool = False, console: Console | None = None) -> None:
        self.silent = silent
        self.console = console or Console()
        self._status: Status | None = None

    def start(self, message: str = "Working...") -> None:
        if self.silent:
            return
        if self._status is None:
            self._status = self.console.status(message)
            self._status.start()
        else:
            self._status.update(message)

    def stop(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def print(self, message: str) -> None:
        if self.silent:
            return
        self.console.print(message, markup=False, highlight=False)
