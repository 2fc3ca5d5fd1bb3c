from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence


class TrackerCommandError(RuntimeError):
    """Raised when an issue-tracker command fails."""

    def __init__(
        self,
        message: str,
        *,
        args_: Sequence[str] = (),
        exit_code: int | None = None,
        stderr: str = "",
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.args_ = list(args_)
        self.exit_code = exit_code
        self.stderr = stderr
        self.retriable = retriable


class TrackerRateLimitError(TrackerCommandError):
    """Raised when the tracker rejects a command because of rate limiting."""


class TrackerTimeoutError(TrackerCommandError):
    """Raised when a tracker command exceeds the configured timeout."""


class CommandExecutor(ABC):
    @abstractmethod
    async def run(self, args: Sequence[str]) -> str:
        """Run one tracker CLI command and return its trimmed stdout."""
