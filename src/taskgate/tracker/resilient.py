from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from taskgate.tracker.base import CommandExecutor, TrackerCommandError, TrackerRateLimitError

logger = structlog.get_logger()

TrackerEventHook = Callable[[dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]

RATE_LIMIT_PATTERN = re.compile(
    r"rate.?limit|secondary rate|abuse detection|too many requests|\b429\b",
    re.IGNORECASE,
)

# Commands that always print the created resource; an empty reply means throttling.
CREATION_COMMANDS: frozenset[tuple[str, str]] = frozenset(
    {("issue", "create"), ("project", "create")}
)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_base_seconds * (2 ** (attempt - 1))


def is_rate_limited(exc: TrackerCommandError) -> bool:
    if isinstance(exc, TrackerRateLimitError):
        return True
    return bool(RATE_LIMIT_PATTERN.search(f"{exc} {exc.stderr}"))


def is_creation_command(args: Sequence[str]) -> bool:
    return tuple(args[:2]) in CREATION_COMMANDS


class ResilientExecutor(CommandExecutor):
    """Retries rate-limited tracker commands with exponential backoff.

    Attempt ``n`` that fails with a rate-limit signature is followed by a sleep
    of ``base * 2 ** (n - 1)``; the failure of the last attempt propagates.
    Any other error propagates immediately.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        event_hook: TrackerEventHook | None = None,
    ) -> None:
        self.executor = executor
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(self, args: Sequence[str]) -> str:
        command = " ".join(args[:2])
        attempts = max(1, self.policy.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await self.executor.run(args)
                if is_creation_command(args) and not output.strip():
                    raise TrackerRateLimitError(
                        f"gh {command} returned an empty response",
                        args_=args,
                        retriable=True,
                    )
                return output
            except TrackerCommandError as exc:
                rate_limited = is_rate_limited(exc)
                self._emit(
                    {
                        "event": "tracker_attempt_failed",
                        "command": command,
                        "attempt": attempt,
                        "error": str(exc),
                        "rate_limited": rate_limited,
                    }
                )
                if not rate_limited:
                    raise
                if attempt == attempts:
                    raise TrackerRateLimitError(
                        f"gh {command} still rate limited after {attempts} attempts: {exc}",
                        args_=args,
                        exit_code=exc.exit_code,
                        stderr=exc.stderr,
                        retriable=False,
                    ) from exc
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "tracker_retry", command=command, attempt=attempt, delay_seconds=delay
                )
                self._emit(
                    {
                        "event": "tracker_retry",
                        "command": command,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self.sleep(delay)
