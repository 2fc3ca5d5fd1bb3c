from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

from taskgate.tracker.base import CommandExecutor, TrackerCommandError, TrackerTimeoutError


class GhCliExecutor(CommandExecutor):
    """Runs GitHub CLI commands as subprocesses."""

    def __init__(
        self,
        binary: str = "gh",
        working_directory: Path | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds

    def build_command(self, args: Sequence[str]) -> list[str]:
        return [self.binary, *args]

    async def run(self, args: Sequence[str]) -> str:
        command = self.build_command(args)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TrackerCommandError(
                f"gh binary not found: {self.binary}",
                args_=args,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise TrackerTimeoutError(
                f"gh {' '.join(args[:2])} timed out after {self.timeout_seconds:.1f}s",
                args_=args,
            ) from exc

        stderr_output = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise TrackerCommandError(
                f"gh {' '.join(args[:2])} failed with exit code {process.returncode}: "
                f"{stderr_output}",
                args_=args,
                exit_code=process.returncode,
                stderr=stderr_output,
            )
        return stdout.decode("utf-8", errors="replace").strip()
