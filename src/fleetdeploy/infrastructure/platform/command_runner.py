"""Async subprocess command runner."""

from __future__ import annotations

import asyncio
import os
import time

import structlog

from fleetdeploy.domain.errors import CommandTimeoutError
from fleetdeploy.domain.models.results import CommandResult
from fleetdeploy.domain.ports.services import CommandRunner


logger = structlog.get_logger(__name__)

# Exit code reported when the executable itself cannot be started.
COMMAND_NOT_FOUND = 127


class AsyncSubprocessRunner(CommandRunner):
    """Runs commands with :func:`asyncio.create_subprocess_exec`.

    Output is captured verbatim. A timed-out process is killed and reported as
    :class:`CommandTimeoutError`, which the retry policy treats as transient.
    """

    def __init__(self, default_timeout: float = 120.0, base_env: dict[str, str] | None = None):
        self._default_timeout = default_timeout
        self._base_env = base_env

    async def run(
        self,
        args: list[str],
        cwd: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        timeout = timeout or self._default_timeout
        merged_env = None
        if env or self._base_env:
            merged_env = {**os.environ, **(self._base_env or {}), **(env or {})}

        started = time.monotonic()
        logger.debug("command_started", command=args[0] if args else "", cwd=cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=merged_env,
            )
        except FileNotFoundError as e:
            return CommandResult(
                command=args,
                exit_code=COMMAND_NOT_FOUND,
                stderr=f"Command not found: {args[0]} ({e})",
                duration_seconds=time.monotonic() - started,
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("command_timed_out", command=args[0], timeout_seconds=timeout)
            raise CommandTimeoutError(f"{' '.join(args[:3])} timed out after {timeout:.0f}s")

        result = CommandResult(
            command=args,
            exit_code=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
            duration_seconds=time.monotonic() - started,
        )
        logger.debug(
            "command_finished",
            command=args[0],
            exit_code=result.exit_code,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result
