"""Shared utilities for pushdeploy."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from pushdeploy.logging import get_logger

log = get_logger("pushdeploy.utils")

REDACTED = "***"

# Keep the tail of stderr; the interesting line is almost always last.
_STDERR_TAIL = 500


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command. Non-zero exits are data, not exceptions."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self) -> str:
        """Short human-readable reason for a failure."""
        if self.timed_out:
            return "command timed out"
        tail = self.stderr.strip()[-_STDERR_TAIL:]
        return f"exit status {self.returncode}: {tail}" if tail else f"exit status {self.returncode}"


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every non-empty secret in *text*."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


async def run_command(
    args: Sequence[str],
    cwd: Path | str | None = None,
    timeout: float = 120,
    input_data: str | None = None,
    env: dict[str, str] | None = None,
    secrets: Iterable[str] = (),
) -> CommandResult:
    """Run *args* without a shell and capture its output.

    The working directory is always explicit. On timeout the process is
    killed and the result has ``timed_out`` set. Anything in *secrets* is
    scrubbed from logs and from the returned output.
    """
    hidden = [s for s in secrets if s]
    shown = redact(" ".join(args), hidden)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
        )
    except OSError as exc:
        log.warning("cmd_spawn_failed", cmd=shown, error=str(exc))
        return CommandResult(args=tuple(args), returncode=None, stderr=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input_data.encode() if input_data is not None else None),
            timeout=timeout,
        )
    except TimeoutError:
        _kill(proc)
        await proc.wait()
        log.warning("cmd_timeout", cmd=shown, timeout=timeout)
        return CommandResult(args=tuple(args), returncode=proc.returncode, timed_out=True)
    except BaseException:
        # Cancelled mid-command: do not leave the child running.
        _kill(proc)
        log.warning("cmd_abandoned", cmd=shown)
        raise

    result = CommandResult(
        args=tuple(args),
        returncode=proc.returncode,
        stdout=redact(stdout.decode(errors="replace"), hidden),
        stderr=redact(stderr.decode(errors="replace"), hidden),
    )
    if not result.ok:
        log.warning(
            "cmd_failed",
            cmd=shown,
            returncode=proc.returncode,
            stderr=result.stderr[-_STDERR_TAIL:],
        )
    return result


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with suppress(ProcessLookupError):
            proc.kill()


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an async operation.

    Usage::

        async with timed_operation("pipeline_stage", log=log, stage="Building") as timing:
            await builder.build(...)
        print(timing["elapsed_ms"])

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)
