"""
Out-of-process command execution.

Every external tool (docker, qemu, ssh, scp) runs through here: spawn,
collect combined output, wait with a timeout, and terminate the child when
the timeout elapses. Outcomes come back as values, not exceptions.
"""

from __future__ import annotations

import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from kmatrix.errors import ConfigError

logger = structlog.get_logger()

KILL_GRACE_SECONDS = 5.0


@dataclass
class CommandResult:
    """Outcome of one external command."""

    returncode: int
    output: str
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def stop_process(process: subprocess.Popen, grace: float = KILL_GRACE_SECONDS) -> str:
    """Terminate a child, escalating to kill, and return any remaining output."""
    if process.poll() is not None:
        try:
            stdout, _ = process.communicate(timeout=grace)
        except (subprocess.TimeoutExpired, ValueError):
            return ""
        return stdout or ""

    process.terminate()
    try:
        stdout, _ = process.communicate(timeout=grace)
        return stdout or ""
    except subprocess.TimeoutExpired:
        process.kill()
        try:
            stdout, _ = process.communicate(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.error("Process did not exit after kill", pid=process.pid)
            return ""
        return stdout or ""


def run_command(
    cmd: Sequence[str],
    *,
    timeout: float | None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``cmd`` to completion or until ``timeout`` seconds elapse."""
    started = time.monotonic()
    logger.debug("Running command", cmd=list(cmd), timeout=timeout, cwd=str(cwd) if cwd else None)

    try:
        process = subprocess.Popen(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        return CommandResult(
            returncode=127,
            output=f"{cmd[0]}: {exc}",
            duration_seconds=time.monotonic() - started,
        )

    try:
        stdout, _ = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        # communicate() keeps what it read so far; stop_process collects it.
        output = stop_process(process)
        logger.warning("Command timed out", cmd=cmd[0], timeout=timeout, pid=process.pid)
        return CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            output=output,
            timed_out=True,
            duration_seconds=time.monotonic() - started,
        )
    except BaseException:
        # KeyboardInterrupt and friends: never leave the child behind.
        stop_process(process)
        raise

    return CommandResult(
        returncode=process.returncode,
        output=stdout or "",
        duration_seconds=time.monotonic() - started,
    )


def check_required_tools(tools: Sequence[str]) -> None:
    """Fail fast when a required executable is not on PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise ConfigError(f"Command not found: {', '.join(missing)}")
