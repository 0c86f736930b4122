"""External process execution.

This module handles:
- Spawning build tools with piped stdout/stderr
- Streaming output lines to a callback while the tool runs
- Enforcing timeouts
- Terminating child processes when a run is cancelled
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

# How often a running process is checked for cancellation (seconds)
POLL_INTERVAL = 0.2

# Time given to a terminated process before it is killed (seconds)
TERMINATE_GRACE = 5.0

# Number of stderr lines kept for diagnostics
STDERR_TAIL_LINES = 200

LineCallback = Callable[[str, str], None]


class CommandError(Exception):
    """Raised when an external command cannot be run or fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "command_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.code = code


class CancelToken:
    """Cooperative cancellation flag shared by every unit of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; running commands are terminated."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or the timeout elapses."""
        return self._event.wait(timeout)


@dataclass
class CommandResult:
    """Result of a finished command.

    Attributes:
        command: The command line that was executed.
        exit_code: Process exit code.
        stdout: Full standard output.
        stderr: Tail of standard error.
        duration: Wall time in seconds.
    """

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def diagnostic(self, lines: int = 20) -> str:
        """Return the last stderr lines, for error messages."""
        tail = [line for line in self.stderr.splitlines() if line.strip()]
        return "\n".join(tail[-lines:])


def find_binary(*names: str) -> str | None:
    """Return the path of the first executable found on PATH."""
    for name in names:
        path = shutil.which(name)
        if path:
            return path
    return None


def _pump(
    stream: IO[str],
    name: str,
    collect: Callable[[str], object],
    on_line: LineCallback | None,
) -> None:
    with stream:
        for raw in stream:
            line = raw.rstrip("\r\n")
            collect(line)
            if on_line is not None:
                on_line(name, line)


def _terminate(proc: subprocess.Popen[str]) -> None:
    """Terminate the process group of a child, then kill it if it lingers."""
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d did not exit, killing it", proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env_override: dict[str, str] | None = None,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
    on_line: LineCallback | None = None,
    stdin_data: str | None = None,
) -> CommandResult:
    """Run a command, streaming its output.

    The child runs in its own session so that termination reaches every
    process it spawned.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        env_override: Environment variables added to the current environment.
        timeout: Timeout in seconds (None = no timeout).
        cancel: Token checked while the command runs.
        on_line: Called with ("stdout" | "stderr", line) for every line.
        stdin_data: Text written to the child's stdin.

    Returns:
        CommandResult, whatever the exit code.

    Raises:
        CommandError: If the command cannot start, times out or is aborted.
    """
    cmd = [str(part) for part in cmd]
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise CommandError(
            f"Executable not found: {cmd[0]}",
            code="not_found",
        ) from e
    except OSError as e:
        raise CommandError(
            f"Failed to execute {cmd[0]}: {e}",
            code="execution_error",
        ) from e

    stdout_lines: list[str] = []
    stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    assert proc.stdout is not None and proc.stderr is not None
    readers = [
        threading.Thread(
            target=_pump,
            args=(proc.stdout, "stdout", stdout_lines.append, on_line),
            daemon=True,
        ),
        threading.Thread(
            target=_pump,
            args=(proc.stderr, "stderr", stderr_tail.append, on_line),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()

    if stdin_data is not None and proc.stdin is not None:
        try:
            proc.stdin.write(stdin_data)
            proc.stdin.close()
        except BrokenPipeError:
            logger.debug("Child closed stdin early: %s", cmd_str)

    deadline = started + timeout if timeout is not None else None
    while True:
        try:
            exit_code = proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass

        if cancel is not None and cancel.cancelled:
            logger.warning("Aborting: %s", cmd_str)
            _terminate(proc)
            raise CommandError(
                f"Command aborted: {cmd[0]}",
                exit_code=proc.returncode,
                stderr="\n".join(stderr_tail),
                code="aborted",
            )
        if deadline is not None and time.monotonic() >= deadline:
            logger.error("Command timed out after %ss: %s", timeout, cmd_str)
            _terminate(proc)
            raise CommandError(
                f"Command timed out after {timeout} seconds: {cmd[0]}",
                exit_code=proc.returncode,
                stderr="\n".join(stderr_tail),
                code="timeout",
            )

    for reader in readers:
        reader.join()

    duration = time.monotonic() - started
    if exit_code != 0:
        logger.error("Command failed with exit code %d: %s", exit_code, cmd_str)
    else:
        logger.debug("Command finished in %.1fs: %s", duration, cmd_str)

    return CommandResult(
        command=cmd_str,
        exit_code=exit_code,
        stdout="\n".join(stdout_lines),
        stderr="\n".join(stderr_tail),
        duration=duration,
    )


def run_checked(
    cmd: Sequence[str],
    **kwargs: object,
) -> CommandResult:
    """Run a command and raise if it exits non-zero.

    Accepts the same keyword arguments as run_command().

    Raises:
        CommandError: With code "command_failed" and the stderr tail.
    """
    result = run_command(cmd, **kwargs)  # type: ignore[arg-type]
    if not result.success:
        detail = result.diagnostic()
        message = f"{Path(str(cmd[0])).name} exited with code {result.exit_code}"
        if detail:
            message = f"{message}: {detail}"
        raise CommandError(
            message,
            exit_code=result.exit_code,
            stderr=result.stderr,
            code="command_failed",
        )
    return result


__all__ = [
    "CancelToken",
    "CommandError",
    "CommandResult",
    "find_binary",
    "run_checked",
    "run_command",
]
