# Copyright (c) Syntropy Systems
"""Process runner for engine steps with orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import shutil
import signal
import subprocess
import sys
import time
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    Prevents an orphaned engine process when the gate is interrupted.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


def run_command(
    argv: list[str],
    *,
    timeout: float,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str] | None:
    """Run a short command and capture its output.

    Returns None if the executable is missing, cannot be started or times out.
    """
    cmd_path = shutil.which(argv[0])
    if cmd_path is None:
        return None
    try:
        return subprocess.run(  # noqa: S603
            [cmd_path, *argv[1:]],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None


class ProcessRunner:
    """Runs one engine step with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Captures stdout/stderr to a per-step log file
    - Provides graceful and forceful termination
    """

    command_argv: list[str]
    workdir: Path
    output_path: Path
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _output_file: IO[str] | None

    def __init__(
        self,
        command_argv: list[str],
        workdir: Path,
        output_path: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a process runner.

        Args:
            command_argv: Command as list of argv tokens (no shell)
            workdir: Working directory to run the command in
            output_path: Log file receiving stdout and stderr
            env: Additional environment variables

        """
        self.command_argv = command_argv
        self.workdir = workdir
        self.output_path = output_path

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._output_file = None

    def start(self) -> None:
        """Start the process."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        # Append so repeated invocations of one step share a log
        self._output_file = self.output_path.open("a")
        logger.debug("Starting %s (log: %s)", self.command_argv, self.output_path)

        self._process = subprocess.Popen(  # noqa: S603
            self.command_argv,
            stdout=self._output_file,
            stderr=subprocess.STDOUT,
            env=self.env,
            cwd=str(self.workdir),
            start_new_session=True,  # Creates new process group
            preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
        )

    def wait(self) -> int:
        """Wait for the process to finish and return exit code."""
        if self._process is None:
            return self._exit_code or 0

        code = self._process.wait()
        self._exit_code = code
        self._cleanup()
        return code

    def run(self) -> int:
        """Start the process, wait for it, and kill it on interrupt."""
        self.start()
        try:
            return self.wait()
        except KeyboardInterrupt:
            _ = self.kill()
            raise

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the process.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        # Already finished?
        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            # Process already gone
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        # Still alive - SIGKILL
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def tail(self, lines: int = 20) -> str:
        """Return the last lines of the step log."""
        if not self.output_path.exists():
            return ""
        content = self.output_path.read_text(errors="replace").splitlines()
        return "\n".join(content[-lines:])

    def _cleanup(self) -> None:
        if self._output_file:
            with contextlib.suppress(OSError):
                self._output_file.close()
            self._output_file = None

    @property
    def pid(self) -> int | None:
        """Get the process ID."""
        if self._process is None:
            return None
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished."""
        return self._exit_code
