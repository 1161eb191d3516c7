"""Command execution utilities for external storage tools."""

from __future__ import annotations

import subprocess
from typing import Sequence

from pi_bakery.logging import LoggerFactory


log = LoggerFactory.for_mount()

_default_timeout: float | None = None


class CommandError(RuntimeError):
    """External command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = stderr.strip() or stdout.strip() or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class CommandTimeoutError(CommandError):
    def __init__(self, command: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(command, -1, "", f"timed out after {timeout}s")


def configure_command_timeout(timeout: float | None) -> None:
    """Set the default timeout applied to every external command."""
    global _default_timeout
    _default_timeout = timeout


def run_checked_command(
    command: Sequence[str], timeout: float | None = None
) -> str:
    """Run a command and raise CommandError if it fails.

    Returns:
        The command's stdout.
    """
    effective_timeout = timeout if timeout is not None else _default_timeout
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            capture_output=True,
            text=True,
            timeout=effective_timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(command, effective_timeout) from exc
    except OSError as exc:
        # Executable missing or not runnable
        raise CommandError(command, -1, "", str(exc)) from exc
    if result.returncode != 0:
        raise CommandError(command, result.returncode, result.stdout, result.stderr)
    return result.stdout
