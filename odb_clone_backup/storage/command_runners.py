"""Command execution utilities for local and SSH-remote commands."""

from __future__ import annotations

import shlex
import subprocess
from typing import Sequence

from odb_clone_backup.exceptions import CommandError, CommandTimeoutError
from odb_clone_backup.logging import get_logger

log = get_logger(source="command")

# ssh reserves exit status 255 for its own (connection/auth) failures.
SSH_TRANSPORT_FAILURE = 255

DEFAULT_SSH_OPTIONS = ("-o", "BatchMode=yes", "-o", "ConnectTimeout=10")


def run_command(
    command: Sequence[str],
    input_text: str | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """Run a command without raising on a non-zero exit status.

    Raises:
        CommandTimeoutError: If the command exceeds ``timeout``
        CommandError: If the executable cannot be started
    """
    command = list(command)
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        raise CommandTimeoutError(command, timeout) from error
    except OSError as error:
        raise CommandError(command, None, str(error)) from error
    if result.stdout:
        log.bind(tags=["command-output"]).trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        log.bind(tags=["command-output"]).trace(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def command_output(result: subprocess.CompletedProcess) -> str:
    """Best error text from a finished command: stderr, then stdout."""
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    return stderr or stdout


def run_checked_command(
    command: Sequence[str],
    input_text: str | None = None,
    timeout: float | None = None,
) -> str:
    """Run a command and raise CommandError if it fails."""
    result = run_command(command, input_text=input_text, timeout=timeout)
    if result.returncode != 0:
        raise CommandError(command, result.returncode, command_output(result))
    return result.stdout


def ssh_command(
    user: str,
    host: str,
    remote_argv: Sequence[str],
    ssh_options: Sequence[str] = DEFAULT_SSH_OPTIONS,
) -> list[str]:
    """Build an ssh argument list that runs ``remote_argv`` on ``user@host``.

    The remote side goes through a shell, so every argument is quoted.
    """
    if not user or not host:
        raise ValueError("ssh user and host are required")
    remote = " ".join(shlex.quote(str(arg)) for arg in remote_argv)
    return ["ssh", *ssh_options, f"{user}@{host}", remote]


def with_sudo(command: Sequence[str], use_sudo: bool) -> list[str]:
    if use_sudo:
        return ["sudo", "-n", *command]
    return list(command)


__all__ = [
    "DEFAULT_SSH_OPTIONS",
    "SSH_TRANSPORT_FAILURE",
    "command_output",
    "run_checked_command",
    "run_command",
    "ssh_command",
    "with_sudo",
]
