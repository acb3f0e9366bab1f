"""Freeze/thaw of the IRIS instance on the database host.

``instfreeze`` / ``instthaw`` are run over passwordless ssh. Both are
idempotent on the guest side, but this client never retries on its own:
the orchestrator owns the bounded thaw retry and the escalation.
"""

from __future__ import annotations

import shlex
from typing import Callable, Sequence

from odb_clone_backup.domain import OperationOutcome
from odb_clone_backup.exceptions import (
    CommandError,
    FreezeError,
    GuestCommandError,
    ThawError,
)
from odb_clone_backup.logging import LoggerFactory
from odb_clone_backup.storage.command_runners import (
    DEFAULT_SSH_OPTIONS,
    command_output,
    run_command,
    ssh_command,
)

DEFAULT_FREEZE_COMMAND = "/epic/{instance}/bin/instfreeze"
DEFAULT_THAW_COMMAND = "/epic/{instance}/bin/instthaw"


class GuestFreezeClient:
    """Remote freeze/thaw for one database environment."""

    def __init__(
        self,
        environment: str,
        target_host: str,
        target_user: str = "epicadm",
        *,
        instance: str | None = None,
        freeze_command: str = DEFAULT_FREEZE_COMMAND,
        thaw_command: str = DEFAULT_THAW_COMMAND,
        ssh_options: Sequence[str] = DEFAULT_SSH_OPTIONS,
        timeout: float = 30.0,
        runner: Callable = run_command,
    ):
        self.environment = environment
        self.target_host = target_host
        self.target_user = target_user
        self.instance = instance or environment
        self.freeze_command = freeze_command.format(instance=self.instance)
        self.thaw_command = thaw_command.format(instance=self.instance)
        self.ssh_options = tuple(ssh_options)
        self.timeout = timeout
        self._runner = runner
        self.log = LoggerFactory.for_guest(environment)

    def _invoke(self, command: str, error_type: type[GuestCommandError]) -> OperationOutcome:
        argv = ssh_command(
            self.target_user,
            self.target_host,
            shlex.split(command),
            ssh_options=self.ssh_options,
        )
        try:
            result = self._runner(argv, timeout=self.timeout)
        except CommandError as error:
            raise error_type(self.environment, error.output) from error
        if result.returncode != 0:
            detail = command_output(result) or f"exit status {result.returncode}"
            raise error_type(self.environment, detail)
        output = (result.stdout or "").strip()
        if output:
            self.log.debug(output)
        return OperationOutcome.DONE

    def freeze(self) -> OperationOutcome:
        """Quiesce database writes.

        Raises:
            FreezeError: Freeze command failed or timed out
        """
        self.log.info(f"Freezing {self.environment} on {self.target_host}")
        return self._invoke(self.freeze_command, FreezeError)

    def thaw(self) -> OperationOutcome:
        """Resume database writes.

        Raises:
            ThawError: Thaw command failed or timed out
        """
        self.log.info(f"Thawing {self.environment} on {self.target_host}")
        return self._invoke(self.thaw_command, ThawError)
