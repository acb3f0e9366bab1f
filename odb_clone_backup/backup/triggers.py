"""Hand-off of a mounted clone to the out-of-system backup product.

The orchestrator's contract ends when ``on_ready`` returns; job progress
and completion are the backup product's business.

Triggers:
    - LoggingTrigger: only logs the ready event (default)
    - CommandTrigger: runs a local command with the event in its environment
    - VeeamJobTrigger: starts a Veeam NAS job through Enterprise Manager REST
"""

from __future__ import annotations

import asyncio
import os
import shlex
from typing import Any, Callable, Mapping, Protocol

import aiohttp

from odb_clone_backup.domain import ReadyEvent
from odb_clone_backup.exceptions import CommandError, TriggerError
from odb_clone_backup.logging import LoggerFactory
from odb_clone_backup.storage.command_runners import command_output, run_command


class BackupTrigger(Protocol):
    def on_ready(self, event: ReadyEvent) -> None: ...


class LoggingTrigger:
    """Log the ready event; an external scheduler picks it up from the logs."""

    def on_ready(self, event: ReadyEvent) -> None:
        LoggerFactory.for_trigger(event.environment).info(
            f"Clone {event.clone_identifier} ready at {event.mount_path}",
            event_type="backup_ready",
            **event.as_dict(),
        )


class CommandTrigger:
    """Run a local command, passing the event through environment variables."""

    def __init__(self, command: str, *, timeout: float = 300.0, runner: Callable = run_command):
        if not command:
            raise ValueError("CommandTrigger needs a command")
        self.argv = shlex.split(command)
        self.timeout = timeout
        self._runner = runner

    def on_ready(self, event: ReadyEvent) -> None:
        log = LoggerFactory.for_trigger(event.environment)
        env = {
            "CLONE_IDENTIFIER": event.clone_identifier,
            "MOUNT_PATH": event.mount_path,
            "BACKUP_ENVIRONMENT": event.environment,
        }
        argv = ["env", *(f"{key}={value}" for key, value in env.items()), *self.argv]
        try:
            result = self._runner(argv, timeout=self.timeout)
        except CommandError as error:
            raise TriggerError(f"Backup command failed: {error}") from error
        if result.returncode != 0:
            raise TriggerError(
                f"Backup command exited {result.returncode}: {command_output(result)}"
            )
        log.info(f"Backup command started for {event.clone_identifier}")


class VeeamJobTrigger:
    """Start a Veeam NAS backup job via Enterprise Manager's REST API."""

    SESSION_HEADER = "X-RestSvcSessionId"

    def __init__(
        self,
        server: str,
        job_id: str,
        username: str,
        password: str,
        *,
        port: int = 9398,
        verify_ssl: bool = True,
        timeout_seconds: int = 60,
    ):
        self.base_url = f"https://{server}:{port}/api"
        self.job_id = job_id
        self.auth = aiohttp.BasicAuth(username, password)
        self.verify_ssl = verify_ssl
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _login(self, session: aiohttp.ClientSession) -> str:
        async with session.post(
            f"{self.base_url}/sessionMngr/?v=latest",
            auth=self.auth,
            headers={"Accept": "application/json"},
            ssl=self.verify_ssl,
        ) as resp:
            if resp.status not in (200, 201):
                raise TriggerError(f"Veeam login failed with status {resp.status}")
            session_id = resp.headers.get(self.SESSION_HEADER)
            if not session_id:
                raise TriggerError("Veeam login returned no session id")
            return session_id

    async def start_job(self) -> dict[str, Any]:
        """Log in and start the job; returns the task description."""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                session_id = await self._login(session)
                headers = {"Accept": "application/json", self.SESSION_HEADER: session_id}
                async with session.post(
                    f"{self.base_url}/nas/jobs/{self.job_id}/start",
                    headers=headers,
                    ssl=self.verify_ssl,
                ) as resp:
                    if resp.status not in (200, 201, 202):
                        raise TriggerError(
                            f"Veeam job {self.job_id} start failed with status {resp.status}"
                        )
                    task = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TriggerError(f"Veeam did not answer within {self.timeout.total:g}s") from e
        except aiohttp.ClientError as e:
            raise TriggerError(f"Network error talking to Veeam: {e}") from e
        except ValueError as e:
            raise TriggerError(f"Veeam returned an unreadable response: {e}") from e
        if not isinstance(task, dict):
            raise TriggerError(f"Veeam returned an unexpected task description: {task!r}")
        return task

    def on_ready(self, event: ReadyEvent) -> None:
        log = LoggerFactory.for_trigger(event.environment)
        task = asyncio.run(self.start_job())
        log.info(
            f"Veeam job {self.job_id} started for {event.clone_identifier}",
            task_id=task.get("TaskId"),
            state=task.get("State"),
        )


def build_trigger(settings: Mapping[str, Any]) -> BackupTrigger:
    """Create the trigger described by an environment's ``trigger`` block.

    Raises:
        TriggerError: Unknown type or missing settings
    """
    kind = settings.get("type", "log")
    if kind == "log":
        return LoggingTrigger()
    if kind == "command":
        command = settings.get("command")
        if not command:
            raise TriggerError("command trigger needs a 'command' setting")
        return CommandTrigger(command, timeout=float(settings.get("timeout", 300.0)))
    if kind == "veeam":
        username = os.environ.get(settings.get("username_env", "VEEAM_USERNAME"), "")
        password = os.environ.get(settings.get("password_env", "VEEAM_PASSWORD"), "")
        missing = [key for key in ("server", "job_id") if not settings.get(key)]
        if missing or not username:
            raise TriggerError(
                "veeam trigger needs server, job_id and credentials in the environment"
            )
        return VeeamJobTrigger(
            settings["server"],
            settings["job_id"],
            username,
            password,
            port=int(settings.get("port", 9398)),
            verify_ssl=bool(settings.get("verify_ssl", True)),
        )
    raise TriggerError(f"Unknown trigger type: {kind!r}")
