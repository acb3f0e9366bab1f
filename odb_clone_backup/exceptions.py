"""Custom exceptions for clone-backup operations.

This module defines a hierarchy of exceptions so the orchestrator can tell
transient control-plane hiccups apart from precondition violations, guest
freeze/thaw failures and local mount problems.

Exception Hierarchy:
    BackupError (base)
        ├── ConfigError
        ├── CommandError
        │   └── CommandTimeoutError
        ├── ControlPlaneError
        │   ├── TransientControlPlaneError
        │   ├── VolumeGroupNotFoundError
        │   ├── VolumeGroupExistsError
        │   └── PreconditionError
        ├── GuestCommandError
        │   ├── FreezeError
        │   ├── ThawError
        │   └── ThawEscalationError
        ├── MountError
        │   ├── DeviceNotFoundError
        │   ├── MountOperationError
        │   └── MountVerificationError
        ├── ReclaimError
        └── TriggerError

"Already in desired state" results (detach of a detached group, delete of a
missing group, unmount of an unmounted path) are not errors; clients return
``OperationOutcome.ALREADY_ACHIEVED`` for those.

Usage:
    from odb_clone_backup.exceptions import PreconditionError

    if group.disk_count:
        raise PreconditionError("vg.disk_create", group.name, "0 disks", "2 disks")
"""

from __future__ import annotations

from typing import Sequence


class BackupError(Exception):
    """Base exception for all clone-backup operations."""



class ConfigError(BackupError):
    """Environment configuration is missing or invalid."""



class CommandError(BackupError):
    """A local or remote command exited unsuccessfully."""

    def __init__(self, command: Sequence[str], returncode: int | None, output: str):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class CommandTimeoutError(CommandError):
    """A command did not complete within its timeout."""

    def __init__(self, command: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(command, None, f"timed out after {timeout:g}s")


class ControlPlaneError(BackupError):
    """A storage control-plane call failed."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")


class TransientControlPlaneError(ControlPlaneError):
    """Control plane unreachable or timed out; safe to retry."""



class VolumeGroupNotFoundError(ControlPlaneError):
    """Volume group does not exist on the control plane."""



class VolumeGroupExistsError(ControlPlaneError):
    """Volume group already exists on the control plane."""



class PreconditionError(ControlPlaneError):
    """Remote object is not in the state an operation requires."""

    def __init__(self, operation: str, group: str, expected: str, actual: str):
        self.group = group
        self.expected = expected
        self.actual = actual
        super().__init__(
            operation, f"volume group {group}: expected {expected}, found {actual}"
        )


class GuestCommandError(BackupError):
    """Freeze or thaw command on the database host failed."""

    def __init__(self, environment: str, detail: str):
        self.environment = environment
        self.detail = detail
        super().__init__(f"{self.action} of {environment} failed: {detail}")

    action = "Guest command"


class FreezeError(GuestCommandError):
    """Database instance could not be frozen."""

    action = "Freeze"


class ThawError(GuestCommandError):
    """Database instance could not be thawed."""

    action = "Thaw"


class ThawEscalationError(GuestCommandError):
    """Thaw retries exhausted; the source database is still frozen."""

    action = "Thaw"

    def __init__(self, environment: str, attempts: int, detail: str):
        self.attempts = attempts
        super().__init__(
            environment,
            f"gave up after {attempts} attempts, source left frozen: {detail}",
        )


class MountError(BackupError):
    """Base exception for mount-host errors."""



class DeviceNotFoundError(MountError):
    """No device path could be resolved for a logical volume group."""

    def __init__(self, volume_group: str, reason: str = ""):
        self.volume_group = volume_group
        self.reason = reason
        msg = f"No device found for volume group {volume_group}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountOperationError(MountError):
    """mount/umount/vgremove invocation failed."""

    def __init__(self, message: str, target: str | None = None):
        self.target = target
        super().__init__(message)


class MountVerificationError(MountError):
    """Filesystem is not mounted after a successful mount call."""

    def __init__(self, device_path: str, mount_point: str):
        self.device_path = device_path
        self.mount_point = mount_point
        super().__init__(
            f"Device {device_path} not mounted at {mount_point} "
            f"after mount operation"
        )


class ReclaimError(BackupError):
    """Expired clones could not be reclaimed below the retention window."""

    def __init__(self, environment: str, remaining: int, keep: int):
        self.environment = environment
        self.remaining = remaining
        self.keep = keep
        super().__init__(
            f"{remaining} clones remain for {environment} after reclaim, "
            f"need fewer than {keep}"
        )


class TriggerError(BackupError):
    """The downstream backup trigger could not be notified."""
