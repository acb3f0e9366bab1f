"""Domain model for clone-based backups.

Type-safe value objects shared by the control-plane client, the mount host
and the lifecycle orchestrator. Nothing in here talks to a remote system.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ==============================================================================
# Clone Identity
# ==============================================================================

CLONE_NAME_PATTERN = re.compile(r"^(?P<timestamp>\d+)-copy-(?P<environment>.+)$")


@dataclass(frozen=True)
class CloneIdentifier:
    """Name of a clone volume group: ``{timestamp}-copy-{environment}``.

    The timestamp is the orchestration start time in seconds since the epoch,
    so sorting on it yields creation order.
    """

    timestamp: int
    environment: str

    def __post_init__(self) -> None:
        if self.timestamp < 0:
            raise ValueError(f"Clone timestamp must be non-negative: {self.timestamp}")
        if not self.environment or any(ch.isspace() for ch in self.environment):
            raise ValueError(f"Invalid environment tag: {self.environment!r}")

    @property
    def name(self) -> str:
        return f"{self.timestamp}-copy-{self.environment}"

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.timestamp, self.name)

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, name: str) -> CloneIdentifier:
        """Parse a volume group name.

        Raises:
            ValueError: If the name does not follow the clone naming scheme
        """
        match = CLONE_NAME_PATTERN.match(name.strip())
        if not match:
            raise ValueError(f"Not a clone identifier: {name!r}")
        return cls(int(match.group("timestamp")), match.group("environment"))

    @classmethod
    def try_parse(cls, name: str) -> CloneIdentifier | None:
        try:
            return cls.parse(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class CloneSource:
    """What gets cloned: a Nutanix volume group or a single vmdisk.

    Single-disk sources are cloned into a freshly created volume group, so
    everything after the clone step sees a volume group either way.
    """

    volume_group: str | None = None
    disk: str | None = None

    def __post_init__(self) -> None:
        if bool(self.volume_group) == bool(self.disk):
            raise ValueError(
                "Exactly one of source volume group or source disk must be set"
            )

    @property
    def is_single_disk(self) -> bool:
        return self.disk is not None

    def describe(self) -> str:
        if self.is_single_disk:
            return f"vmdisk {self.disk}"
        return f"volume group {self.volume_group}"


# ==============================================================================
# Control Plane State
# ==============================================================================


@dataclass(frozen=True)
class VolumeGroup:
    """A volume group as reported by the storage control plane."""

    name: str
    uuid: str | None = None
    attached_vm_uuids: tuple[str, ...] = ()
    disk_count: int = 0

    @property
    def identifier(self) -> CloneIdentifier | None:
        return CloneIdentifier.try_parse(self.name)

    @property
    def is_attached(self) -> bool:
        return bool(self.attached_vm_uuids)

    def is_attached_to(self, vm_uuid: str) -> bool:
        wanted = vm_uuid.lower()
        return any(attached.lower() == wanted for attached in self.attached_vm_uuids)


class OperationOutcome(Enum):
    """Result of a mutating client call that did not raise."""

    DONE = "done"
    ALREADY_ACHIEVED = "already_achieved"  # target already in desired state


# ==============================================================================
# Mount State
# ==============================================================================


@dataclass
class MountState:
    """Transient view of the clone on this host for one run."""

    mount_point: str
    device_path: str | None = None
    mounted: bool = False


@dataclass(frozen=True)
class ReadyEvent:
    """Handed to the backup trigger once the clone is mounted."""

    clone_identifier: str
    mount_path: str
    environment: str

    def as_dict(self) -> dict[str, str]:
        return {
            "cloneIdentifier": self.clone_identifier,
            "mountPath": self.mount_path,
            "environment": self.environment,
        }


# ==============================================================================
# Run State
# ==============================================================================


class Stage(Enum):
    """States of one clone-lifecycle run."""

    IDLE = "idle"
    RECLAIMING = "reclaiming"
    FREEZING = "freezing"
    CLONING = "cloning"
    THAWING = "thawing"
    ATTACHING = "attaching"
    MOUNTING = "mounting"
    READY = "ready"
    DONE = "done"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class RunFailure:
    """Terminal ``Failed(stage, reason)`` with enough context to diagnose."""

    stage: Stage
    reason: str
    operation: str | None = None
    detail: str = ""
    clone_identifier: str | None = None

    def __str__(self) -> str:
        return f"Failed({self.stage.label}, {self.reason!r})"


@dataclass(frozen=True)
class RunResult:
    """Outcome of one orchestration run."""

    environment: str
    stage: Stage
    clone_identifier: str | None = None
    mount_point: str | None = None
    failure: RunFailure | None = None
    history: tuple[Stage, ...] = field(default_factory=tuple)
    ready_event: ReadyEvent | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def report(self) -> dict[str, Any]:
        """Structured summary for the CLI and for alerting."""
        report: dict[str, Any] = {
            "environment": self.environment,
            "status": self.stage.value,
            "cloneIdentifier": self.clone_identifier,
            "mountPoint": self.mount_point,
            "stages": [stage.value for stage in self.history],
        }
        if self.failure is not None:
            report["failure"] = {
                "stage": self.failure.stage.value,
                "reason": self.failure.reason,
                "operation": self.failure.operation,
                "detail": self.failure.detail,
            }
        return report
