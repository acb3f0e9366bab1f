"""Domain models for clone-based backups."""

from __future__ import annotations

from .models import (
    CloneIdentifier,
    CloneSource,
    MountState,
    OperationOutcome,
    ReadyEvent,
    RunFailure,
    RunResult,
    Stage,
    VolumeGroup,
)


__all__ = [
    "CloneIdentifier",
    "CloneSource",
    "MountState",
    "OperationOutcome",
    "ReadyEvent",
    "RunFailure",
    "RunResult",
    "Stage",
    "VolumeGroup",
]
