"""Downstream backup triggers fired once a clone is mounted."""

from .triggers import (
    BackupTrigger,
    CommandTrigger,
    LoggingTrigger,
    VeeamJobTrigger,
    build_trigger,
)

__all__ = [
    "BackupTrigger",
    "CommandTrigger",
    "LoggingTrigger",
    "VeeamJobTrigger",
    "build_trigger",
]
