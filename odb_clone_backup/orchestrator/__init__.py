"""Clone lifecycle orchestration."""

from .lifecycle import CloneLifecycleOrchestrator

__all__ = ["CloneLifecycleOrchestrator"]
