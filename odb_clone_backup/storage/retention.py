"""Retention window for clone volume groups.

Pure selection logic; deleting what it picks is the orchestrator's job.

Eviction runs before a new clone is taken, so it trims the existing set to
one below the window. Creating the new clone then brings the set back to
exactly ``keep``:

    >>> ids = [CloneIdentifier.parse(n) for n in
    ...        ("3000-copy-prd", "1000-copy-prd", "2000-copy-prd")]
    >>> [str(i) for i in select_for_eviction(ids, keep=3)]
    ['1000-copy-prd']
"""

from __future__ import annotations

from typing import Iterable

from odb_clone_backup.domain import CloneIdentifier


def select_for_eviction(
    existing: Iterable[CloneIdentifier], keep: int
) -> list[CloneIdentifier]:
    """Pick the clones to delete, oldest first.

    Args:
        existing: Clone identifiers of a single environment, any order
        keep: Retention window including the clone about to be created

    Returns:
        Identifiers to delete in deletion order (oldest first)

    Raises:
        ValueError: If keep is negative
    """
    if keep < 0:
        raise ValueError(f"Retention count must be >= 0, got {keep}")

    ordered = sorted(set(existing), key=lambda ident: ident.sort_key)
    selected: list[CloneIdentifier] = []
    while ordered[len(selected):] and len(ordered) - len(selected) >= keep:
        selected.append(ordered[len(selected)])
    return selected


def filter_environment(names: Iterable[str], environment: str) -> list[CloneIdentifier]:
    """Parse volume group names, keeping clones that belong to ``environment``."""
    identifiers = []
    for name in names:
        identifier = CloneIdentifier.try_parse(name)
        if identifier is not None and identifier.environment == environment:
            identifiers.append(identifier)
    return identifiers


class RetentionPolicy:
    """Keep-N retention for one environment."""

    def __init__(self, keep: int):
        if keep < 1:
            raise ValueError(f"Retention count must be at least 1, got {keep}")
        self.keep = keep

    def select_for_eviction(
        self, existing: Iterable[CloneIdentifier]
    ) -> list[CloneIdentifier]:
        return select_for_eviction(existing, self.keep)

    def is_satisfied(self, remaining: int) -> bool:
        """True when there is room for one more clone inside the window."""
        return remaining < self.keep

    def __repr__(self) -> str:
        return f"RetentionPolicy(keep={self.keep})"
