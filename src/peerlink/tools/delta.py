"""
Delta engine for nested key-value trees.

Used to ship only the changed part of the client's configuration and to
reason about room roster changes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DeltaRecord:
    """Keys to add or overwrite, and keys to delete, relative to an older tree."""

    added: Dict[str, Any] = field(default_factory=dict)
    removed: Dict[str, Any] = field(default_factory=dict)


def diff(old: Optional[dict], new: dict) -> Optional[DeltaRecord]:
    """
    Compare two trees and return what changed, or None when nothing did.

    A key of ``new`` is added when it is missing from ``old`` or holds a
    different value. Nested dicts are compared recursively, but a changed
    sub-tree is reported whole under ``added``. Keys of ``old`` missing
    from ``new`` are removed. ``old`` of None means every key is added.
    """
    added = {}
    removed = {}

    for key, value in new.items():
        if old is None or key not in old:
            added[key] = value
        elif isinstance(value, dict) and isinstance(old[key], dict):
            if diff(old[key], value) is not None:
                added[key] = value
        elif value != old[key]:
            added[key] = value

    if old is not None:
        for key, value in old.items():
            if key not in new:
                removed[key] = value

    if not added and not removed:
        return None
    return DeltaRecord(added=added, removed=removed)


def apply(tree: Optional[dict], record: Optional[DeltaRecord]) -> dict:
    """Return a copy of tree with the record's additions set and removals deleted."""
    result = dict(tree or {})
    if record is None:
        return result
    result.update(record.added)
    for key in record.removed:
        result.pop(key, None)
    return result
