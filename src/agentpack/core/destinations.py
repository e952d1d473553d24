"""Path containment checks for reads from packages and writes into projects."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Optional

from agentpack.errors import SecurityViolation


class SkipReason(StrEnum):
    """Machine-readable reasons a destination was not written."""

    EXISTS = "exists"
    SYMLINK_ANCESTOR_OUTSIDE = "symlink-ancestor-outside"
    DEST_SYMLINK_OUTSIDE = "dest-symlink-outside"
    DEST_SYMLINK_BROKEN = "dest-symlink-broken"
    UNLINK_FAILED = "unlink-failed"
    EXPORT_OUTSIDE_TEMPLATES = "export-outside-templates"


SKIP_REASON_MESSAGES: dict[SkipReason, str] = {
    SkipReason.EXISTS: "destination exists (use force to overwrite)",
    SkipReason.SYMLINK_ANCESTOR_OUTSIDE: "unsafe symlink ancestor resolves outside project root",
    SkipReason.DEST_SYMLINK_OUTSIDE: "destination symlink resolves outside project root",
    SkipReason.DEST_SYMLINK_BROKEN: "destination symlink is broken and cannot be replaced safely",
    SkipReason.UNLINK_FAILED: "failed to unlink destination symlink before writing",
    SkipReason.EXPORT_OUTSIDE_TEMPLATES: "export path escapes the package templates directory",
}


@dataclass(frozen=True)
class DestinationSafety:
    """``reason`` is set exactly when ``safe`` is false."""

    safe: bool
    unlink_dest_symlink: bool = False
    reason: Optional[SkipReason] = None


def is_within(base: Path, candidate: Path) -> bool:
    """True if *candidate* equals *base* or lies beneath it, lexically."""
    base_abs = os.path.abspath(base)
    cand_abs = os.path.abspath(candidate)
    try:
        return os.path.commonpath([base_abs, cand_abs]) == base_abs
    except ValueError:
        # Different drives on Windows.
        return False


def resolve_within(base: Path, rel: str) -> Path:
    """Join *rel* onto *base*, following symlinks, and require containment.

    Raises:
        SecurityViolation: If the resolved path escapes *base*.
    """
    base_real = Path(base).resolve()
    target = (base_real / rel).resolve()
    if not is_within(base_real, target):
        raise SecurityViolation(
            f"Path escapes base directory: {rel}",
            {"base": str(base), "path": rel},
        )
    return target


class _Boundary:
    """The project root as both its nominal and canonical path."""

    def __init__(self, root: Path) -> None:
        nominal = Path(os.path.abspath(root))
        self.nominal = nominal
        self.bases = {nominal, Path(os.path.realpath(nominal))}

    def contains(self, path: Path) -> bool:
        candidates = {Path(os.path.abspath(path)), Path(os.path.realpath(path))}
        return any(is_within(base, cand) for base in self.bases for cand in candidates)


def evaluate_destination_safety(project_root: Path, dest: Path) -> DestinationSafety:
    """Decide whether writing to *dest* could escape *project_root*.

    Existing ancestors of *dest* up to the root must not be symlinks that
    resolve outside the root. An existing symlink at *dest* may be replaced
    only when it resolves inside the root.
    """
    boundary = _Boundary(project_root)

    current = Path(os.path.abspath(dest)).parent
    while boundary.contains(current):
        if current.is_symlink():
            if not current.exists() or not boundary.contains(Path(os.path.realpath(current))):
                return DestinationSafety(False, reason=SkipReason.SYMLINK_ANCESTOR_OUTSIDE)
        if current == boundary.nominal or current.parent == current:
            break
        current = current.parent

    dest_path = Path(dest)
    if dest_path.is_symlink():
        if not dest_path.exists():
            return DestinationSafety(False, reason=SkipReason.DEST_SYMLINK_BROKEN)
        if not boundary.contains(Path(os.path.realpath(dest_path))):
            return DestinationSafety(False, reason=SkipReason.DEST_SYMLINK_OUTSIDE)
        return DestinationSafety(True, unlink_dest_symlink=True)

    return DestinationSafety(True)


__all__ = [
    "DestinationSafety",
    "SKIP_REASON_MESSAGES",
    "SkipReason",
    "evaluate_destination_safety",
    "is_within",
    "resolve_within",
]
