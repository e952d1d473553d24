"""Collect the files a package exports for each tool."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from agentpack.core.destinations import is_within
from agentpack.core.manifest import ExportEntry

logger = logging.getLogger(__name__)

SUPPORTED_TOOLS: tuple[str, ...] = ("claude", "codex", "gemini", "cursor", "copilot")
TEMPLATES_DIRNAME = "templates"

# Single-file export keys; the flag marks MCP server configs.
FILE_EXPORTS: tuple[tuple[str, bool], ...] = (
    ("template", False),
    ("settings", False),
    ("settings_local", False),
    ("mcp_servers", True),
)
DIRECTORY_EXPORTS: tuple[str, ...] = ("subagents_dir", "commands_dir", "skills_dir", "prompts_dir")


@dataclass(frozen=True)
class ExportItem:
    source: Path
    rel: str  # relative to the package's templates/ directory, posix separators
    tool: str
    is_mcp_config: bool = False


@dataclass
class ExportCollection:
    items: list[ExportItem] = field(default_factory=list)
    escaped: list[Path] = field(default_factory=list)


def collect_from_exports(package_root: Path, tool: str, entry: Optional[ExportEntry]) -> ExportCollection:
    """Collect every file *entry* exports for *tool*.

    Paths that resolve outside ``<package_root>/templates`` are reported in
    ``escaped`` and never read.
    """
    collection = ExportCollection()
    if entry is None:
        return collection

    templates_root = Path(os.path.abspath(Path(package_root) / TEMPLATES_DIRNAME))
    templates_real = Path(os.path.realpath(templates_root))

    for key, is_mcp in FILE_EXPORTS:
        value = getattr(entry, key)
        if not isinstance(value, str) or not value:
            continue
        source = Path(os.path.abspath(templates_root / _strip_templates_prefix(value)))
        if not _contained(templates_root, templates_real, source):
            logger.warning("Export %s=%s escapes %s, skipping", key, value, templates_root)
            collection.escaped.append(source)
            continue
        collection.items.append(
            ExportItem(source=source, rel=_relative(source, templates_root), tool=tool, is_mcp_config=is_mcp)
        )

    for key in DIRECTORY_EXPORTS:
        value = getattr(entry, key)
        if not isinstance(value, str) or not value:
            continue
        directory = Path(os.path.abspath(templates_root / _strip_templates_prefix(value)))
        if not _contained(templates_root, templates_real, directory):
            logger.warning("Export %s=%s escapes %s, skipping", key, value, templates_root)
            collection.escaped.append(directory)
            continue
        for file_path in collect_files_recursively(directory):
            if not _contained(templates_root, templates_real, file_path):
                logger.warning("Skipping %s: resolves outside %s", file_path, templates_root)
                collection.escaped.append(file_path)
                continue
            collection.items.append(
                ExportItem(source=file_path, rel=_relative(file_path, templates_root), tool=tool)
            )

    return collection


def collect_files_recursively(root: Path) -> list[Path]:
    """Return every regular file under *root*, sorted.

    Symlinked directories are followed once; a directory whose real path was
    already visited is not entered again, so link cycles terminate.
    """
    root = Path(os.path.abspath(root))
    if not root.is_dir():
        return []

    files: list[Path] = []
    visited: set[str] = set()
    stack = [root]
    while stack:
        current = stack.pop()
        real = os.path.realpath(current)
        if real in visited:
            logger.debug("Already visited %s (%s), not descending", current, real)
            continue
        visited.add(real)
        try:
            entries = sorted(os.scandir(current), key=lambda e: e.name)
        except OSError as exc:
            logger.warning("Cannot read directory %s: %s", current, exc)
            continue
        for dir_entry in entries:
            path = Path(dir_entry.path)
            if dir_entry.is_dir():
                stack.append(path)
            elif dir_entry.is_file():
                files.append(path)
    return sorted(files)


def _strip_templates_prefix(value: str) -> str:
    normalized = value.replace("\\", "/")
    prefix = f"{TEMPLATES_DIRNAME}/"
    return normalized[len(prefix) :] if normalized.startswith(prefix) else normalized


def _contained(templates_root: Path, templates_real: Path, path: Path) -> bool:
    if not is_within(templates_root, path):
        return False
    return not os.path.exists(path) or is_within(templates_real, Path(os.path.realpath(path)))


def _relative(path: Path, templates_root: Path) -> str:
    return Path(os.path.relpath(path, templates_root)).as_posix()


__all__ = [
    "DIRECTORY_EXPORTS",
    "ExportCollection",
    "ExportItem",
    "FILE_EXPORTS",
    "SUPPORTED_TOOLS",
    "collect_files_recursively",
    "collect_from_exports",
]
