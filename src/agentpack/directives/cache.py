"""Persistent result cache for resolved directives.

The cache lives in a TOML file (``agents-cache.toml`` at the project root by
default) and is scoped by package name and installed version::

    schema_version = 1

    [packages."@acme/rules"]
    version = "1.2.0"

    [[packages."@acme/rules".entries]]
    id = "snippet_3f2a9c1b7d4e"
    kind = "delegated"
    prompt_excerpt = "Summarize the repository layout."
    serialized_value = "\"...\""
    timestamp = "2026-01-01T00:00:00+00:00"
    tool_used = "claude"

    [metadata]
    generated_at = "2026-01-01T00:00:00+00:00"
    tool_version = "0.1.0"

Serialization is deterministic (packages sorted by name, entries by id).
Writes are atomic: a temp file in the same directory replaces the target via
``os.replace``. There is no locking, so two renders running at the same time
against one project may overwrite each other's entries.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import toml  # type: ignore[import-untyped]

from agentpack import __version__
from agentpack.directives.models import (
    CacheEntry,
    CacheMetadata,
    CacheStore,
    DirectiveKind,
    PackageCache,
)

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1
CACHE_FILENAME = "agents-cache.toml"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResultCache:
    """Load, query and persist cached directive results.

    Usage:
        cache = ResultCache(project_root / "agents-cache.toml")
        cache.load()
        entry = cache.get("@acme/rules", "1.2.0", directive_id)
    """

    def __init__(
        self,
        path: Path,
        tool_version: str = __version__,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = Path(path)
        self.tool_version = tool_version
        self.clock = clock
        self.store = self._empty_store()

    def timestamp(self) -> str:
        return self.clock().isoformat()

    def _empty_store(self) -> CacheStore:
        return CacheStore(
            schema_version=CACHE_SCHEMA_VERSION,
            metadata=CacheMetadata(generated_at=self.timestamp(), tool_version=self.tool_version),
        )

    def load(self) -> CacheStore:
        """Read the cache file; a missing or malformed file yields an empty store."""
        if not self.path.exists():
            self.store = self._empty_store()
            return self.store

        try:
            data = toml.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, toml.TomlDecodeError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, exc)
            self.store = self._empty_store()
            return self.store

        store = self._decode(data)
        if store is None:
            logger.warning("Invalid cache file structure in %s, starting fresh", self.path)
            store = self._empty_store()
        self.store = store
        return self.store

    def _decode(self, data: dict[str, Any]) -> CacheStore | None:
        schema_version = data.get("schema_version")
        packages_raw = data.get("packages")
        metadata_raw = data.get("metadata")
        if not isinstance(schema_version, int) or not isinstance(packages_raw, dict):
            return None
        if not isinstance(metadata_raw, dict):
            metadata_raw = {}

        packages: dict[str, PackageCache] = {}
        for name, pkg in packages_raw.items():
            if not isinstance(pkg, dict) or not isinstance(pkg.get("version"), str):
                logger.warning("Invalid cache data for package %s, skipping", name)
                continue
            entries_raw = pkg.get("entries", [])
            if not isinstance(entries_raw, list):
                logger.warning("Invalid cache entries for package %s, skipping", name)
                continue
            entries = [entry for entry in map(_decode_entry, entries_raw) if entry is not None]
            packages[name] = PackageCache(version=pkg["version"], entries=entries)

        return CacheStore(
            schema_version=schema_version,
            packages=packages,
            metadata=CacheMetadata(
                generated_at=str(metadata_raw.get("generated_at", "")),
                tool_version=str(metadata_raw.get("tool_version", "")),
            ),
        )

    def save(self, store: CacheStore) -> None:
        """Atomically replace the cache file with *store*.

        Raises:
            OSError: If the file cannot be written. The previous file is left
                untouched and the temp file is removed.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = self.dumps(store)

        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        self.store = store

    def dumps(self, store: CacheStore) -> str:
        """Serialize *store* with packages and entries in sorted order."""
        packages: dict[str, Any] = {}
        for name in sorted(store.packages):
            pkg = store.packages[name]
            packages[name] = {
                "version": pkg.version,
                "entries": [_encode_entry(e) for e in sorted(pkg.entries, key=lambda e: e.id)],
            }
        document = {
            "schema_version": CACHE_SCHEMA_VERSION,
            "packages": packages,
            "metadata": {
                "generated_at": self.timestamp(),
                "tool_version": self.tool_version,
            },
        }
        return toml.dumps(document)

    def get(self, package_name: str, package_version: str, entry_id: str) -> CacheEntry | None:
        """Return the cached entry, or None on a miss or version mismatch."""
        pkg = self.store.packages.get(package_name)
        if pkg is None or pkg.version != package_version:
            return None
        return next((entry for entry in pkg.entries if entry.id == entry_id), None)

    def set(self, package_name: str, package_version: str, entry: CacheEntry) -> None:
        """Insert or replace *entry* and persist immediately.

        A different stored version is replaced wholesale, since its entries
        can never be hit again.
        """
        pkg = self.store.packages.get(package_name)
        if pkg is None or pkg.version != package_version:
            pkg = PackageCache(version=package_version)
            self.store.packages[package_name] = pkg

        pkg.entries = [existing for existing in pkg.entries if existing.id != entry.id]
        pkg.entries.append(entry)
        self._persist()

    def prune(self, keep_package_names: Iterable[str]) -> list[str]:
        """Drop packages not in *keep_package_names*; return the removed names."""
        keep = set(keep_package_names)
        removed = sorted(name for name in self.store.packages if name not in keep)
        if removed:
            for name in removed:
                del self.store.packages[name]
            self._persist()
        return removed

    def clear_package(self, package_name: str) -> None:
        if self.store.packages.pop(package_name, None) is not None:
            self._persist()

    def clear(self) -> None:
        self.store.packages = {}
        self._persist()

    def _persist(self) -> None:
        try:
            self.save(self.store)
        except (OSError, IndexError, TypeError, ValueError) as exc:
            logger.warning("Failed to write cache file %s: %s", self.path, exc)


def _encode_entry(entry: CacheEntry) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": entry.id,
        "kind": entry.kind.value,
        "prompt_excerpt": entry.prompt_excerpt,
        "serialized_value": entry.serialized_value,
        "timestamp": entry.timestamp,
    }
    if entry.tool_used:
        data["tool_used"] = entry.tool_used
    return data


def _decode_entry(raw: Any) -> CacheEntry | None:
    if not isinstance(raw, dict):
        return None
    required = ("id", "kind", "prompt_excerpt", "serialized_value", "timestamp")
    if not all(isinstance(raw.get(key), str) for key in required):
        return None
    try:
        kind = DirectiveKind(raw["kind"])
    except ValueError:
        return None
    tool_used = raw.get("tool_used")
    return CacheEntry(
        id=raw["id"],
        kind=kind,
        prompt_excerpt=raw["prompt_excerpt"],
        serialized_value=raw["serialized_value"],
        timestamp=raw["timestamp"],
        tool_used=tool_used if isinstance(tool_used, str) else None,
    )


def truncate_excerpt(text: str, max_length: int = 100) -> str:
    # The toml encoder corrupts \x-escaped characters, so those become spaces.
    text = "".join(
        " " if ord(ch) < 0x100 and not ch.isprintable() and ch not in "\n\t" else ch
        for ch in text
    ).strip()
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


__all__ = [
    "CACHE_FILENAME",
    "CACHE_SCHEMA_VERSION",
    "ResultCache",
    "truncate_excerpt",
]
