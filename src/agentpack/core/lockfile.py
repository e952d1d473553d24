"""Read ``agents-lock.toml`` and map locked packages to content-store paths.

The lockfile is written by the installer; this module only reads it::

    [packages."@acme/rules"]
    version = "1.2.0"
    resolved = "https://registry.example/@acme/rules/-/rules-1.2.0.tgz"
    integrity = "sha256-..."
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional

from agentpack.errors import ConfigError, SecurityViolation

logger = logging.getLogger(__name__)

LOCKFILE_FILENAME = "agents-lock.toml"


@dataclass(frozen=True)
class LockedPackage:
    version: str
    resolved: str = ""
    integrity: str = ""


@dataclass
class Lockfile:
    packages: dict[str, LockedPackage] = field(default_factory=dict)

    def get(self, name: str) -> Optional[LockedPackage]:
        return self.packages.get(name)


def read_lockfile(project_root: Path) -> Optional[Lockfile]:
    """Return the project's lockfile, or None when there is none.

    Entries without a string ``version`` are skipped with a warning.

    Raises:
        ConfigError: If the file exists but is not valid TOML.
    """
    path = Path(project_root) / LOCKFILE_FILENAME
    if not path.is_file():
        return None

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}", details={"path": str(path)}) from exc

    packages: dict[str, LockedPackage] = {}
    raw_packages = data.get("packages", {})
    if not isinstance(raw_packages, dict):
        raise ConfigError(f"{path}: [packages] must be a table", details={"path": str(path)})

    for name, entry in raw_packages.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("version"), str):
            logger.warning("Skipping lockfile entry %s without a version", name)
            continue
        packages[name] = LockedPackage(
            version=entry["version"],
            resolved=str(entry.get("resolved", "")),
            integrity=str(entry.get("integrity", "")),
        )
    return Lockfile(packages=packages)


class ContentStore:
    """Read-only view of the extracted package store (``<store>/<name>/<version>``)."""

    def __init__(self, store_dir: Path) -> None:
        self.store_dir = Path(store_dir)

    def package_path(self, name: str, version: str) -> Path:
        """Return the store directory for *name* at *version*.

        Raises:
            SecurityViolation: If the name or version would leave the store.
        """
        parts = PurePosixPath(name.replace("\\", "/")).parts + (version,)
        if any(part in ("", ".", "..") or part.startswith("/") for part in parts):
            raise SecurityViolation(
                f"Invalid package path component in {name}@{version}",
                {"name": name, "version": version},
            )
        return self.store_dir.joinpath(*parts)


__all__ = ["ContentStore", "LOCKFILE_FILENAME", "LockedPackage", "Lockfile", "read_lockfile"]
