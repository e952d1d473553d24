"""Reader for ``agents.toml`` package manifests.

Example::

    [package]
    name = "@acme/rules"
    version = "1.2.0"

    [exports.claude]
    template = "templates/CLAUDE.md.j2"
    commandsDir = "templates/commands"
    mcpServers = "templates/mcp.json"

    [profiles]
    backend = ["@acme/rules", "python-style"]
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentpack.errors import ConfigError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "agents.toml"


class ExportEntry(BaseModel):
    """One tool's export table. Unknown keys are kept for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    template: Optional[str] = Field(default=None, min_length=1)
    settings: Optional[str] = None
    settings_local: Optional[str] = Field(default=None, alias="settingsLocal")
    mcp_servers: Optional[str] = Field(default=None, alias="mcpServers")
    subagents_dir: Optional[str] = Field(default=None, alias="subagentsDir")
    commands_dir: Optional[str] = Field(default=None, alias="commandsDir")
    skills_dir: Optional[str] = Field(default=None, alias="skillsDir")
    prompts_dir: Optional[str] = Field(default=None, alias="promptsDir")


class PackageInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    version: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    tool: Optional[str] = None


class ProjectManifest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    package: PackageInfo = Field(default_factory=PackageInfo)
    dependencies: dict[str, str] = Field(default_factory=dict)
    exports: dict[str, ExportEntry] = Field(default_factory=dict)
    profiles: dict[str, list[str]] = Field(default_factory=dict)


def read_manifest(directory: Path) -> Optional[ProjectManifest]:
    """Read ``agents.toml`` from *directory*.

    Returns:
        The parsed manifest, or None when the file does not exist.

    Raises:
        ConfigError: If the file is not valid TOML or fails validation.
    """
    path = Path(directory) / MANIFEST_FILENAME
    if not path.is_file():
        return None

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}", details={"path": str(path)}) from exc

    try:
        return ProjectManifest.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid manifest {path}: {exc}", details={"path": str(path)}) from exc


__all__ = ["ExportEntry", "MANIFEST_FILENAME", "PackageInfo", "ProjectManifest", "read_manifest"]
