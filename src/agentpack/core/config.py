"""Layered configuration for rendering.

Configuration comes from, lowest precedence first:

1. built-in defaults
2. the user config at ``<home>/config.yaml``
3. the project config at ``<project>/.agentpack/config.yaml``
4. explicit overrides passed by the caller

Example ``config.yaml``::

    profile:
      tools:
        - type: codex
          args: [exec]
        - type: claude
          model: default
          env:
            ANTHROPIC_API_KEY: env:MY_KEY
    context:
      files:
        claude: docs/CLAUDE.md
    render:
      tool_safe_mode: true
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from agentpack.errors import ConfigError, ErrorCode
from agentpack.runtime.home import get_agentpack_home, get_user_config_path

logger = logging.getLogger(__name__)

ToolName = Literal["claude", "codex", "cursor", "copilot", "gemini"]

# Tools that can answer delegated prompts.
ANSWER_TOOLS: tuple[str, ...] = ("claude", "codex", "gemini")
# Tools accepted as the primary tool of a render.
PRIMARY_TOOLS: tuple[str, ...] = ("claude", "codex")

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-5-20250929"
PROJECT_CONFIG_DIR = ".agentpack"
CONFIG_FILENAME = "config.yaml"


class ToolSpec(BaseModel):
    """How to launch one agent CLI."""

    model_config = ConfigDict(extra="forbid")

    type: ToolName
    command: Optional[str] = None
    args: Optional[list[str]] = None
    model: Optional[str] = None
    env: Optional[dict[str, str]] = None


class ProfileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tools: list[ToolSpec] = Field(default_factory=list)


class ContextFiles(BaseModel):
    """Default destination filename per tool."""

    model_config = ConfigDict(extra="forbid")

    claude: str = "CLAUDE.md"
    codex: str = "AGENTS.md"
    cursor: str = ".cursor/rules.mdc"
    copilot: str = ".github/copilot-instructions.md"
    gemini: str = "GEMINI.md"


class ContextConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_turns: Optional[int] = Field(default=None, gt=0)
    files: ContextFiles = Field(default_factory=ContextFiles)


class RenderSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tool_safe_mode: bool = True


class UserConfig(BaseModel):
    """Validated, merged configuration document."""

    model_config = ConfigDict(extra="ignore")

    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    render: RenderSettings = Field(default_factory=RenderSettings)


@dataclass
class RenderOverrides:
    """Caller-supplied values that beat every config file."""

    tool: Optional[str] = None
    tool_safe_mode: Optional[bool] = None


@dataclass
class RenderConfiguration:
    primary_tool: ToolSpec
    tool_safe_mode: bool
    files_map: dict[str, str]
    profile_tools: list[ToolSpec] = field(default_factory=list)


DEFAULT_PROFILE_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(type="claude", command="claude", model=DEFAULT_CLAUDE_MODEL),
    ToolSpec(type="codex", command="codex", args=["exec"]),
    ToolSpec(type="gemini", command="gemini"),
)


def default_tool_spec(tool_type: str) -> ToolSpec:
    """Return the built-in spec for *tool_type*, used when no profile entry matches."""
    for spec in DEFAULT_PROFILE_TOOLS:
        if spec.type == tool_type:
            return spec.model_copy(deep=True)
    return normalize_tool_spec(ToolSpec(type=tool_type))  # type: ignore[arg-type]


def normalize_tool_spec(spec: ToolSpec) -> ToolSpec:
    """Fill in the default command, model and args for *spec*."""
    normalized = spec.model_copy(deep=True)
    if normalized.command is None:
        normalized.command = normalized.type
    if normalized.type == "claude" and not normalized.model:
        normalized.model = DEFAULT_CLAUDE_MODEL
    if normalized.type == "codex" and normalized.args is None:
        normalized.args = ["exec"]
    return normalized


def get_profile_tools(config: UserConfig) -> list[ToolSpec]:
    """Return the profile's tools, de-duplicated by type, or the defaults."""
    source = config.profile.tools or list(DEFAULT_PROFILE_TOOLS)
    seen: set[str] = set()
    tools: list[ToolSpec] = []
    for spec in source:
        if spec.type in seen:
            continue
        seen.add(spec.type)
        tools.append(normalize_tool_spec(spec))
    return tools


def select_primary_tool(config: UserConfig, override: Optional[str] = None) -> ToolSpec:
    """Pick the tool that answers delegated directives by default.

    Raises:
        ConfigError: If *override* is not an answer tool, or no answer tool
            is configured.
    """
    tools = get_profile_tools(config)
    if override is not None:
        if override not in PRIMARY_TOOLS:
            raise ConfigError(
                f"Unsupported tool '{override}'. Choose one of: {', '.join(PRIMARY_TOOLS)}",
                ErrorCode.INVALID_ARGUMENT,
            )
        match = next((spec for spec in tools if spec.type == override), None)
        return match if match is not None else default_tool_spec(override)

    for spec in tools:
        if spec.type in PRIMARY_TOOLS:
            return spec
    raise ConfigError("No answer tool configured in profile.tools (expected claude or codex)")


def load_yaml_mapping(path: Path) -> dict[str, Any]:
    """Read *path* as a YAML mapping; a missing or empty file yields ``{}``.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    if not path.exists():
        return {}
    yaml = YAML(typ="safe", pure=True)
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.load(handle)
    except (OSError, YAMLError) as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}", details={"path": str(path)}) from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"{path} must contain a mapping", details={"path": str(path)})
    return payload


def deep_merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Return *base* updated by *overlay*; nested mappings merge, lists replace."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(
    project_root: Optional[Path] = None,
    home: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> UserConfig:
    """Merge the user and project config files and validate the result.

    Raises:
        ConfigError: On unparsable YAML or a document that fails validation.
    """
    home = home if home is not None else get_agentpack_home(environ)
    sources = [get_user_config_path(home)]
    if project_root is not None:
        sources.append(Path(project_root) / PROJECT_CONFIG_DIR / CONFIG_FILENAME)

    data: dict[str, Any] = {}
    for path in sources:
        layer = load_yaml_mapping(path)
        if layer:
            logger.debug("Loaded config layer %s", path)
        data = deep_merge(data, layer)

    try:
        return UserConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}", details={"sources": [str(p) for p in sources]}) from exc


def setup_render_configuration(
    project_root: Path,
    overrides: Optional[RenderOverrides] = None,
    home: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RenderConfiguration:
    """Resolve the primary tool, safe mode and destination filenames for a render."""
    overrides = overrides or RenderOverrides()
    config = load_config(project_root, home=home, environ=environ)
    tool_safe_mode = (
        overrides.tool_safe_mode if overrides.tool_safe_mode is not None else config.render.tool_safe_mode
    )
    return RenderConfiguration(
        primary_tool=select_primary_tool(config, overrides.tool),
        tool_safe_mode=tool_safe_mode,
        files_map=config.context.files.model_dump(),
        profile_tools=get_profile_tools(config),
    )


__all__ = [
    "ANSWER_TOOLS",
    "ContextConfig",
    "ContextFiles",
    "DEFAULT_PROFILE_TOOLS",
    "PRIMARY_TOOLS",
    "ProfileConfig",
    "RenderConfiguration",
    "RenderOverrides",
    "RenderSettings",
    "ToolSpec",
    "UserConfig",
    "default_tool_spec",
    "deep_merge",
    "get_profile_tools",
    "load_config",
    "load_yaml_mapping",
    "normalize_tool_spec",
    "select_primary_tool",
    "setup_render_configuration",
]
