"""Core data types for template directives.

A directive is one ``ask(...)`` or ``delegate(...)`` call embedded in a
templated file. The parser produces :class:`Directive` records, the
scheduler turns them into an :class:`ExecutionContext`, and the result cache
persists :class:`CacheEntry` records between renders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Optional, Union

ToolType = Literal["claude", "codex", "gemini"]
KNOWN_TOOLS: tuple[str, ...] = ("claude", "codex", "gemini")


class DirectiveKind(StrEnum):
    """How a directive is resolved."""

    INTERACTIVE = "interactive"  # asks a human
    DELEGATED = "delegated"  # runs an external agent CLI


class PromptSourceKind(StrEnum):
    INLINE = "inline"
    FILE = "file"


@dataclass(frozen=True)
class PromptSource:
    """Where a delegated directive gets its prompt text from."""

    kind: PromptSourceKind
    value: str


@dataclass(frozen=True)
class InteractiveOptions:
    default_value: Optional[str] = None
    placeholder_hint: Optional[str] = None

    def normalized(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.default_value is not None:
            out["defaultValue"] = self.default_value
        if self.placeholder_hint is not None:
            out["placeholderHint"] = self.placeholder_hint
        return out


@dataclass(frozen=True)
class DelegatedOptions:
    expect_json: bool = False
    tool_override: Optional[str] = None
    safe_mode_override: Optional[bool] = None
    timeout_ms: Optional[float] = None
    system_prompt: Optional[str] = None

    def normalized(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.expect_json:
            out["expectJson"] = True
        if self.tool_override is not None:
            out["toolOverride"] = self.tool_override
        if self.safe_mode_override is not None:
            out["safeModeOverride"] = self.safe_mode_override
        if self.timeout_ms is not None:
            out["timeoutMs"] = self.timeout_ms
        if self.system_prompt is not None:
            out["systemPrompt"] = self.system_prompt
        return out


@dataclass(frozen=True)
class Directive:
    """A single parsed directive.

    Attributes:
        id: Content-derived identifier (kind + prompt text + options).
        kind: Interactive or delegated.
        raw: The full source region, delimiters included.
        start: Offset of the region's first character in the template.
        end: Offset one past the region's last character.
        var_name: Name bound with ``var <name> = ...``, if any.
        question: Question text (interactive directives only).
        prompt: Prompt source (delegated directives only).
        options: Kind-specific options record.
    """

    id: str
    kind: DirectiveKind
    raw: str
    start: int
    end: int
    options: Union[InteractiveOptions, DelegatedOptions]
    var_name: Optional[str] = None
    question: Optional[str] = None
    prompt: Optional[PromptSource] = None

    @property
    def is_interactive(self) -> bool:
        return self.kind is DirectiveKind.INTERACTIVE

    @property
    def is_delegated(self) -> bool:
        return self.kind is DirectiveKind.DELEGATED

    @property
    def prompt_text(self) -> str:
        """Question or prompt-source text, for excerpts and messages."""
        if self.question is not None:
            return self.question
        return self.prompt.value if self.prompt else ""


@dataclass(frozen=True)
class DirectiveError:
    message: str
    code: Optional[str] = None


@dataclass
class ResolvedValue:
    value: Any = None
    error: Optional[DirectiveError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ExecutionContext:
    """Everything resolved while rendering one template."""

    vars: dict[str, Any] = field(default_factory=dict)
    snippets: dict[str, ResolvedValue] = field(default_factory=dict)

    def record(self, directive: Directive, result: ResolvedValue) -> None:
        self.snippets[directive.id] = result
        if result.ok and directive.var_name:
            self.vars[directive.var_name] = result.value

    def failed(self) -> list[str]:
        return [key for key, result in self.snippets.items() if not result.ok]

    def render_values(self) -> dict[str, Any]:
        """Map directive id to value, with failed directives mapped to None."""
        return {
            key: (result.value if result.ok else None)
            for key, result in self.snippets.items()
        }


@dataclass(frozen=True)
class CacheEntry:
    """A persisted directive outcome."""

    id: str
    kind: DirectiveKind
    prompt_excerpt: str
    serialized_value: str  # JSON
    timestamp: str  # ISO 8601
    tool_used: Optional[str] = None


@dataclass
class PackageCache:
    version: str
    entries: list[CacheEntry] = field(default_factory=list)


@dataclass
class CacheMetadata:
    generated_at: str = ""
    tool_version: str = ""


@dataclass
class CacheStore:
    schema_version: int
    packages: dict[str, PackageCache] = field(default_factory=dict)
    metadata: CacheMetadata = field(default_factory=CacheMetadata)


__all__ = [
    "CacheEntry",
    "CacheMetadata",
    "CacheStore",
    "DelegatedOptions",
    "Directive",
    "DirectiveError",
    "DirectiveKind",
    "ExecutionContext",
    "InteractiveOptions",
    "KNOWN_TOOLS",
    "PackageCache",
    "PromptSource",
    "PromptSourceKind",
    "ResolvedValue",
    "ToolType",
]
