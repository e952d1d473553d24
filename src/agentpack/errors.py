"""Exception hierarchy for agentpack rendering."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Machine-readable error codes carried by every AgentpackError."""

    INVALID_ARGUMENT = "invalid_argument"
    CONFIG_NOT_FOUND = "config_not_found"
    CONFIG_INVALID = "config_invalid"
    DIRECTIVE_PARSE_ERROR = "directive_parse_error"
    DIRECTIVE_EXECUTION_FAILED = "directive_execution_failed"
    PROMPT_FAILED = "prompt_failed"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_OUTPUT_PARSE_ERROR = "tool_output_parse_error"
    FILE_NOT_FOUND = "file_not_found"
    SECURITY_VIOLATION = "security_violation"
    TEMPLATE_RENDER_FAILED = "template_render_failed"


class AgentpackError(Exception):
    """Base exception for agentpack errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INVALID_ARGUMENT,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class DirectiveParseError(AgentpackError):
    """Malformed directive syntax, bad option, or invalid variable binding."""

    def __init__(self, message: str, template: str | None = None) -> None:
        self.template = template
        if template:
            message = f"{template}: {message}"
        super().__init__(message, ErrorCode.DIRECTIVE_PARSE_ERROR, {"template": template})


class ToolInvocationError(AgentpackError):
    """An external agent CLI could not be run or returned unusable output."""


class SecurityViolation(AgentpackError):
    """A path resolved outside the boundary it must stay within."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, ErrorCode.SECURITY_VIOLATION, details)


class ConfigError(AgentpackError):
    """Configuration file is missing required data or is invalid."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code, details)


@dataclass(frozen=True)
class DirectiveFailure:
    """One failing directive inside an aggregate execution failure."""

    directive_id: str
    kind: str
    template: str
    message: str
    code: str | None = None

    def describe(self) -> str:
        return f"- {self.directive_id} ({self.kind}) from {self.template}: {self.message}"


class DirectiveExecutionError(AgentpackError):
    """One or more directives failed while rendering a template.

    Raised once, after every directive of the template has been attempted,
    so the message lists every failure rather than only the first.
    """

    def __init__(self, failures: list[DirectiveFailure]) -> None:
        self.failures = list(failures)
        count = len(self.failures)
        header = (
            "Directive execution failed while rendering templates."
            if count == 1
            else f"{count} directives failed while rendering templates."
        )
        lines = [header, *(failure.describe() for failure in self.failures)]
        super().__init__(
            "\n".join(lines),
            ErrorCode.DIRECTIVE_EXECUTION_FAILED,
            {"failures": [asdict(failure) for failure in self.failures]},
        )


__all__ = [
    "AgentpackError",
    "ConfigError",
    "DirectiveExecutionError",
    "DirectiveFailure",
    "DirectiveParseError",
    "ErrorCode",
    "SecurityViolation",
    "ToolInvocationError",
]
