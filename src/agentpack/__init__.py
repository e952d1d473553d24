"""agentpack: render agent configuration packages into tool-specific files."""

__version__ = "0.1.0"

from agentpack.errors import (  # noqa: E402
    AgentpackError,
    ConfigError,
    DirectiveExecutionError,
    DirectiveFailure,
    DirectiveParseError,
    ErrorCode,
    SecurityViolation,
    ToolInvocationError,
)
from agentpack.directives import (  # noqa: E402
    ExecutionOptions,
    ResultCache,
    execute_directives,
    parse_directives,
)
from agentpack.template import (  # noqa: E402
    RenderOptions,
    RenderResult,
    plan_and_render,
)

__all__ = [
    "AgentpackError",
    "ConfigError",
    "DirectiveExecutionError",
    "DirectiveFailure",
    "DirectiveParseError",
    "ErrorCode",
    "ExecutionOptions",
    "RenderOptions",
    "RenderResult",
    "ResultCache",
    "SecurityViolation",
    "ToolInvocationError",
    "__version__",
    "execute_directives",
    "parse_directives",
    "plan_and_render",
]
