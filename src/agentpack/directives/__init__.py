"""Directive parsing, execution and result caching."""

from agentpack.directives.models import (
    CacheEntry,
    CacheStore,
    DelegatedOptions,
    Directive,
    DirectiveKind,
    ExecutionContext,
    InteractiveOptions,
    PromptSource,
    PromptSourceKind,
    ResolvedValue,
)
from agentpack.directives.parser import compute_directive_id, parse_directives
from agentpack.directives.cache import ResultCache
from agentpack.directives.scheduler import ExecutionOptions, ExecutionSession, execute_directives

__all__ = [
    "CacheEntry",
    "CacheStore",
    "DelegatedOptions",
    "Directive",
    "DirectiveKind",
    "ExecutionContext",
    "ExecutionOptions",
    "ExecutionSession",
    "InteractiveOptions",
    "PromptSource",
    "PromptSourceKind",
    "ResolvedValue",
    "ResultCache",
    "compute_directive_id",
    "execute_directives",
    "parse_directives",
]
