"""Two-pass execution of parsed directives.

Every interactive directive of a template is answered before any delegated
directive runs, so delegated prompts can use the answers. Delegated
directives run in document order and can see the results of the ones
before them through ``vars`` and ``snippets``.

A failing directive does not stop the pass. Its error is recorded, the
remaining directives still run, and one :class:`DirectiveExecutionError`
listing every failure is raised at the end. Results that did resolve have
already been written to the persistent cache by then.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, cast

from agentpack.core.config import ToolSpec, default_tool_spec
from agentpack.core.destinations import resolve_within
from agentpack.directives.cache import ResultCache, truncate_excerpt
from agentpack.directives.models import (
    CacheEntry,
    DelegatedOptions,
    Directive,
    DirectiveError,
    ExecutionContext,
    InteractiveOptions,
    PromptSource,
    PromptSourceKind,
    ResolvedValue,
)
from agentpack.errors import (
    AgentpackError,
    DirectiveExecutionError,
    DirectiveFailure,
    ErrorCode,
)
from agentpack.prompting import PromptUser, prompt_user
from agentpack.reporting import (
    AnalysisNotice,
    DirectiveFailed,
    DirectiveResolved,
    DirectiveStarted,
    ProgressEvent,
    ProgressReporter,
)
from agentpack.templating import render_string
from agentpack.tools.runner import ToolInvoker, ToolRequest, interpret_output, invoke_tool

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a context extraction agent. Your job is to understand, synthesize and "
    "extract context from existing projects. Your responses should only include what "
    "is asked, and should not include any dialog such as \"I'm now ready to..\", "
    "\"Looking at\", etc. Instead, you should ONLY respond with the answers to the "
    "questions asked based on your research"
)

SINGLE_TURN_DIRECTIVE = (
    "Respond with your best possible answer immediately. "
    "Do not ask follow-up questions or request additional information."
)

_SINGLE_TURN_MARKERS = (
    "do not ask for additional information",
    "do not ask follow-up questions",
)


@dataclass
class ExecutionSession:
    """State shared by every template rendered in one call.

    Holds the one-time analysis notice flag and the prompt files already read.
    """

    analysis_notified: bool = False
    prompt_files: dict[Path, str] = field(default_factory=dict)


@dataclass
class ExecutionOptions:
    """Collaborators and settings for one template's directives.

    Attributes:
        project_dir: Working directory for agent CLIs.
        package_dir: Package root that file prompts are resolved within.
        current_tool: Tool used when a directive names none.
        available_tools: Configured tools searched for a directive's override.
        tool_safe_mode: Safe mode used when a directive does not override it.
        template: Template-relative path, for failure messages and events.
        prompt_user: Interactive collaborator.
        invoke_tool: Agent CLI collaborator.
        reporter: Optional progress sink.
        cache: Persistent cache; used only with package name and version set.
        base_context: Template context (project, pkg, env, now, files).
        environ: Environment passed to agent CLIs.
        session: Render-wide state; a fresh one is used when omitted.
    """

    project_dir: Path
    package_dir: Path
    current_tool: ToolSpec
    available_tools: list[ToolSpec] = field(default_factory=list)
    tool_safe_mode: bool = True
    template: str = ""
    prompt_user: PromptUser = prompt_user
    invoke_tool: ToolInvoker = invoke_tool
    reporter: Optional[ProgressReporter] = None
    cache: Optional[ResultCache] = None
    package_name: Optional[str] = None
    package_version: Optional[str] = None
    base_context: Mapping[str, Any] = field(default_factory=dict)
    environ: Optional[Mapping[str, str]] = None
    session: Optional[ExecutionSession] = None


def execute_directives(directives: list[Directive], options: ExecutionOptions) -> ExecutionContext:
    """Resolve *directives* and return their values.

    Raises:
        DirectiveExecutionError: After both passes, if any directive failed.
    """
    session = options.session or ExecutionSession()
    context = ExecutionContext()
    failures: list[DirectiveFailure] = []

    answered: dict[str, ResolvedValue] = {}
    for directive in directives:
        if not directive.is_interactive:
            continue
        _emit(options, DirectiveStarted(directive, options.template))
        result, cached = _resolve_interactive(directive, options, answered)
        _finish(directive, result, cached, context, failures, options)

    in_flight: dict[str, ResolvedValue] = {}
    for directive in directives:
        if not directive.is_delegated:
            continue
        result, cached = _resolve_delegated(directive, options, context, in_flight, session)
        _finish(directive, result, cached, context, failures, options)

    if failures:
        raise DirectiveExecutionError(failures)
    return context


def _finish(
    directive: Directive,
    result: ResolvedValue,
    cached: bool,
    context: ExecutionContext,
    failures: list[DirectiveFailure],
    options: ExecutionOptions,
) -> None:
    context.record(directive, result)
    if result.error is None:
        _emit(options, DirectiveResolved(directive, options.template, result.value, cached))
        return
    _emit(options, DirectiveFailed(directive, options.template, result.error))
    failures.append(
        DirectiveFailure(
            directive_id=directive.id,
            kind=directive.kind.value,
            template=options.template,
            message=result.error.message,
            code=result.error.code,
        )
    )


def _resolve_interactive(
    directive: Directive,
    options: ExecutionOptions,
    answered: dict[str, ResolvedValue],
) -> tuple[ResolvedValue, bool]:
    if directive.id in answered:
        return answered[directive.id], True

    hit = _cache_get(options, directive.id)
    if hit is not None:
        answered[directive.id] = hit
        return hit, True

    settings = cast(InteractiveOptions, directive.options)
    try:
        answer = options.prompt_user(
            directive.question or "",
            settings.default_value,
            settings.placeholder_hint,
        )
    except (AgentpackError, OSError, EOFError) as exc:
        result = ResolvedValue(error=_error_from(exc, ErrorCode.PROMPT_FAILED))
        answered[directive.id] = result
        return result, False

    result = ResolvedValue(value=answer)
    answered[directive.id] = result
    _cache_set(options, directive.id, directive, directive.question or "", answer, tool_used=None)
    return result, False


def _resolve_delegated(
    directive: Directive,
    options: ExecutionOptions,
    context: ExecutionContext,
    in_flight: dict[str, ResolvedValue],
    session: ExecutionSession,
) -> tuple[ResolvedValue, bool]:
    settings = cast(DelegatedOptions, directive.options)

    try:
        base_prompt = _load_prompt(directive, options.package_dir, session)
    except AgentpackError as exc:
        _emit(options, DirectiveStarted(directive, options.template))
        return ResolvedValue(error=_error_from(exc, ErrorCode.FILE_NOT_FOUND)), False

    _emit(options, DirectiveStarted(directive, options.template, prompt=base_prompt))

    cache_id = _persistent_id(directive, base_prompt)
    hit = _cache_get(options, cache_id)
    if hit is not None:
        return hit, True

    tool = _resolve_tool_spec(settings.tool_override, options)
    safe_mode = settings.safe_mode_override if settings.safe_mode_override is not None else options.tool_safe_mode
    system_prompt = DEFAULT_SYSTEM_PROMPT if settings.system_prompt is None else settings.system_prompt

    key = _dedupe_key(directive, base_prompt, tool, safe_mode, system_prompt)
    if key in in_flight:
        logger.debug("Reusing in-render result for %s", directive.id)
        shared = in_flight[key]
        if shared.error is None:
            _cache_set(options, cache_id, directive, base_prompt, shared.value, tool_used=tool.type)
        return shared, True

    try:
        prompt = render_string(base_prompt, _prompt_context(context, options.base_context), name=options.template)
        prompt = enforce_single_turn(prompt)
        if not session.analysis_notified:
            session.analysis_notified = True
            _emit(options, AnalysisNotice())
        execution = options.invoke_tool(
            ToolRequest(
                tool=tool,
                prompt=prompt,
                cwd=options.project_dir,
                safe_mode=safe_mode,
                timeout_ms=settings.timeout_ms,
                system_prompt=system_prompt,
                environ=options.environ,
            )
        )
        value = interpret_output(execution.stdout, settings.expect_json)
    except AgentpackError as exc:
        result = ResolvedValue(error=_error_from(exc, ErrorCode.TOOL_EXECUTION_FAILED))
        in_flight[key] = result
        return result, False

    result = ResolvedValue(value=value)
    in_flight[key] = result
    _cache_set(options, cache_id, directive, base_prompt, value, tool_used=tool.type)
    return result, False


def enforce_single_turn(prompt: str) -> str:
    """Append the no-follow-up instruction unless the prompt already has one."""
    lowered = prompt.lower()
    if any(marker in lowered for marker in _SINGLE_TURN_MARKERS):
        return prompt
    return f"{prompt.rstrip()}\n\n---\n{SINGLE_TURN_DIRECTIVE}"


def _load_prompt(directive: Directive, package_dir: Path, session: ExecutionSession) -> str:
    prompt = cast(PromptSource, directive.prompt)
    if prompt.kind is PromptSourceKind.INLINE:
        return prompt.value

    target = resolve_within(package_dir, prompt.value)
    if target in session.prompt_files:
        return session.prompt_files[target]
    try:
        contents = target.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise AgentpackError(
            f"delegate prompt file not found: {prompt.value} ({exc})",
            ErrorCode.FILE_NOT_FOUND,
            {"path": str(target)},
        ) from exc
    session.prompt_files[target] = contents
    return contents


def _persistent_id(directive: Directive, base_prompt: str) -> str:
    """Cache id: the directive id, extended by a content digest for file prompts."""
    if directive.prompt is None or directive.prompt.kind is PromptSourceKind.INLINE:
        return directive.id
    digest = hashlib.sha256(f"{directive.id}\0{base_prompt}".encode("utf-8")).hexdigest()
    return f"snippet_{digest[:12]}"


def _dedupe_key(
    directive: Directive,
    base_prompt: str,
    tool: ToolSpec,
    safe_mode: bool,
    system_prompt: str,
) -> str:
    settings = cast(DelegatedOptions, directive.options)
    prompt = cast(PromptSource, directive.prompt)
    return json.dumps(
        {
            "kind": directive.kind.value,
            "source": prompt.kind.value,
            "prompt": base_prompt,
            "json": settings.expect_json,
            "tool": tool.type,
            "command": tool.command,
            "args": tool.args,
            "model": tool.model,
            "safe_mode": safe_mode,
            "timeout_ms": settings.timeout_ms,
            "system_prompt": system_prompt,
        },
        sort_keys=True,
    )


def _resolve_tool_spec(override: Optional[str], options: ExecutionOptions) -> ToolSpec:
    requested = override or options.current_tool.type
    for spec in (options.current_tool, *options.available_tools):
        if spec.type == requested:
            return spec.model_copy(deep=True)
    return default_tool_spec(requested)


def _prompt_context(context: ExecutionContext, base_context: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base_context)
    base_vars = base_context.get("vars")
    base_snippets = base_context.get("snippets")
    merged["vars"] = {**(base_vars if isinstance(base_vars, dict) else {}), **context.vars}
    merged["snippets"] = {
        **(base_snippets if isinstance(base_snippets, dict) else {}),
        **context.render_values(),
    }
    return merged


def _active_cache(options: ExecutionOptions) -> Optional[tuple[ResultCache, str, str]]:
    if options.cache is None or not options.package_name or not options.package_version:
        return None
    return options.cache, options.package_name, options.package_version


def _cache_get(options: ExecutionOptions, entry_id: str) -> Optional[ResolvedValue]:
    active = _active_cache(options)
    if active is None:
        return None
    cache, package_name, package_version = active
    entry = cache.get(package_name, package_version, entry_id)
    if entry is None:
        return None
    try:
        return ResolvedValue(value=json.loads(entry.serialized_value))
    except json.JSONDecodeError:
        logger.warning("Ignoring undecodable cache entry %s for %s", entry_id, options.package_name)
        return None


def _cache_set(
    options: ExecutionOptions,
    entry_id: str,
    directive: Directive,
    prompt_text: str,
    value: Any,
    tool_used: Optional[str],
) -> None:
    active = _active_cache(options)
    if active is None:
        return
    cache, package_name, package_version = active
    cache.set(
        package_name,
        package_version,
        CacheEntry(
            id=entry_id,
            kind=directive.kind,
            prompt_excerpt=truncate_excerpt(prompt_text),
            serialized_value=json.dumps(value),
            timestamp=cache.timestamp(),
            tool_used=tool_used,
        ),
    )


def _error_from(exc: BaseException, fallback: ErrorCode) -> DirectiveError:
    code = exc.code if isinstance(exc, AgentpackError) else fallback
    return DirectiveError(message=str(exc), code=str(code))


def _emit(options: ExecutionOptions, event: ProgressEvent) -> None:
    if options.reporter is not None:
        options.reporter.emit(event)


__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "ExecutionOptions",
    "ExecutionSession",
    "SINGLE_TURN_DIRECTIVE",
    "enforce_single_turn",
    "execute_directives",
]
