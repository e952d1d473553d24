"""Jinja2 environment shared by template rendering and prompt interpolation.

Missing names render as empty text, mirroring the lenient lookups template
authors expect. Values are finalized so structured results stay readable:
mappings and lists become JSON, ``None`` becomes empty text and booleans
become ``true``/``false``.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from jinja2 import ChainableUndefined, Template, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from agentpack.errors import AgentpackError, ErrorCode


def finalize_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def create_environment() -> SandboxedEnvironment:
    return SandboxedEnvironment(
        autoescape=False,
        keep_trailing_newline=True,
        undefined=ChainableUndefined,
        finalize=finalize_value,
    )


_ENVIRONMENT = create_environment()


def compile_string(source: str, name: str | None = None) -> Template:
    """Compile *source* without rendering it.

    Raises:
        AgentpackError: TEMPLATE_RENDER_FAILED on syntax errors.
    """
    try:
        return _ENVIRONMENT.from_string(source)
    except TemplateError as exc:
        raise _render_failed(exc, name) from exc


def render_compiled(template: Template, context: Mapping[str, Any], name: str | None = None) -> str:
    try:
        return template.render(dict(context))
    except TemplateError as exc:
        raise _render_failed(exc, name) from exc


def render_string(source: str, context: Mapping[str, Any], name: str | None = None) -> str:
    """Render *source* against *context*.

    Raises:
        AgentpackError: TEMPLATE_RENDER_FAILED on syntax or evaluation errors.
    """
    return render_compiled(compile_string(source, name), context, name)


def _render_failed(exc: TemplateError, name: str | None) -> AgentpackError:
    where = f"{name}: " if name else ""
    return AgentpackError(
        f"{where}template rendering failed: {exc}",
        ErrorCode.TEMPLATE_RENDER_FAILED,
        {"template": name},
    )


__all__ = ["compile_string", "create_environment", "finalize_value", "render_compiled", "render_string"]
