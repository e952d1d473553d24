"""Render one templated file: parse directives, execute them, render with Jinja2.

Each unbound directive span is replaced by a ``{{ snippets["<id>"] }}``
expression before Jinja runs, so resolved values are inserted as data and
never evaluated as template source. A bound directive (``var name = ...``)
produces no text. The spaces and tabs that follow it are dropped too, and a
bound directive standing alone on its line removes the whole line.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from agentpack.directives.models import Directive, ExecutionContext
from agentpack.directives.parser import parse_directives
from agentpack.directives.scheduler import ExecutionOptions, execute_directives
from agentpack.errors import DirectiveParseError
from agentpack.templating import compile_string, render_compiled

TEMPLATE_SUFFIX = ".j2"

_HORIZONTAL_SPACE = " \t"


@dataclass
class TemplateRender:
    """Output of one templated file plus what its directives resolved to."""

    output: str
    directives: list[Directive]
    context: ExecutionContext


def is_templated(path: str | Path) -> bool:
    return str(path).endswith(TEMPLATE_SUFFIX)


def strip_template_suffix(rel: str) -> str:
    return rel[: -len(TEMPLATE_SUFFIX)] if rel.endswith(TEMPLATE_SUFFIX) else rel


def render_template_text(
    text: str,
    base_context: Mapping[str, Any],
    execution: ExecutionOptions,
    name: str | None = None,
) -> TemplateRender:
    """Parse, execute and render *text*.

    Raises:
        DirectiveParseError: Before anything runs, on malformed directives.
        AgentpackError: TEMPLATE_RENDER_FAILED, before anything runs, if Jinja
            cannot compile the template, or afterwards if rendering fails.
        DirectiveExecutionError: If any directive failed.
    """
    try:
        directives = parse_directives(text)
    except DirectiveParseError as exc:
        if name and exc.template is None:
            raise DirectiveParseError(str(exc), template=name) from exc
        raise

    template = compile_string(substitute_directives(text, directives), name=name)
    context = execute_directives(directives, execution)
    scope = dict(base_context)
    scope["vars"] = dict(context.vars)
    scope["snippets"] = context.render_values()
    return TemplateRender(
        output=render_compiled(template, scope, name=name),
        directives=directives,
        context=context,
    )


def render_template_file(
    path: Path,
    base_context: Mapping[str, Any],
    execution: ExecutionOptions,
    name: str | None = None,
) -> TemplateRender:
    text = Path(path).read_text(encoding="utf-8")
    return render_template_text(text, base_context, execution, name=name or str(path))


def substitute_directives(text: str, directives: list[Directive]) -> str:
    """Replace every directive span in *text* with its Jinja placeholder."""
    out: list[str] = []
    cursor = 0
    for directive in sorted(directives, key=lambda d: d.start):
        out.append(text[cursor : directive.start])
        trim_left, trim_right = _trim_markers(directive.raw)
        if directive.var_name is None:
            left = "-" if trim_left else ""
            right = "-" if trim_right else ""
            out.append(f'{{{{{left} snippets["{directive.id}"] {right}}}}}')
            cursor = directive.end
            continue

        end = directive.end
        if trim_left:
            _rstrip_parts(out, " \t\r\n")
        if trim_right:
            while end < len(text) and text[end].isspace():
                end += 1
        else:
            while end < len(text) and text[end] in _HORIZONTAL_SPACE:
                end += 1
            line_start = text.rfind("\n", 0, directive.start) + 1
            standalone = not text[line_start : directive.start].strip(_HORIZONTAL_SPACE)
            if standalone and (end == len(text) or text[end] in "\r\n"):
                _rstrip_parts(out, _HORIZONTAL_SPACE)
                if text.startswith("\r\n", end):
                    end += 2
                elif end < len(text):
                    end += 1
        cursor = end
    out.append(text[cursor:])
    return "".join(out)


def copy_literal_file(source: Path, dest: Path) -> None:
    """Copy *source* to *dest* byte-for-byte."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, dest)


def _trim_markers(raw: str) -> tuple[bool, bool]:
    inner = raw.lstrip("{").rstrip("}")
    return inner[:1] in ("~", "-"), inner[-1:] in ("~", "-")


def _rstrip_parts(parts: list[str], chars: str) -> None:
    while parts:
        stripped = parts[-1].rstrip(chars)
        if stripped:
            parts[-1] = stripped
            return
        parts.pop()


__all__ = [
    "TEMPLATE_SUFFIX",
    "TemplateRender",
    "copy_literal_file",
    "is_templated",
    "render_template_file",
    "render_template_text",
    "strip_template_suffix",
]
