'''Directive parser for templated files.

Extracts ``ask(...)`` and ``delegate(...)`` calls from ``{{ ... }}`` regions
of a template. The parser is pure: it performs no I/O, and parsing the same
text always yields the same directives with the same ids.

Accepted forms::

    {{ ask('Project name?', {defaultValue: 'demo'}) }}
    {{~ var summary = delegate("""
        Summarize the repository layout.
    """, {expectJson: true}) ~}}
    {{{ delegate('prompts/summary.md') }}}

``askUser`` and ``askAgent`` are accepted as aliases of ``ask`` and
``delegate``. Every other ``{{ ... }}`` region is left for the template
engine.
'''

from __future__ import annotations

import hashlib
import json
import math
import re
import textwrap
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from agentpack.directives.models import (
    KNOWN_TOOLS,
    DelegatedOptions,
    Directive,
    DirectiveKind,
    InteractiveOptions,
    PromptSource,
    PromptSourceKind,
)
from agentpack.errors import DirectiveParseError

CALL_NAMES: dict[str, DirectiveKind] = {
    "ask": DirectiveKind.INTERACTIVE,
    "askUser": DirectiveKind.INTERACTIVE,
    "delegate": DirectiveKind.DELEGATED,
    "askAgent": DirectiveKind.DELEGATED,
}

_CALL_ALTERNATION = "askUser|askAgent|ask|delegate"
VAR_ASSIGNMENT = re.compile(r"^var\s+([^\s=]+)\s*=\s*(.+)$", re.DOTALL)
CALL_PATTERN = re.compile(rf"^({_CALL_ALTERNATION})\s*\((.*)\)$", re.DOTALL)
LEADING_CALL = re.compile(rf"^({_CALL_ALTERNATION})\b")
NESTED_CALL = re.compile(rf"(?<![\w.\"'`])({_CALL_ALTERNATION})\s*\(")
VALID_VAR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PROMPT_FILE_SUFFIX = re.compile(r"\.(txt|md|prompt|json|hbs|j2|yaml|yml)$", re.IGNORECASE)

_WHITESPACE_CONTROL = "~-"
_TRIPLE = '"""'

# Canonical option key -> attribute name. Aliases map onto the same attribute.
_INTERACTIVE_KEYS: dict[str, str] = {
    "defaultValue": "default_value",
    "default": "default_value",
    "placeholderHint": "placeholder_hint",
    "placeholder": "placeholder_hint",
}
_DELEGATED_KEYS: dict[str, str] = {
    "expectJson": "expect_json",
    "json": "expect_json",
    "toolOverride": "tool_override",
    "tool": "tool_override",
    "safeModeOverride": "safe_mode_override",
    "safeMode": "safe_mode_override",
    "timeoutMs": "timeout_ms",
    "systemPrompt": "system_prompt",
}


def parse_directives(text: str) -> list[Directive]:
    """Return every directive in *text*, in document order.

    Raises:
        DirectiveParseError: On malformed call syntax, unsupported or
            mistyped options, and invalid or duplicate variable names.
    """
    directives: list[Directive] = []
    bound_names: set[str] = set()
    cursor = 0

    while True:
        start = text.find("{{", cursor)
        if start == -1:
            break

        open_count = _count_open_braces(text, start)
        inner_start = start + open_count
        inner_end = _find_region_end(text, inner_start, open_count)
        if inner_end == -1:
            raise DirectiveParseError('Unclosed "{{" without matching "}}"')

        close_count = 3 if open_count == 3 else 2
        end = inner_end + close_count
        cursor = end

        expression = text[inner_start:inner_end].strip().strip(_WHITESPACE_CONTROL).strip()
        if not expression or expression[0] in "#/!":
            continue

        var_name, body = _split_binding(expression)
        if var_name is not None:
            if var_name in bound_names:
                raise DirectiveParseError(f"Variable '{var_name}' already defined in template.")
            bound_names.add(var_name)

        call = CALL_PATTERN.match(body)
        if call is None:
            if var_name is not None:
                raise DirectiveParseError(
                    f"Variable '{var_name}' must be bound to an ask() or delegate() call: {body!r}"
                )
            if LEADING_CALL.match(body) or NESTED_CALL.search(_blank_string_literals(body)):
                raise DirectiveParseError(f"Malformed directive: {body!r}")
            continue

        fn_name, args_segment = call.group(1), call.group(2).strip()
        if not args_segment:
            raise DirectiveParseError(f"{fn_name} requires at least one argument")

        directives.append(
            _build_directive(
                fn_name,
                args_segment,
                raw=text[start:end],
                start=start,
                end=end,
                var_name=var_name,
            )
        )

    return directives


def compute_directive_id(kind: DirectiveKind, prompt_text: str, options: dict[str, Any]) -> str:
    """Hash kind, normalized prompt text and normalized options into an id.

    The bound variable name and the directive's position never take part,
    so renaming a variable or moving a directive keeps its id.
    """
    payload = json.dumps(
        {"kind": kind.value, "prompt": _normalize_text(prompt_text), "options": options},
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"snippet_{digest[:12]}"


def _build_directive(
    fn_name: str,
    args_segment: str,
    *,
    raw: str,
    start: int,
    end: int,
    var_name: str | None,
) -> Directive:
    kind = CALL_NAMES[fn_name]
    value, is_block, options_map = _parse_arguments(args_segment, fn_name)

    if kind is DirectiveKind.INTERACTIVE:
        interactive = _interactive_options(options_map)
        return Directive(
            id=compute_directive_id(kind, value, interactive.normalized()),
            kind=kind,
            raw=raw,
            start=start,
            end=end,
            options=interactive,
            var_name=var_name,
            question=value,
        )

    delegated = _delegated_options(options_map)
    prompt = classify_prompt(value, is_block)
    return Directive(
        id=compute_directive_id(kind, f"{prompt.kind.value}:{prompt.value}", delegated.normalized()),
        kind=kind,
        raw=raw,
        start=start,
        end=end,
        options=delegated,
        var_name=var_name,
        prompt=prompt,
    )


def classify_prompt(value: str, is_block: bool = False) -> PromptSource:
    """Decide whether a delegated prompt argument is inline text or a file path."""
    if is_block or "\n" in value:
        return PromptSource(PromptSourceKind.INLINE, value)
    if _looks_like_file_path(value):
        return PromptSource(PromptSourceKind.FILE, value.strip())
    return PromptSource(PromptSourceKind.INLINE, value)


def _looks_like_file_path(value: str) -> bool:
    if "{{" in value:
        return False
    trimmed = value.strip()
    if trimmed.startswith(("./", "../", ".\\", "..\\")):
        return True
    if re.search(r"\s", value):
        return False
    normalized = value.replace("\\", "/")
    return "/" in normalized or bool(PROMPT_FILE_SUFFIX.search(normalized))


def _split_binding(expression: str) -> tuple[str | None, str]:
    match = VAR_ASSIGNMENT.match(expression)
    if match is None:
        if expression.startswith("var ") or expression.startswith("var\t"):
            candidate = expression[3:].split("=", 1)[0].strip().split()
            name = candidate[0] if candidate else ""
            raise DirectiveParseError(
                f"Invalid variable name '{name}'. Use letters, digits and underscores."
            )
        return None, expression

    name = match.group(1)
    if not VALID_VAR_NAME.match(name):
        raise DirectiveParseError(
            f"Invalid variable name '{name}'. Use letters, digits and underscores."
        )
    return name, match.group(2).strip()


def _parse_arguments(segment: str, fn_name: str) -> tuple[str, bool, dict[str, Any]]:
    value, cursor, is_block = _read_string_literal(segment, 0)
    cursor = _skip_whitespace(segment, cursor)

    options: dict[str, Any] = {}
    if cursor < len(segment):
        if segment[cursor] != ",":
            raise DirectiveParseError(
                f"{fn_name} accepts at most two arguments (string, options object)"
            )
        cursor = _skip_whitespace(segment, cursor + 1)
        if cursor >= len(segment):
            raise DirectiveParseError(f"Missing options object after comma in {fn_name} call")
        if segment[cursor] != "{":
            raise DirectiveParseError(f"Options for {fn_name} must be an object literal")
        object_text, cursor = _extract_object_literal(segment, cursor)
        cursor = _skip_whitespace(segment, cursor)
        options = _parse_options(object_text)

    if cursor < len(segment):
        raise DirectiveParseError(f"Unexpected tokens in {fn_name} arguments")

    return value, is_block, options


def _read_string_literal(source: str, start: int) -> tuple[str, int, bool]:
    """Read one string literal; return (value, end offset, is_block)."""
    if source.startswith(_TRIPLE, start):
        close = source.find(_TRIPLE, start + 3)
        if close == -1:
            raise DirectiveParseError('Triple-quoted string missing closing """')
        return _dedent_block(source[start + 3 : close]), close + 3, True

    quote = source[start] if start < len(source) else ""
    if quote not in ("'", '"', "`"):
        raise DirectiveParseError("Directive arguments must be quoted strings")

    chars: list[str] = []
    i = start + 1
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            if i + 1 >= len(source):
                raise DirectiveParseError("Invalid escape sequence in string")
            nxt = source[i + 1]
            chars.append({"n": "\n", "t": "\t", "r": "\r"}.get(nxt, nxt))
            i += 2
            continue
        if ch == quote:
            return "".join(chars), i + 1, False
        if ch == "\n" and quote != "`":
            raise DirectiveParseError(
                "Quoted strings cannot span multiple lines (use backticks or triple quotes)"
            )
        chars.append(ch)
        i += 1

    if quote == "`":
        raise DirectiveParseError("Unterminated backtick string in directive")
    raise DirectiveParseError("Unterminated string literal in directive")


def _dedent_block(content: str) -> str:
    lines = content.replace("\r\n", "\n").split("\n")
    if lines and not lines[0].strip():
        lines = lines[1:]
    if len(lines) > 1 and not lines[-1].strip():
        lines = lines[:-1]
    return textwrap.dedent("\n".join(lines))


def _extract_object_literal(text: str, start: int) -> tuple[str, int]:
    depth = 0
    quote: str | None = None
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1], i + 1
        i += 1
    raise DirectiveParseError("Options object missing closing brace")


def _parse_options(object_text: str) -> dict[str, Any]:
    yaml = YAML(typ="safe", pure=True)
    try:
        parsed = yaml.load(_space_after_colons(object_text))
    except YAMLError as exc:
        raise DirectiveParseError(f"Invalid directive options: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise DirectiveParseError("Directive options must be an object mapping")
    return dict(parsed)


def _space_after_colons(text: str) -> str:
    """Turn ``{key:value}`` into ``{key: value}`` so YAML sees a mapping."""
    out: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            out.append(ch)
            if ch == "\\" and quote == '"' and i + 1 < len(text):
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == ":" and i + 1 < len(text) and not text[i + 1].isspace():
            out.append(": ")
            i += 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _resolve_keys(raw: dict[str, Any], allowed: dict[str, str], fn_name: str) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    for key, value in raw.items():
        attr = allowed.get(str(key))
        if attr is None:
            raise DirectiveParseError(
                f"Unsupported {fn_name} option '{key}'. "
                f"Allowed keys: {', '.join(sorted(allowed))}."
            )
        if attr in resolved:
            raise DirectiveParseError(f"{fn_name} option '{key}' is specified more than once")
        resolved[attr] = value
    return resolved


def _interactive_options(raw: dict[str, Any]) -> InteractiveOptions:
    values: dict[str, Any] = {}
    for attr, value in _resolve_keys(raw, _INTERACTIVE_KEYS, "ask").items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise DirectiveParseError(f"ask option '{attr}' must be a string")
        if isinstance(value, bool):
            value = "true" if value else "false"
        values[attr] = str(value)
    return InteractiveOptions(**values)


def _delegated_options(raw: dict[str, Any]) -> DelegatedOptions:
    values: dict[str, Any] = {}
    for attr, value in _resolve_keys(raw, _DELEGATED_KEYS, "delegate").items():
        if attr in ("expect_json", "safe_mode_override"):
            if not isinstance(value, bool):
                raise DirectiveParseError(f"delegate option '{attr}' must be a boolean")
        elif attr == "tool_override":
            if not isinstance(value, str) or value not in KNOWN_TOOLS:
                raise DirectiveParseError(
                    f"delegate tool option must be one of {', '.join(repr(t) for t in KNOWN_TOOLS)}"
                )
        elif attr == "timeout_ms":
            if (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or not math.isfinite(value)
                or value <= 0
            ):
                raise DirectiveParseError("delegate timeoutMs must be a positive number")
        elif attr == "system_prompt":
            if not isinstance(value, str):
                raise DirectiveParseError("delegate systemPrompt option must be a string")
        values[attr] = value
    return DelegatedOptions(**values)


def _normalize_text(value: str) -> str:
    return value.replace("\r\n", "\n").strip()


def _count_open_braces(text: str, start: int) -> int:
    count = 0
    while start + count < len(text) and text[start + count] == "{":
        count += 1
    return min(count, 3)


def _find_region_end(text: str, start: int, open_count: int) -> int:
    """Return the offset of the closing braces, skipping quoted strings."""
    quote: str | None = None
    i = start
    while i < len(text) - 1:
        if quote == _TRIPLE:
            if text.startswith(_TRIPLE, i):
                quote = None
                i += 3
            else:
                i += 1
            continue
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if text.startswith(_TRIPLE, i):
            quote = _TRIPLE
            i += 3
            continue
        if ch in ("'", '"', "`"):
            quote = ch
            i += 1
            continue
        if ch == "}" and text[i + 1] == "}":
            if open_count == 3 and text[i + 2 : i + 3] != "}":
                i += 1
                continue
            return i
        i += 1
    return -1


def _blank_string_literals(text: str) -> str:
    """Replace the contents of quoted strings in *text* with spaces."""
    out: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                out.append("  ")
                i += 2
                continue
            if ch == quote:
                quote = None
                out.append(ch)
            else:
                out.append(" ")
            i += 1
            continue
        if ch in ("'", '"', "`"):
            quote = ch
        out.append(ch)
        i += 1
    return "".join(out)


def _skip_whitespace(text: str, index: int) -> int:
    while index < len(text) and text[index].isspace():
        index += 1
    return index


__all__ = [
    "CALL_NAMES",
    "classify_prompt",
    "compute_directive_id",
    "parse_directives",
]
