"""Invoke agent CLIs (claude, codex, gemini) and interpret their output.

The prompt is piped on stdin. In safe mode each tool gets read-only or
planning flags; callers can turn safe mode off per directive.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, Optional

from agentpack.core.config import ToolSpec
from agentpack.errors import ErrorCode, ToolInvocationError

logger = logging.getLogger(__name__)

SAFE_ARGS: dict[str, list[str]] = {
    "claude": ["-p", "--output-format", "json", "--permission-mode", "plan", "--max-turns", "100"],
    "codex": ["--sandbox", "read-only"],
    "gemini": [],
}

REQUIRED_ARGS: dict[str, list[str]] = {
    "claude": ["-p", "--output-format", "json"],
    "codex": [],
    "gemini": [],
}

# Flags stripped from user-configured args before safe-mode flags are applied,
# as (flag, consumes_value).
SAFE_MODE_FLAG_OVERRIDES: dict[str, list[tuple[str, bool]]] = {
    "claude": [
        ("-p", False),
        ("--output-format", True),
        ("--permission-mode", True),
        ("--max-turns", True),
    ],
    "codex": [("--sandbox", True)],
    "gemini": [],
}

ANSI_PATTERN = re.compile(r"\x1b\[[\d;]*[A-Za-z]")
FENCED_JSON = re.compile(r"```json\s*([\s\S]+?)```", re.IGNORECASE)
TRAILING_OBJECT = re.compile(r"{[\s\S]*}$")

ParseMode = Literal["auto_json", "json", "raw"]


@dataclass
class ToolRequest:
    """Everything needed to run one agent CLI invocation."""

    tool: ToolSpec
    prompt: str
    cwd: Path
    safe_mode: bool = True
    timeout_ms: Optional[float] = None
    system_prompt: Optional[str] = None
    environ: Optional[Mapping[str, str]] = None


@dataclass
class ToolExecution:
    command: str
    args: list[str] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""


ToolInvoker = Callable[[ToolRequest], ToolExecution]


def build_args(request: ToolRequest) -> list[str]:
    """Assemble the argument list for *request* (command excluded)."""
    tool = request.tool
    args = list(tool.args or [])
    if request.safe_mode:
        args = _strip_flags(args, SAFE_MODE_FLAG_OVERRIDES.get(tool.type, []))
        _append_args(args, SAFE_ARGS.get(tool.type, []))
    _append_args(args, REQUIRED_ARGS.get(tool.type, []))
    if tool.model and tool.model != "default":
        _append_args(args, ["--model", tool.model])
    if tool.type == "claude" and request.system_prompt is not None:
        args.extend(["--append-system-prompt", request.system_prompt])
    return args


def build_env(request: ToolRequest) -> Optional[dict[str, str]]:
    """Merge the threaded environment with the tool's own env settings.

    Values of the form ``env:NAME`` are looked up in the threaded environment.
    """
    if request.environ is None and not request.tool.env:
        return None
    base = dict(request.environ or {})
    for key, value in (request.tool.env or {}).items():
        if value.startswith("env:"):
            resolved = base.get(value[4:])
            if resolved is not None:
                base[key] = resolved
        else:
            base[key] = value
    return base


def invoke_tool(request: ToolRequest) -> ToolExecution:
    """Run the agent CLI for *request*, feeding the prompt on stdin.

    Raises:
        ToolInvocationError: With code TOOL_NOT_FOUND, TOOL_TIMEOUT or
            TOOL_EXECUTION_FAILED.
    """
    command = request.tool.command or request.tool.type
    args = build_args(request)
    timeout = request.timeout_ms / 1000 if request.timeout_ms else None
    logger.debug("Invoking %s %s (cwd=%s)", command, " ".join(args), request.cwd)

    try:
        result = subprocess.run(
            [command, *args],
            input=request.prompt,
            capture_output=True,
            text=True,
            cwd=request.cwd,
            env=build_env(request),
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ToolInvocationError(
            f"Command '{command}' not found in PATH. "
            f"Please ensure the '{request.tool.type}' CLI is installed and accessible.",
            ErrorCode.TOOL_NOT_FOUND,
            {"command": command},
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ToolInvocationError(
            f"Tool '{command}' timed out after {request.timeout_ms:g} ms",
            ErrorCode.TOOL_TIMEOUT,
            {"command": command},
        ) from exc
    except OSError as exc:
        raise ToolInvocationError(
            f"Failed to spawn command '{command}': {exc}",
            ErrorCode.TOOL_EXECUTION_FAILED,
            {"command": command},
        ) from exc

    if result.returncode != 0:
        raise ToolInvocationError(
            f"Tool '{command}' exited with code {result.returncode}",
            ErrorCode.TOOL_EXECUTION_FAILED,
            {"stderr": result.stderr, "stdout": result.stdout},
        )

    return ToolExecution(command=command, args=args, stdout=result.stdout, stderr=result.stderr)


def strip_ansi(text: str) -> str:
    return ANSI_PATTERN.sub("", text)


def parse_tool_output(output: str, mode: ParseMode = "auto_json") -> Any:
    """Parse JSON out of tool output.

    ``json`` mode requires the whole output to be JSON; ``auto_json`` also
    accepts a fenced ```json block or a trailing ``{...}`` object and returns
    None when nothing parses.

    Raises:
        ToolInvocationError: TOOL_OUTPUT_PARSE_ERROR in ``json`` mode.
    """
    if mode == "raw":
        return None
    cleaned = strip_ansi(output).strip()
    if not cleaned:
        return None

    if mode == "json":
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise ToolInvocationError(
                f"Failed to parse tool output: {exc}", ErrorCode.TOOL_OUTPUT_PARSE_ERROR
            ) from exc
    else:
        parsed = extract_json(cleaned)
        if parsed is None:
            return None

    if isinstance(parsed, dict):
        enrich_embedded_result(parsed)
    return parsed


def extract_json(body: str) -> Any:
    """Return the first JSON payload found in *body*, or None."""
    candidates = [body]
    fenced = FENCED_JSON.search(body)
    if fenced:
        candidates.append(fenced.group(1).strip())
    trailing = TRAILING_OBJECT.search(body)
    if trailing:
        candidates.append(trailing.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def enrich_embedded_result(target: dict[str, Any]) -> None:
    """Parse a JSON string held in ``result`` into ``result_parsed``.

    Keys of the nested object are merged into *target* where absent.
    """
    result = target.get("result")
    if not isinstance(result, str):
        return
    stripped = result.strip()
    if not stripped or stripped[0] not in "{[" and "```" not in stripped:
        return
    nested = extract_json(stripped)
    if nested is None:
        return
    target["result_parsed"] = nested
    if isinstance(nested, dict):
        for key, value in nested.items():
            target.setdefault(key, value)


def interpret_output(stdout: str, expect_json: bool) -> Any:
    """Turn raw tool stdout into the value a directive resolves to."""
    cleaned = strip_ansi(stdout)
    if expect_json:
        parsed = parse_tool_output(cleaned, "json")
        if parsed is None:
            raise ToolInvocationError(
                "delegate expected JSON but none was returned",
                ErrorCode.TOOL_OUTPUT_PARSE_ERROR,
            )
        return parsed

    parsed = parse_tool_output(cleaned, "auto_json")
    if isinstance(parsed, dict):
        if parsed.get("result") is not None:
            return parsed["result"]
        if parsed.get("result_parsed") is not None:
            return parsed["result_parsed"]
    return cleaned.strip()


def _strip_flags(args: list[str], flags: list[tuple[str, bool]]) -> list[str]:
    for flag, consumes_value in flags:
        kept: list[str] = []
        skip_next = False
        for index, arg in enumerate(args):
            if skip_next:
                skip_next = False
                continue
            if arg != flag:
                kept.append(arg)
                continue
            nxt = args[index + 1] if index + 1 < len(args) else None
            skip_next = consumes_value and nxt is not None and not nxt.startswith("-")
        args = kept
    return args


def _append_args(target: list[str], additions: list[str]) -> None:
    """Append flags (with their values) that *target* does not already carry."""
    i = 0
    while i < len(additions):
        arg = additions[i]
        nxt = additions[i + 1] if i + 1 < len(additions) else None
        takes_value = arg.startswith("-") and nxt is not None and not nxt.startswith("-")
        if arg.startswith("-"):
            if arg not in target:
                target.append(arg)
                if takes_value:
                    target.append(nxt)  # type: ignore[arg-type]
            i += 2 if takes_value else 1
            continue
        if arg not in target:
            target.append(arg)
        i += 1


__all__ = [
    "ToolExecution",
    "ToolInvoker",
    "ToolRequest",
    "build_args",
    "build_env",
    "enrich_embedded_result",
    "extract_json",
    "interpret_output",
    "invoke_tool",
    "parse_tool_output",
    "strip_ansi",
]
