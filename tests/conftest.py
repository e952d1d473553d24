from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from agentpack.core.config import ToolSpec
from agentpack.errors import ErrorCode, ToolInvocationError
from agentpack.tools.runner import ToolExecution, ToolRequest


class FakePrompt:
    """Interactive collaborator that answers from a mapping and records calls."""

    def __init__(self, answers: Optional[dict[str, str]] = None) -> None:
        self.answers = dict(answers or {})
        self.calls: list[tuple[str, Optional[str], Optional[str]]] = []

    def __call__(self, question: str, default: Optional[str] = None, placeholder: Optional[str] = None) -> str:
        self.calls.append((question, default, placeholder))
        if question in self.answers:
            return self.answers[question]
        return default or ""


class FakeTool:
    """Agent collaborator returning canned stdout and recording requests.

    ``responder`` receives the request and returns stdout, or raises.
    """

    def __init__(self, responder: Optional[Callable[[ToolRequest], Any]] = None) -> None:
        self.responder = responder or (lambda request: json.dumps({"result": "ok"}))
        self.requests: list[ToolRequest] = []

    def __call__(self, request: ToolRequest) -> ToolExecution:
        self.requests.append(request)
        stdout = self.responder(request)
        if not isinstance(stdout, str):
            stdout = json.dumps(stdout)
        return ToolExecution(command=request.tool.command or request.tool.type, stdout=stdout)

    @property
    def prompts(self) -> list[str]:
        return [request.prompt for request in self.requests]


class CollectingReporter:
    def __init__(self) -> None:
        self.events: list[Any] = []

    def emit(self, event: Any) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [type(event).__name__ for event in self.events]


@pytest.fixture()
def fake_prompt() -> FakePrompt:
    return FakePrompt({"Name?": "Alice"})


@pytest.fixture()
def fake_tool() -> FakeTool:
    return FakeTool()


@pytest.fixture()
def failing_tool() -> FakeTool:
    def _fail(request: ToolRequest) -> str:
        raise ToolInvocationError("Command 'claude' not found in PATH.", ErrorCode.TOOL_NOT_FOUND)

    return FakeTool(_fail)


@pytest.fixture()
def make_tool() -> Callable[..., FakeTool]:
    return FakeTool


@pytest.fixture()
def reporter() -> CollectingReporter:
    return CollectingReporter()


@pytest.fixture()
def claude_spec() -> ToolSpec:
    return ToolSpec(type="claude", command="claude", model="default")


@pytest.fixture()
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point AGENTPACK_HOME at an empty temp dir."""
    home = tmp_path / "agentpack-home"
    home.mkdir()
    monkeypatch.setenv("AGENTPACK_HOME", str(home))
    return home
