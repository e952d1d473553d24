"""Tests for the terminal collaborators: RichReporter and prompt_user."""

from __future__ import annotations

import pytest
from rich.console import Console

from agentpack import prompting
from agentpack.directives.models import DirectiveError
from agentpack.directives.parser import parse_directives
from agentpack.reporting import (
    ANALYSIS_MESSAGE,
    AnalysisNotice,
    DirectiveFailed,
    DirectiveResolved,
    DirectiveStarted,
    RichReporter,
    TemplateStarted,
)


def _reporter(verbose: bool = False) -> tuple[RichReporter, Console]:
    console = Console(record=True, width=120, force_terminal=False)
    return RichReporter(console=console, verbose=verbose), console


class TestRichReporter:
    def test_analysis_notice(self) -> None:
        reporter, console = _reporter()
        reporter.emit(AnalysisNotice())
        assert ANALYSIS_MESSAGE in console.export_text()

    def test_quiet_mode_shows_results_only(self) -> None:
        reporter, console = _reporter()
        [directive] = parse_directives("{{ delegate('Summarize the repository layout') }}")

        reporter.emit(TemplateStarted("@acme/rules", "CLAUDE.md.j2"))
        reporter.emit(DirectiveStarted(directive, "t"))
        reporter.emit(DirectiveResolved(directive, "t", "ok"))

        text = console.export_text()
        assert "Rendering" not in text
        assert text.count("Summarize the repository layout") == 1

    def test_verbose_mode_marks_cached(self) -> None:
        reporter, console = _reporter(verbose=True)
        [directive] = parse_directives("{{ ask('Name?') }}")

        reporter.emit(TemplateStarted("@acme/rules", "CLAUDE.md.j2"))
        reporter.emit(DirectiveResolved(directive, "t", "Alice", cached=True))

        text = console.export_text()
        assert "Rendering @acme/rules: CLAUDE.md.j2" in text
        assert "(cached)" in text

    def test_failure_shows_message(self) -> None:
        reporter, console = _reporter()
        [directive] = parse_directives("{{ delegate('" + "x" * 80 + "') }}")

        reporter.emit(DirectiveFailed(directive, "t", DirectiveError("tool missing")))

        text = console.export_text()
        assert "tool missing" in text
        assert "x" * 57 + "..." in text


class TestPromptUser:
    def test_default_is_shown(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: dict = {}

        def fake_prompt(text, **kwargs):
            seen["text"] = text
            seen.update(kwargs)
            return kwargs["default"]

        monkeypatch.setattr(prompting.typer, "prompt", fake_prompt)

        assert prompting.prompt_user("Port?", "8080", "e.g. 80") == "8080"
        assert seen["text"] == "Port?"
        assert seen["show_default"] is True

    def test_placeholder_without_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: dict = {}

        def fake_prompt(text, **kwargs):
            seen["text"] = text
            seen.update(kwargs)
            return "answer"

        monkeypatch.setattr(prompting.typer, "prompt", fake_prompt)

        assert prompting.prompt_user("Name?", None, " your name ") == "answer"
        assert seen["text"] == "Name? (your name)"
        assert seen["default"] == ""
        assert seen["show_default"] is False
