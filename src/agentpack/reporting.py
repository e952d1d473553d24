"""Progress events emitted while rendering, and reporters that consume them.

The scheduler and renderer never print. They hand typed events to an
injected :class:`ProgressReporter`; :class:`RichReporter` is the terminal
implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from rich.console import Console

from agentpack.directives.models import Directive, DirectiveError

ANALYSIS_MESSAGE = "Analyzing your codebase, this may take a couple minutes. Hang tight!"


@dataclass(frozen=True)
class TemplateStarted:
    package_name: str
    template: str


@dataclass(frozen=True)
class DirectiveStarted:
    directive: Directive
    template: str
    prompt: Optional[str] = None


@dataclass(frozen=True)
class DirectiveResolved:
    directive: Directive
    template: str
    value: Any
    cached: bool = False


@dataclass(frozen=True)
class DirectiveFailed:
    directive: Directive
    template: str
    error: DirectiveError


@dataclass(frozen=True)
class AnalysisNotice:
    """Emitted once per render, before the first real agent invocation."""

    message: str = ANALYSIS_MESSAGE


ProgressEvent = Union[TemplateStarted, DirectiveStarted, DirectiveResolved, DirectiveFailed, AnalysisNotice]


class ProgressReporter(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


class RichReporter:
    """Print progress events to a rich console."""

    def __init__(self, console: Console | None = None, verbose: bool = False) -> None:
        self.console = console or Console()
        self.verbose = verbose

    def emit(self, event: ProgressEvent) -> None:
        if isinstance(event, AnalysisNotice):
            self.console.print(f"\n[cyan]{event.message}[/cyan]\n")
        elif isinstance(event, TemplateStarted):
            if self.verbose:
                self.console.print(f"[dim]Rendering {event.package_name}: {event.template}[/dim]")
        elif isinstance(event, DirectiveStarted):
            if self.verbose and event.directive.is_delegated:
                self.console.print(f"[cyan]○[/cyan] {_label(event.directive)}")
        elif isinstance(event, DirectiveResolved):
            if event.cached and self.verbose:
                self.console.print(f"[green dim]●[/green dim] {_label(event.directive)} [dim](cached)[/dim]")
            elif event.directive.is_delegated:
                self.console.print(f"[green]●[/green] {_label(event.directive)}")
        elif isinstance(event, DirectiveFailed):
            self.console.print(
                f"[red]●[/red] {_label(event.directive)} [bright_black]({event.error.message})[/bright_black]"
            )


def _label(directive: Directive) -> str:
    text = directive.prompt_text.strip().splitlines()[0] if directive.prompt_text.strip() else directive.id
    if len(text) > 60:
        text = text[:57] + "..."
    return f"[white]{text}[/white]"


__all__ = [
    "ANALYSIS_MESSAGE",
    "AnalysisNotice",
    "DirectiveFailed",
    "DirectiveResolved",
    "DirectiveStarted",
    "ProgressEvent",
    "ProgressReporter",
    "RichReporter",
    "TemplateStarted",
]
