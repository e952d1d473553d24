"""Default interactive collaborator for ``ask(...)`` directives."""

from __future__ import annotations

from typing import Callable, Optional

import typer

PromptUser = Callable[[str, Optional[str], Optional[str]], str]


def prompt_user(question: str, default: Optional[str] = None, placeholder: Optional[str] = None) -> str:
    """Ask *question* on the terminal and return the answer.

    The placeholder is shown as a hint only; pressing Enter on an empty line
    returns the default, or an empty string when there is none.

    Raises:
        typer.Abort: If the user cancels with Ctrl+C or closes stdin.
    """
    message = question
    if placeholder and placeholder.strip() and default is None:
        message = f"{question} ({placeholder.strip()})"

    answer = typer.prompt(
        message,
        default=default if default is not None else "",
        show_default=default is not None,
        type=str,
    )
    return answer


__all__ = ["PromptUser", "prompt_user"]
