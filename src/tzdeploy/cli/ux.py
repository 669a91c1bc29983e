"""
Terminal output and prompts for the tz CLI.

rich renders messages and tables, questionary asks interactive questions.

Environment handling:
- Detects TTY vs pipe/CI and never prompts outside a terminal
- Respects NO_COLOR and FORCE_COLOR
- Errors and warnings go to stderr so ``--output json`` stays parseable
"""

from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from typing import Iterator

import questionary
from questionary import Style as QStyle
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.theme import Theme

TZ_THEME = Theme(
    {
        "info": "#7AA2F7",
        "success": "#9ECE6A",
        "warning": "#E0AF68",
        "error": "#F7768E bold",
        "highlight": "#BB9AF7",
        "muted": "#A9B1D6",
        "danger": "#FF5F5F bold",
    }
)

CI_ENV_VARS = ("CI", "GITHUB_ACTIONS", "JENKINS_URL", "GITLAB_CI", "CIRCLECI", "BUILDKITE")

console = Console(
    theme=TZ_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)
err_console = Console(
    theme=TZ_THEME,
    stderr=True,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)

PROMPT_STYLE = QStyle(
    [
        ("qmark", "fg:#7AA2F7 bold"),
        ("question", "bold"),
        ("answer", "fg:#9ECE6A"),
        ("pointer", "fg:#7AA2F7 bold"),
        ("highlighted", "fg:#BB9AF7 bold"),
    ]
)


def is_interactive() -> bool:
    """True when attached to a terminal outside CI."""
    if any(os.environ.get(var) for var in CI_ENV_VARS):
        return False
    return sys.stdin.isatty() and sys.stdout.isatty()


@contextmanager
def spinner(message: str) -> Iterator[None]:
    """Show a transient spinner while a long command runs."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=err_console,
        transient=True,
    ) as progress:
        progress.add_task(description=message, total=None)
        yield


def success(message: str) -> None:
    console.print(f"[success]✓ {escape(message)}[/success]")


def error(message: str) -> None:
    err_console.print(f"[error]✗ {escape(message)}[/error]")


def warning(message: str) -> None:
    err_console.print(f"[warning]⚠ {escape(message)}[/warning]")


def info(message: str) -> None:
    console.print(f"[info]ℹ {escape(message)}[/info]")


def header(title: str) -> None:
    console.print()
    console.print(Panel(f"[bold]{title}[/bold]", border_style="#7AA2F7"))


def danger_panel(title: str, body: str) -> None:
    """Highlight an irreversible action before asking for confirmation."""
    err_console.print(Panel(body, title=f"[danger]{title}[/danger]", border_style="#FF5F5F"))


def print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*row)
    console.print(table)


def print_key_value(items: dict[str, str], title: str | None = None) -> None:
    if title:
        console.print(f"\n[bold]{title}[/bold]")
    for key, value in items.items():
        console.print(f"  [muted]{key}:[/muted] {value}")


def confirm(message: str, default: bool = False) -> bool:
    return questionary.confirm(message, default=default, style=PROMPT_STYLE).ask() or False


def text_input(message: str, default: str = "") -> str:
    """Ask for free text. Returns ``default`` if the prompt is aborted."""
    answer = questionary.text(message, default=default, style=PROMPT_STYLE).ask()
    return answer if answer is not None else default
