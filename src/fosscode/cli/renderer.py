"""Rich-based terminal output for the CLI."""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from ..models import BackgroundTask, TaskOutput, TaskStatus
from ..services.agent_loop import AgentEvent, TurnResult

console = Console(stderr=True)
# Final answers go to stdout so they can be piped.
_stdout_console = Console()

GOLD = "#C5A059"  # accents, "Thinking..." text
SLATE = "#94A3B8"  # labels
MUTED = "#8b8b8b"  # secondary text (tool results)
CHROME = "#6b7280"  # UI chrome (status messages, hints)
ERROR_RED = "#CD6B6B"

_STATUS_STYLE = {
    TaskStatus.QUEUED: CHROME,
    TaskStatus.RUNNING: GOLD,
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: ERROR_RED,
    TaskStatus.CANCELLED: MUTED,
}

_tool_start: float = 0
_verbose = False


def use_stdout_console() -> None:
    """Route all output through a duplicate of the real stderr fd.

    Call from inside prompt_toolkit's ``patch_stdout()`` context; the proxy it
    installs mangles ANSI escapes.
    """
    global console, _stdout_console
    real_stderr = os.fdopen(os.dup(sys.stderr.fileno()), "w")
    console = Console(file=real_stderr, force_terminal=True)
    _stdout_console = Console(file=real_stderr, force_terminal=True)


def set_verbose(value: bool) -> None:
    global _verbose
    _verbose = value


def _summarize_args(arguments: dict[str, Any]) -> str:
    for key in ("command", "path", "pattern"):
        if key in arguments:
            value = str(arguments[key])
            return value if len(value) <= 80 else value[:77] + "..."
    raw = json.dumps(arguments, default=str)
    return raw if len(raw) <= 80 else raw[:77] + "..."


def render_event(event: AgentEvent) -> None:
    """Print one orchestrator event. ``done`` is handled by render_result."""
    global _tool_start
    kind, data = event.kind, event.data

    if kind == "thinking":
        if _verbose or data["iteration"] > 1:
            console.print(f"[{GOLD}]Thinking...[/{GOLD}] [{CHROME}](iteration {data['iteration']})[/{CHROME}]")
    elif kind == "assistant_message":
        # Intermediate text that accompanies tool calls; the final answer is rendered on done.
        if data["tool_calls"] and data["content"].strip():
            console.print(f"[{SLATE}]{escape(data['content'].strip())}[/{SLATE}]")
    elif kind == "tool_call_start":
        _tool_start = time.monotonic()
        summary = _summarize_args(data.get("arguments") or {})
        console.print(f"  [{GOLD}]>[/{GOLD}] {escape(data['tool_name'])} [{MUTED}]{escape(summary)}[/{MUTED}]")
    elif kind == "tool_call_end":
        elapsed = time.monotonic() - _tool_start if _tool_start else 0.0
        status = data["status"]
        if status == "success":
            console.print(f"    [{MUTED}]ok ({elapsed:.1f}s)[/{MUTED}]")
        else:
            error = data["output"].get("error") or status
            console.print(f"    [{ERROR_RED}]{escape(status)}: {escape(str(error))}[/{ERROR_RED}]")
    elif kind == "compressed":
        console.print(f"[{CHROME}]Context compressed ({data['elided']} messages summarized)[/{CHROME}]")
    elif kind == "cancelled":
        console.print(f"[yellow]Cancelled[/yellow] [{CHROME}]{escape(data.get('reason') or '')}[/{CHROME}]")


def render_result(result: TurnResult) -> None:
    if result.diagnostic:
        console.print(Markdown(result.content), style="yellow")
    else:
        _stdout_console.print(Markdown(result.content))
    if _verbose:
        usage = result.usage
        console.print(
            f"[{CHROME}]{result.iterations} iterations, {result.tool_calls} tool calls, "
            f"{usage.total_tokens}/{result.token_budget} tokens ({result.stop_reason.value})[/{CHROME}]"
        )


def render_error(message: str) -> None:
    console.print(f"[{ERROR_RED}]Error: {escape(message)}[/{ERROR_RED}]")


def render_info(message: str) -> None:
    console.print(f"[{CHROME}]{escape(message)}[/{CHROME}]")


def render_tasks(tasks: list[BackgroundTask]) -> None:
    if not tasks:
        render_info("No background tasks")
        return
    table = Table(show_header=True, header_style=SLATE, box=None)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Info", overflow="fold")
    for task in sorted(tasks, key=lambda t: t.created_at):
        style = _STATUS_STYLE.get(task.status, "")
        table.add_row(
            task.id,
            escape(task.name),
            f"[{style}]{task.status.value}[/{style}]",
            f"{task.progress}%",
            escape(task.error or ""),
        )
    console.print(table)


def render_task_output(label: str, output: TaskOutput) -> None:
    style = ERROR_RED if output.type in ("error", "stderr") else MUTED
    content = output.content if len(output.content) <= 500 else output.content[:497] + "..."
    console.print(f"[{CHROME}]\\[{escape(label)}][/{CHROME}] [{style}]{output.type}: {escape(content)}[/{style}]")
