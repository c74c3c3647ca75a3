"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.text import Text

_console = Console(stderr=True)

MAX_PREVIEW_LINES = 40


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, model: str, token_est: int) -> None:
    title = f"Call {n} · {model} (~{token_est} tokens)"
    _console.print(Rule(escape(title), style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={finish_reason}", style=style)
    _console.print(text)


def progress_label(elapsed: float, tokens: int) -> str:
    return f"  Thinking... {int(elapsed)}s · {tokens} tokens"


def llm_spinner(label: str = "  Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(label, spinner="dots")


def completion(calls: int, elapsed: float, tokens: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(
                f"  ✓ Done: {calls} model calls, {elapsed:.1f}s, {tokens} tokens",
                style="bold green",
            )
        )
    else:
        _console.print(
            Text(f"  Stopped after {calls} model calls, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_rejected(name: str, feedback: str | None) -> None:
    line = Text()
    line.append(f"  ✗ {name} rejected", style="yellow")
    if feedback:
        line.append(f"  {feedback}", style="dim")
    _console.print(line)


def guardrail(tool_name: str, count: int) -> None:
    line = Text()
    line.append("  ⚠ Guardrail: ", style="bold yellow")
    line.append(
        f"{tool_name} was called {count} times with the same arguments and result",
        style="yellow",
    )
    _console.print(line)


# -- Confirmation ------------------------------------------------------------


def confirmation(operation: str, target: str, content: str | None) -> None:
    body = Text()
    body.append(f"{operation}: ", style="bold")
    body.append(target)
    _console.print(Panel(body, title="Confirm", border_style="yellow", expand=False))
    if content:
        lines = content.splitlines()
        shown = "\n".join(lines[:MAX_PREVIEW_LINES])
        lexer = "diff" if operation == "Edit file" else "text"
        _console.print(Syntax(shown, lexer, theme="ansi_dark", word_wrap=True))
        if len(lines) > MAX_PREVIEW_LINES:
            _console.print(
                Text(f"  ... {len(lines) - MAX_PREVIEW_LINES} more lines", style="dim")
            )


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Models ------------------------------------------------------------------


def model_list(models: list[tuple[str, str]], current: str) -> None:
    for name, description in models:
        line = Text()
        marker = "●" if name == current else " "
        line.append(f"  {marker} {name}", style="bold cyan" if name == current else "cyan")
        line.append(f"  {description}", style="dim")
        _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def missing_api_key() -> None:
    error("no API key provided")
    info(
        "Provide one of:\n"
        "    environment variable: export BIGDREAM_API_KEY=your_key\n"
        "    command line: --api-key your_key\n"
        "    user settings: ~/.config/bigdream/settings.json"
    )


def repl_banner(model: str) -> None:
    _console.print(Text(f"bigdream · {model}", style="bold magenta"))
    _console.print(
        Text(
            "Ask questions, edit files, or run commands. "
            "Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
