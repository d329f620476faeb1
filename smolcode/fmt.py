"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr; final answers go to stdout.
"""

import re

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_out = Console()

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")

ARG_PREVIEW_CHARS = 50
RESULT_PREVIEW_CHARS = 60


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)


def render_markdown(text: str) -> Text:
    """Render **bold** spans; everything else is printed verbatim."""
    rendered = Text()
    pos = 0
    for m in _BOLD_RE.finditer(text):
        rendered.append(text[pos : m.start()])
        rendered.append(m.group(1), style="bold")
        pos = m.end()
    rendered.append(text[pos:])
    return rendered


# -- Session structure -------------------------------------------------------


def banner(model: str, provider: str, cwd: str) -> None:
    line = Text()
    line.append("smolcode", style="bold")
    line.append(f" | {model} ({provider}) | {cwd}", style="dim")
    _console.print(line)


def separator() -> None:
    _console.print(Rule(style="dim"))


def turn_header(n: int, max_n: int, token_est: int) -> None:
    limit = str(max_n) if max_n else "∞"
    _console.print(Rule(f"Turn {n}/{limit} (~{token_est} tokens)", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "end_turn", "tool_use", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  stop_reason={finish_reason}", style=style)
    _console.print(text)


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args: dict) -> None:
    first = next(iter(args.values()), "") if isinstance(args, dict) else ""
    preview = str(first)[:ARG_PREVIEW_CHARS]
    line = Text()
    line.append(name[:1].upper() + name[1:], style="bold green")
    line.append("(")
    line.append(preview, style="dim")
    line.append(")")
    _console.print(line)


def result_preview(result: str) -> str:
    lines = result.split("\n")
    preview = lines[0][:RESULT_PREVIEW_CHARS]
    if len(lines) > 1:
        preview += f" ... +{len(lines) - 1} lines"
    elif len(lines[0]) > RESULT_PREVIEW_CHARS:
        preview += "..."
    return preview


def tool_result(name: str, elapsed: float, result: str) -> None:
    line = Text()
    line.append("  ⎿  ", style="dim")
    line.append(result_preview(result), style="dim")
    line.append(f"  {elapsed:.1f}s", style="green")
    _console.print(line)


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {result_preview(msg)}", style="red")
    _console.print(header)


def command_output(line: str) -> None:
    _console.print(Text(f"  │ {line}", style="dim"))


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append_text(render_markdown(text))
    _console.print(line)


def answer(text: str) -> None:
    _out.print(render_markdown(text))


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


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /q, exit or Ctrl-D to quit, /c to clear.", style="dim")
    )
