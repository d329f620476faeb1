import argparse
import json
import os
import sys
import time
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    UNSET,
    ProviderConfig,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_provider,
)
from .errors import AgentError, ConfigError
from .messages import History, assistant_message, text_of, tool_result_block, tool_uses, user_message
from .protocol import build_headers, decode_response, encode_request, stop_reason
from .tools import ToolRegistry
from .transport import DEFAULT_TIMEOUT, post_json

DEFAULT_MAX_TURNS = 100

QUIT_COMMANDS = ("/q", "/quit", "/exit", "exit")
CLEAR_COMMANDS = ("/c", "/clear")

INTERRUPTED_RESULT = "error: interrupted by user before this tool finished"

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def estimate_tokens(history, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    encoder = _get_encoder()
    total = 0
    for m in history:
        content = m["content"]
        if not isinstance(content, str):
            content = json.dumps(content)
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(history)
    return total


def default_system_prompt(base_dir: str) -> str:
    return f"Concise coding assistant. cwd: {Path(base_dir).resolve()}"


def call_model(
    config: ProviderConfig,
    system_prompt: str,
    history,
    registry: ToolRegistry,
    *,
    timeout: float = DEFAULT_TIMEOUT,
) -> tuple[list, str | None]:
    """Send the full history to the provider. Returns (content_blocks, stop_reason)."""
    body = encode_request(config, system_prompt, history, registry.schemas())
    payload = post_json(config.endpoint, build_headers(config), body, timeout=timeout)
    return decode_response(config.family, payload), stop_reason(config.family, payload)


def dispatch_tools(
    blocks: list, registry: ToolRegistry, verbose: bool, results: list | None = None
) -> list[dict]:
    """Run every tool_use block in emission order, one tool_result per request.

    Results are appended to `results` as each tool finishes. If the user
    interrupts a tool, every request still unanswered gets an
    "error: interrupted" result before the KeyboardInterrupt propagates.
    """
    if results is None:
        results = []
    pending = tool_uses(blocks)
    start = len(results)
    try:
        for block in pending:
            name = block.get("name", "")
            args = block.get("input", {})
            if verbose:
                fmt.tool_call(name, args if isinstance(args, dict) else {})

            t0 = time.monotonic()
            result = registry.invoke(name, args)
            elapsed = time.monotonic() - t0

            if verbose:
                if result.startswith("error:"):
                    fmt.tool_error(name, result)
                else:
                    fmt.tool_result(name, elapsed, result)
            results.append(tool_result_block(block.get("id", ""), result))
    except KeyboardInterrupt:
        for block in pending[len(results) - start :]:
            results.append(tool_result_block(block.get("id", ""), INTERRUPTED_RESULT))
        raise
    return results


def run_agent_loop(
    history: History,
    registry: ToolRegistry,
    *,
    config: ProviderConfig,
    system_prompt: str,
    max_turns: int = DEFAULT_MAX_TURNS,
    verbose: bool = False,
    timeout: float = DEFAULT_TIMEOUT,
) -> tuple[str | None, bool]:
    """Alternate model calls and tool dispatch until the model stops asking for tools.

    Mutates `history` in place: the assistant blocks of every response are
    appended, followed by a user message holding the tool results whenever
    tools were requested. Transport and decode failures propagate as
    AgentError with the history left as built so far. A KeyboardInterrupt
    during tool dispatch still leaves one tool_result per tool_use.

    Returns (final_answer, exhausted). exhausted is True if max_turns was hit
    (max_turns=0 means no limit).
    """
    turns = 0
    last_text = None

    while not max_turns or turns < max_turns:
        turns += 1
        if verbose:
            fmt.turn_header(turns, max_turns, estimate_tokens(history, registry.schemas()))

        t0 = time.monotonic()
        blocks, reason = call_model(
            config, system_prompt, history, registry, timeout=timeout
        )
        if verbose:
            fmt.llm_timing(time.monotonic() - t0, reason)

        history.append(assistant_message(blocks))

        text = text_of(blocks)
        if text:
            last_text = text

        if not tool_uses(blocks):
            if verbose:
                fmt.completion(turns, "ok")
            return text, False

        if text and verbose:
            fmt.assistant_text(text)

        results: list[dict] = []
        try:
            dispatch_tools(blocks, registry, verbose, results)
        finally:
            history.append(user_message(results))

    if verbose:
        fmt.completion(turns, "max_turns")
    return last_text, True


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /c, /clear         Clear the conversation\n"
        "  /q, /quit, exit    Exit the REPL"
    )


def _repl_clear(history: History) -> None:
    dropped = history.clear()
    fmt.info(f"Cleared conversation ({dropped} messages removed)")


def ask(line: str, history: History, registry: ToolRegistry, **loop_kwargs) -> str | None:
    """Run one user turn. Errors are reported and the history is kept as is."""
    history.append(user_message(line))
    try:
        answer, exhausted = run_agent_loop(history, registry, **loop_kwargs)
    except AgentError as e:
        fmt.error(str(e))
        return None
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return None

    if answer:
        fmt.answer(answer)
    if exhausted:
        fmt.warning("max turns reached for this question.")
    return answer


def repl_loop(history: History, registry: ToolRegistry, **loop_kwargs) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import InMemoryHistory

    session = PromptSession(history=InMemoryHistory())
    prompt_text = FormattedText([("bold fg:ansiblue", "❯ ")])
    verbose = loop_kwargs.get("verbose", False)

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            if verbose:
                fmt.separator()
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if verbose:
            fmt.separator()
        if not line:
            continue

        cmd = line.lower()
        if cmd in QUIT_COMMANDS:
            break
        if cmd in CLEAR_COMMANDS:
            _repl_clear(history)
            continue
        if cmd == "/help":
            _repl_help()
            continue

        ask(line, history, registry, **loop_kwargs)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Defaults are the UNSET sentinel so config files can fill in whatever the
    command line did not set.
    """
    parser = argparse.ArgumentParser(
        prog="smolcode",
        usage="%(prog)s [options] [question]",
        description="A small interactive coding agent with file, search and shell tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config file template and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Optional first message, sent before the interactive prompt opens.",
    )
    parser.add_argument(
        "--provider",
        choices=["openrouter", "groq", "anthropic"],
        default=UNSET,
        help="LLM provider (default: first of OPENROUTER_API_KEY, GROQ_API_KEY, ANTHROPIC_API_KEY that is set).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=UNSET,
        help="Model identifier (default: $MODEL or the provider's default).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=UNSET,
        help="Full endpoint URL, replacing the provider's default.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=UNSET,
        help="Base directory for file tools and commands (default: current directory).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=UNSET,
        help=f"Maximum model calls per question, 0 for no limit (default: {DEFAULT_MAX_TURNS}).",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=UNSET,
        help="Timeout in seconds for the bash tool (default: 30).",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=UNSET,
        help=f"Timeout in seconds for each model request (default: {DEFAULT_TIMEOUT}).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=UNSET,
        help="System prompt to use instead of the built-in one.",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=UNSET,
        help="Let file tools reach paths outside the base directory.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=UNSET,
        help="Suppress all diagnostics; only print answers.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("smolcode")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    try:
        config_base = args.base_dir if args.base_dir is not UNSET else "."
        apply_config_to_args(args, load_config(config_base))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    fmt.init(color=args.color, no_color=args.no_color)
    args.verbose = not args.quiet

    if args.max_turns < 0:
        parser.error("--max-turns must be >= 0")

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args):
    base_dir = os.path.abspath(args.base_dir)
    if not os.path.isdir(base_dir):
        raise ConfigError(f"base directory does not exist: {args.base_dir}")

    config = resolve_provider(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
    )

    registry = ToolRegistry(
        base_dir=base_dir,
        command_timeout=args.command_timeout,
        unrestricted=args.yolo,
        on_output=fmt.command_output if args.verbose else None,
    )
    loop_kwargs = dict(
        config=config,
        system_prompt=args.system_prompt or default_system_prompt(base_dir),
        max_turns=args.max_turns,
        verbose=args.verbose,
        timeout=args.request_timeout,
    )

    if args.verbose:
        fmt.banner(config.model, config.provider, base_dir)

    history = History()
    if args.question:
        ask(args.question, history, registry, **loop_kwargs)

    repl_loop(history, registry, **loop_kwargs)


if __name__ == "__main__":
    main()
