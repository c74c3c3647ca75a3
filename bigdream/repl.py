"""Command-line entry point and interactive REPL."""

import argparse
import asyncio
import contextlib
import logging
import os
import shlex
import signal
import subprocess
import sys
from importlib import metadata
from pathlib import Path

from . import config, fmt
from .agent import (
    DEFAULT_MAX_TURNS,
    ConversationAgent,
    TurnResult,
    build_system_prompt,
)
from .confirm import ConfirmationGate, get_gate
from .messages import ConfirmationRequest
from .report import AgentError
from .tools import ToolCatalog
from .transport import ChatTransport

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.5  # seconds between spinner label updates


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="bigdream",
        usage="%(prog)s [options] [question]",
        description="A conversational AI assistant that can read, edit and run things in your project.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer this question and exit instead of starting the REPL.",
    )
    parser.add_argument(
        "-d",
        "--directory",
        default=".",
        help="Working directory for file tools and project settings (default: current directory).",
    )
    parser.add_argument(
        "-k",
        "--api-key",
        default=None,
        help="API key (or set BIGDREAM_API_KEY). Saved to user settings.",
    )
    parser.add_argument(
        "-u",
        "--base-url",
        default=None,
        help="API base URL (or set BIGDREAM_BASE_URL). Saved to user settings.",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=None,
        help=f"Model to use (default: {config.DEFAULT_MODEL}).",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for whole responses instead of streaming them.",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=DEFAULT_MAX_TURNS,
        help=f"Maximum model calls per question (default: {DEFAULT_MAX_TURNS}).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress diagnostics; only print answers.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging on stderr.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a settings template to the user config directory and exit.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _version() -> str:
    try:
        return metadata.version("bigdream")
    except metadata.PackageNotFoundError:
        return "unknown"


def _save_cli_credentials(args, env=None) -> None:
    """Persist -k/-u values to user settings unless the environment provides them."""
    env = os.environ if env is None else env
    api_key = None
    base_url = None
    if args.api_key and not any(env.get(n) for n in config.ENV_API_KEY):
        api_key = args.api_key
    if args.base_url and not any(env.get(n) for n in config.ENV_BASE_URL):
        base_url = args.base_url
    if config.save_user_settings(api_key=api_key, base_url=base_url) and args.verbose:
        path = config.user_settings_path()
        if api_key:
            fmt.info(f"API key saved to {path}")
        if base_url:
            fmt.info(f"Base URL saved to {path}")


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(_version())
        sys.exit(0)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)
    if args.debug:
        logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
        logging.getLogger("bigdream").setLevel(logging.DEBUG)

    if args.init_config:
        try:
            path = config.init_user_config()
        except AgentError as e:
            fmt.error(str(e))
            sys.exit(1)
        if path is None:
            fmt.warning(f"{config.user_settings_path()} already exists, not overwriting")
        else:
            fmt.info(f"Wrote settings template to {path}")
        sys.exit(0)

    if args.max_turns < 1:
        parser.error("--max-turns must be at least 1")

    base_dir = Path(args.directory).expanduser().resolve()
    if not base_dir.is_dir():
        fmt.error(f"not a directory: {args.directory}")
        sys.exit(1)
    args.directory = str(base_dir)

    _save_cli_credentials(args)
    settings = config.resolve_settings(
        config.SettingsOverride(
            api_key=args.api_key, base_url=args.base_url, model=args.model
        ),
        base_dir=args.directory,
    )
    if not settings.api_key:
        fmt.missing_api_key()
        sys.exit(1)

    try:
        sys.exit(asyncio.run(_run_main(args, settings)))
    except KeyboardInterrupt:
        print(file=sys.stderr)
        sys.exit(130)


def build_agent(
    args,
    settings,
    gate: ConfirmationGate | None = None,
    on_text=None,
    on_tool_call=None,
):
    """Wire transport, tool catalog and gate into a ConversationAgent."""
    return ConversationAgent(
        ChatTransport(settings),
        ToolCatalog(args.directory),
        gate=gate,
        model=settings.model,
        system_prompt=build_system_prompt(args.directory, verbose=args.verbose),
        stream=not args.no_stream,
        max_turns=args.max_turns,
        verbose=args.verbose,
        on_text=on_text,
        on_tool_call=on_tool_call,
    )


async def _run_main(args, settings) -> int:
    from prompt_toolkit import PromptSession

    session = PromptSession()
    output = _TextOutput()
    agent = build_agent(
        args,
        settings,
        gate=get_gate(),
        on_text=output.write,
        on_tool_call=output.tool_started,
    )

    if args.question is not None:
        try:
            result = await run_turn(agent, session, args.question, output, args.verbose)
        except AgentError as e:
            fmt.error(str(e))
            return 1
        if result.answer and not output.streamed:
            print(result.answer)
        if result.exhausted:
            fmt.warning("max turns reached, agent stopped.")
            return 2
        return 0

    await repl_loop(agent, session, args, output)
    return 0


class _TextOutput:
    """Stdout sink for streamed assistant text.

    Tracks whether the current turn printed anything, so the final answer
    is not printed twice and the prompt starts on a fresh line.
    """

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self.streamed = False
        self.on_first_text = None

    def reset(self) -> None:
        self.streamed = False

    def write(self, text: str) -> None:
        if not self.streamed and self.on_first_text is not None:
            self.on_first_text()
        self.streamed = True
        self.stream.write(text)
        self.stream.flush()

    def end_line(self) -> None:
        if self.streamed:
            self.stream.write("\n")
            self.stream.flush()

    def tool_started(self, name: str, args: dict) -> None:
        # Tool output and the next streamed text start on a fresh line.
        self.end_line()
        self.reset()


async def run_turn(
    agent: ConversationAgent,
    session,
    text: str,
    output: _TextOutput,
    verbose: bool = True,
) -> TurnResult:
    """Submit text and service confirmation requests until the turn ends."""
    output.reset()
    turn = asyncio.create_task(agent.submit(text))
    try:
        while not turn.done():
            waiter = asyncio.create_task(agent.gate.wait_for_request())
            try:
                await _wait_with_progress(agent, turn, waiter, output, verbose)
            finally:
                if not waiter.done():
                    waiter.cancel()
            if waiter.done() and not waiter.cancelled():
                output.end_line()
                output.reset()
                await ask_confirmation(agent.gate, waiter.result(), session, agent.tools.base_dir)
        result = turn.result()
    finally:
        if not turn.done():
            turn.cancel()
            # Let the agent record its cancellation before returning.
            await asyncio.gather(turn, return_exceptions=True)
    output.end_line()
    return result


async def _wait_with_progress(agent, turn, waiter, output, verbose) -> None:
    pending = {turn, waiter}
    if not verbose:
        await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        return

    status = fmt.llm_spinner(fmt.progress_label(agent.stats.elapsed, agent.stats.tokens))
    spinning = True

    def stop():
        # Streamed text goes to stdout; the spinner must not redraw over it.
        nonlocal spinning
        if spinning:
            spinning = False
            status.stop()

    status.start()
    output.on_first_text = stop
    try:
        while True:
            done, _ = await asyncio.wait(
                pending, timeout=PROGRESS_INTERVAL, return_when=asyncio.FIRST_COMPLETED
            )
            if done:
                return
            if spinning:
                status.update(
                    fmt.progress_label(agent.stats.elapsed, agent.stats.tokens)
                )
    finally:
        output.on_first_text = None
        stop()


def _open_in_editor(path: Path) -> None:
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    logger.debug("opening %s with %s", path, editor)
    try:
        subprocess.run([*shlex.split(editor), str(path)], check=False)
    except OSError as e:
        fmt.warning(f"failed to start editor {editor!r}: {e}")


async def ask_confirmation(
    gate: ConfirmationGate,
    req: ConfirmationRequest,
    session,
    base_dir: str = ".",
) -> None:
    """Show a confirmation request and answer it from the terminal."""
    fmt.confirmation(req.operation, req.target, req.content)
    choices = "[y]es / [a]lways / [n]o"
    if req.show_editor_open:
        choices += " / [e]ditor"

    while True:
        try:
            answer = await session.prompt_async(f"Proceed? {choices} ")
        except (EOFError, KeyboardInterrupt):
            gate.reject("cancelled by user")
            return
        answer = answer.strip().lower()

        if answer in ("y", "yes"):
            gate.resolve(approved=True)
            return
        if answer in ("a", "always"):
            gate.resolve(approved=True, dont_ask_again=True)
            return
        if answer in ("n", "no"):
            try:
                feedback = await session.prompt_async("Feedback (optional): ")
            except (EOFError, KeyboardInterrupt):
                feedback = ""
            gate.reject(feedback.strip() or None)
            return
        if answer in ("e", "edit", "editor") and req.show_editor_open:
            await asyncio.to_thread(_open_in_editor, Path(base_dir) / req.target)
            continue
        fmt.warning(f"please answer {choices}")


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                  Show this help message\n"
        "  /clear                 Reset conversation to initial state\n"
        "  /models                List available models\n"
        "  /model <name>          Switch model for this project\n"
        "  /default-model <name>  Set the model used when a project has none\n"
        "  /exit, /quit           Exit the REPL"
    )


def _repl_models(agent: ConversationAgent) -> None:
    models = config.load_models()
    if agent.model not in models:
        models.append(agent.model)
    fmt.model_list([(m, config.describe_model(m)) for m in models], agent.model)


def _repl_model(agent: ConversationAgent, name: str, base_dir: str) -> None:
    name = name.strip()
    if not name:
        fmt.info(f"current model: {agent.model}")
        return
    if name not in config.load_models():
        fmt.warning(f"{name} is not in the configured model list, using it anyway")
    agent.set_model(name)
    if config.update_current_model(name, base_dir):
        fmt.info(f"switched to {name} (saved for this project)")
    else:
        fmt.info(f"switched to {name}")


def _repl_default_model(name: str) -> None:
    name = name.strip()
    if not name:
        fmt.warning("/default-model requires a model name")
        return
    if config.update_default_model(name):
        fmt.info(f"default model set to {name}")


def _repl_clear(agent: ConversationAgent) -> None:
    dropped = agent.clear()
    fmt.info(f"context cleared ({dropped} messages removed)")


@contextlib.contextmanager
def _sigint_cancels(task: asyncio.Task):
    """Make Ctrl-C cancel task instead of the whole event loop."""
    loop = asyncio.get_running_loop()
    previous = signal.getsignal(signal.SIGINT)
    try:
        loop.add_signal_handler(signal.SIGINT, task.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        # No loop signal handlers on this platform or thread.
        logger.debug("cannot route SIGINT to the running question")
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        signal.signal(signal.SIGINT, previous)


async def repl_loop(agent: ConversationAgent, session, args, output: _TextOutput) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit.formatted_text import FormattedText

    prompt_text = FormattedText([("bold fg:ansimagenta", "bigdream> ")])

    if args.verbose:
        fmt.repl_banner(agent.model)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(agent)
            continue
        elif cmd == "/models":
            _repl_models(agent)
            continue
        elif cmd == "/model":
            _repl_model(agent, cmd_arg, args.directory)
            continue
        elif cmd == "/default-model":
            _repl_default_model(cmd_arg)
            continue

        turn = asyncio.create_task(
            run_turn(agent, session, line, output, args.verbose)
        )
        try:
            with _sigint_cancels(turn):
                result = await turn
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
            output.end_line()
            fmt.warning("interrupted, question aborted.")
            continue
        except AgentError as e:
            fmt.error(str(e))
            continue

        if result.answer and not output.streamed:
            print(result.answer)
        if result.exhausted:
            fmt.warning("max turns reached for this question.")
