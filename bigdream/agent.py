"""The conversation loop: model calls, tool calls, confirmations, results."""

import enum
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Callable

import tiktoken

from . import fmt
from .confirm import ConfirmationGate, get_gate
from .config import PROJECT_DIR_NAME
from .messages import Message, ToolCall, parse_arguments
from .report import (
    RepeatedToolCallError,
    ToolArgumentError,
    TurnInProgressError,
    TurnStats,
)
from .transport import ChatTransport, Completion, StreamAssembler

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
INSTRUCTIONS_FILE = "BIGDREAM.md"
MAX_INSTRUCTIONS_CHARS = 10_000
MAX_ARG_LOG = 1000
DEFAULT_MAX_TURNS = 100

# Identical (tool, arguments, result) occurrences within one turn
REPEAT_NUDGE = 2
REPEAT_ABORT = 3
CANCELLED_RESULT = "cancelled: the turn was interrupted before this tool call ran."


class AgentState(enum.Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING_TOOLS = "executing_tools"


@dataclass
class TurnResult:
    answer: str | None
    exhausted: bool = False


@lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        d = m.to_dict() if isinstance(m, Message) else m
        content = d.get("content") or ""
        for tc in d.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps([t.to_dict() for t in tools])))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def load_instructions(base_dir: str, verbose: bool = False) -> str | None:
    """Load <base_dir>/.bigdream/BIGDREAM.md, if present."""
    path = Path(base_dir).resolve() / PROJECT_DIR_NAME / INSTRUCTIONS_FILE
    if not path.is_file():
        return None
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            content = f.read(MAX_INSTRUCTIONS_CHARS + 1)
    except OSError as e:
        fmt.warning(f"failed to load custom instructions: {e}")
        return None
    if len(content) > MAX_INSTRUCTIONS_CHARS:
        content = (
            content[:MAX_INSTRUCTIONS_CHARS]
            + f"\n[truncated: {INSTRUCTIONS_FILE} exceeds {MAX_INSTRUCTIONS_CHARS} characters]"
        )
    if verbose:
        fmt.info(f"Loaded {INSTRUCTIONS_FILE} from {path.parent}")
    return content.strip() or None


def build_system_prompt(
    base_dir: str = ".",
    system_prompt: str | None = None,
    no_instructions: bool = False,
    verbose: bool = False,
) -> str:
    """Default prompt + project instructions + working directory and date."""
    if system_prompt:
        content = system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
        if not no_instructions:
            instructions = load_instructions(base_dir, verbose)
            if instructions:
                content += (
                    "\n\n<custom-instructions>\n"
                    f"{instructions}\n"
                    "</custom-instructions>"
                )
    now = datetime.now().astimezone()
    content += f"\n\nCurrent working directory: {Path(base_dir).resolve()}"
    content += f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content


def _canonical_args(arguments: str) -> str:
    """Stable form of a call's arguments for repeat detection."""
    try:
        return json.dumps(json.loads(arguments or "{}"), sort_keys=True)
    except (json.JSONDecodeError, TypeError):
        return arguments


def rejection_message(name: str, feedback: str | None) -> str:
    text = f"rejected: the user declined to run {name}. Do not retry it unchanged."
    if feedback:
        text += f"\nUser feedback: {feedback}"
    return text


class ConversationAgent:
    """Owns the message history and drives one user turn at a time.

    ``tools`` is the tool-execution collaborator (see tools.ToolCatalog):
    it must provide definitions(), get(), confirmation_for() and an async
    execute(). ``on_text`` receives streamed assistant text as it arrives;
    ``on_tool_call`` fires once per call whose arguments are valid,
    before any confirmation or output about it.
    """

    def __init__(
        self,
        transport: ChatTransport,
        tools,
        *,
        gate: ConfirmationGate | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        stream: bool = True,
        max_turns: int = DEFAULT_MAX_TURNS,
        verbose: bool = False,
        on_text: Callable[[str], None] | None = None,
        on_tool_call: Callable[[str, dict], None] | None = None,
    ):
        self.transport = transport
        self.tools = tools
        self.gate = gate if gate is not None else get_gate()
        self.model = model or transport.settings.model
        self.stream = stream
        self.max_turns = max_turns
        self.verbose = verbose
        self.on_text = on_text
        self.on_tool_call = on_tool_call

        self.messages: list[Message] = []
        if system_prompt:
            self.messages.append(Message.system(system_prompt))
        self.state = AgentState.IDLE
        self.stats = TurnStats()
        # Tools the user said not to ask about again, for this session only
        self.auto_approved: set[str] = set()

    def set_model(self, model: str) -> None:
        """Use model for subsequent calls. Recorded history is untouched."""
        self.model = model

    def clear(self) -> int:
        """Drop the conversation, keeping leading system messages."""
        if self.state is not AgentState.IDLE:
            raise TurnInProgressError("cannot clear while a turn is running")
        leading = []
        for msg in self.messages:
            if msg.role != "system":
                break
            leading.append(msg)
        dropped = len(self.messages) - len(leading)
        self.messages[:] = leading
        return dropped

    async def submit(self, text: str) -> TurnResult:
        """Run one user turn to a final answer.

        Raises:
            TurnInProgressError: If a turn is already running.
            TransportError: If a model call fails. History stays consistent.
            RepeatedToolCallError: If the model loops on an identical call.
        """
        if self.state is not AgentState.IDLE:
            raise TurnInProgressError("a turn is already in progress")
        self.state = AgentState.AWAITING_MODEL
        self.stats.reset()
        self.messages.append(Message.user(text))
        try:
            return await self._run_turn()
        finally:
            self.stats.stop()
            self.state = AgentState.IDLE

    async def _run_turn(self) -> TurnResult:
        seen: dict[tuple[str, str, str], int] = {}
        calls = 0

        while calls < self.max_turns:
            calls += 1
            completion = await self._call_model(calls)
            msg = completion.message

            if not msg.tool_calls:
                msg.content = msg.content or ""
                self.messages.append(msg)
                if self.verbose:
                    fmt.completion(calls, self.stats.elapsed, self.stats.tokens, "ok")
                return TurnResult(msg.content)

            if msg.content is None:
                msg.content = ""
            self.messages.append(msg)
            if msg.content and self.verbose and not self.stream:
                fmt.assistant_text(msg.content)

            self.state = AgentState.TOOL_CALLS_PENDING
            nudges: list[str] = []
            looping: ToolCall | None = None
            answered = 0
            try:
                # Sequential, in model order: later calls may depend on earlier ones.
                for call in msg.tool_calls:
                    result = await self._handle_tool_call(call)
                    self.messages.append(Message.tool_result(call.id, result))
                    answered += 1
                    self.state = AgentState.TOOL_CALLS_PENDING

                    sig = (call.name, _canonical_args(call.arguments), result)
                    count = seen.get(sig, 0) + 1
                    seen[sig] = count
                    if count >= REPEAT_ABORT:
                        looping = call
                    elif count == REPEAT_NUDGE:
                        if self.verbose:
                            fmt.guardrail(call.name, count)
                        nudges.append(
                            f"IMPORTANT: you have called `{call.name}` with the same "
                            "arguments and got the same result before. Repeating it "
                            "will not give new information. Use the result you "
                            "already have or take a different approach."
                        )
            except BaseException:
                # Every tool call in the assistant message must get a result,
                # or the next request carries history the API refuses.
                for call in msg.tool_calls[answered:]:
                    self.messages.append(
                        Message.tool_result(call.id, CANCELLED_RESULT)
                    )
                raise

            if looping is not None:
                # Raised only after every call in the message has a result.
                raise RepeatedToolCallError(
                    f"aborted: `{looping.name}` was called {REPEAT_ABORT} times with "
                    f"identical arguments {looping.arguments!r} and identical results"
                )
            if nudges:
                self.messages.append(Message.user("\n\n".join(nudges)))

        if self.verbose:
            fmt.completion(calls, self.stats.elapsed, self.stats.tokens, "max_turns")
        last_text = None
        for m in reversed(self.messages):
            if m.role == "assistant" and m.content:
                last_text = m.content
                break
        return TurnResult(last_text, exhausted=True)

    async def _call_model(self, n: int) -> Completion:
        self.state = AgentState.AWAITING_MODEL
        definitions = self.tools.definitions()
        if self.verbose:
            fmt.turn_header(n, self.model, estimate_tokens(self.messages, definitions))

        t0 = time.monotonic()
        if self.stream:
            assembler = StreamAssembler()
            async for chunk in self.transport.stream(
                self.messages, definitions, self.model
            ):
                self.stats.record_tokens()
                for call_id in assembler.feed(chunk):
                    logger.debug("tool call %s complete", call_id)
                if chunk.content and self.on_text is not None:
                    self.on_text(chunk.content)
            completion = assembler.finish()
        else:
            completion = await self.transport.complete(
                self.messages, definitions, self.model
            )
            tokens = completion.completion_tokens
            if tokens is None:
                # Provider sent no usage block
                tokens = estimate_tokens([completion.message])
            self.stats.record_tokens(tokens)
        elapsed = time.monotonic() - t0

        self.stats.record_llm_call(elapsed)
        if self.verbose:
            fmt.llm_timing(elapsed, completion.finish_reason)
        return completion

    async def _handle_tool_call(self, call: ToolCall) -> str:
        """Validate, confirm and execute one call. Returns the tool message text."""
        definition = self.tools.get(call.name)
        try:
            args = parse_arguments(call, definition)
        except ToolArgumentError as e:
            if self.verbose:
                fmt.tool_error(call.name, str(e))
            self.stats.record_tool_call(call.name, False, 0.0)
            return f"error: {e}"

        if self.on_tool_call is not None:
            self.on_tool_call(call.name, args)
        if self.verbose:
            pretty = json.dumps(args, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(call.name, pretty)

        if definition.side_effecting and call.name not in self.auto_approved:
            self.state = AgentState.AWAITING_CONFIRMATION
            decision = await self.gate.request(self.tools.confirmation_for(call, args))
            if not decision.approved:
                if self.verbose:
                    fmt.tool_rejected(call.name, decision.feedback)
                return rejection_message(call.name, decision.feedback)
            if decision.dont_ask_again:
                self.auto_approved.add(call.name)

        self.state = AgentState.EXECUTING_TOOLS
        t0 = time.monotonic()
        try:
            result = await self.tools.execute(call.name, args)
            succeeded = True
        except Exception as e:
            # Tool failures are reported back to the model, not raised.
            result = f"error: {e}"
            succeeded = False
        elapsed = time.monotonic() - t0
        self.stats.record_tool_call(call.name, succeeded, elapsed)

        if self.verbose:
            if succeeded:
                fmt.tool_result(call.name, elapsed, result[:500])
            else:
                fmt.tool_error(call.name, result)
        return result
