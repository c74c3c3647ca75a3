"""Chat-completion transport over LiteLLM.

Stateless apart from the resolved endpoint settings: every call sends the full
message list. Failures of any kind surface as TransportError; retrying is the
caller's business.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from .config import EffectiveSettings
from .messages import Message, ToolCall, ToolDefinition, check_unique_names
from .report import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 360  # seconds
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000


@dataclass
class ToolCallFragment:
    """A piece of a tool call as delivered by one stream chunk."""

    index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class Chunk:
    content: str | None = None
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class Completion:
    message: Message
    finish_reason: str
    completion_tokens: int | None = None


def _wire(message) -> dict:
    return message.to_dict() if isinstance(message, Message) else message


def _tool_call_from_response(tc) -> ToolCall:
    fn = tc.function
    return ToolCall(id=tc.id, name=fn.name or "", arguments=fn.arguments or "")


def _chunk_from_response(raw) -> Chunk:
    """Convert a LiteLLM streaming chunk to a Chunk."""
    if not getattr(raw, "choices", None):
        return Chunk()
    choice = raw.choices[0]
    delta = getattr(choice, "delta", None)
    fragments = []
    for tc in getattr(delta, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        fragments.append(
            ToolCallFragment(
                index=getattr(tc, "index", None),
                id=getattr(tc, "id", None),
                name=getattr(fn, "name", None) if fn else None,
                arguments=getattr(fn, "arguments", None) if fn else None,
            )
        )
    return Chunk(
        content=getattr(delta, "content", None),
        tool_calls=fragments,
        finish_reason=getattr(choice, "finish_reason", None),
    )


class _PartialCall:
    """Argument fragments of one streamed call.

    Tracks object nesting outside of JSON strings as fragments arrive, so
    the full text is parsed only when the top-level object may have closed.
    """

    __slots__ = (
        "id", "name", "arguments", "complete", "_depth", "_in_string", "_escaped"
    )

    def __init__(self, call_id: str | None):
        self.id = call_id
        self.name = ""
        self.arguments: list[str] = []
        self.complete = False
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def append(self, fragment: str) -> bool:
        """Add fragment. Returns True if it closed a top-level object."""
        self.arguments.append(fragment)
        closed = False
        for ch in fragment:
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch in "{[":
                self._depth += 1
            elif ch in "}]":
                self._depth -= 1
                if self._depth == 0:
                    closed = True
        return closed

    def text(self) -> str:
        return "".join(self.arguments)


def _parses(arguments: str) -> bool:
    if not arguments.strip():
        return False
    try:
        json.loads(arguments)
    except json.JSONDecodeError:
        return False
    return True


class StreamAssembler:
    """Reassemble streamed text and tool-call fragments.

    Partial calls live in an arena; fragments find their slot by call id,
    falling back to the stream index (most providers only send the id on the
    first fragment of a call).
    """

    def __init__(self):
        self._content: list[str] = []
        self._arena: list[_PartialCall] = []
        self._by_index: dict[int, int] = {}
        self._by_id: dict[str, int] = {}
        self.finish_reason: str | None = None

    def _slot(self, frag: ToolCallFragment) -> _PartialCall:
        pos = None
        if frag.id and frag.id in self._by_id:
            pos = self._by_id[frag.id]
        elif frag.index is not None and frag.index in self._by_index:
            pos = self._by_index[frag.index]
            known = self._arena[pos].id
            if frag.id and known and known != frag.id:
                pos = None  # same index reused for a new call
        if pos is None:
            pos = len(self._arena)
            self._arena.append(_PartialCall(frag.id))
        if frag.index is not None:
            self._by_index[frag.index] = pos
        partial = self._arena[pos]
        if frag.id:
            self._by_id.setdefault(frag.id, pos)
            if not partial.id:
                partial.id = frag.id
        return partial

    def feed(self, chunk: Chunk) -> list[str]:
        """Absorb one chunk. Returns ids of calls that became complete."""
        if chunk.content:
            self._content.append(chunk.content)
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        completed = []
        for frag in chunk.tool_calls:
            partial = self._slot(frag)
            if frag.name:
                partial.name += frag.name
            closed = bool(frag.arguments) and partial.append(frag.arguments)
            if (
                closed
                and not partial.complete
                and partial.name
                and _parses(partial.text())
            ):
                partial.complete = True
                completed.append(partial.id)
        return completed

    @property
    def content(self) -> str:
        return "".join(self._content)

    def is_complete(self, call_id: str) -> bool:
        pos = self._by_id.get(call_id)
        return pos is not None and self._arena[pos].complete

    def finish(self) -> Completion:
        calls = [
            ToolCall(id=p.id or f"call_{i}", name=p.name, arguments=p.text())
            for i, p in enumerate(self._arena)
        ]
        message = Message(
            "assistant", self.content or None, tool_calls=calls or None
        )
        reason = self.finish_reason or ("tool_calls" if calls else "stop")
        return Completion(message, reason)


class ChatTransport:
    """Issue single-turn or streaming chat completions with tools attached."""

    def __init__(
        self,
        settings: EffectiveSettings,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        temperature: float | None = DEFAULT_TEMPERATURE,
        max_tokens: int | None = DEFAULT_MAX_TOKENS,
    ):
        self.settings = settings
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _request_kwargs(
        self,
        messages: list,
        tools: list[ToolDefinition] | None,
        model: str | None,
    ) -> dict:
        if not messages:
            raise ValueError("messages must not be empty")
        if tools:
            check_unique_names(tools)

        model_id = model or self.settings.model
        kwargs = dict(
            model=f"openai/{model_id}",
            messages=[_wire(m) for m in messages],
            api_base=self.settings.base_url,
            api_key=self.settings.api_key,
            timeout=self.timeout,
        )
        if tools:
            kwargs["tools"] = [t.to_dict() for t in tools]
            kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    async def complete(
        self,
        messages: list,
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
    ) -> Completion:
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self._request_kwargs(messages, tools, model)
        logger.debug("completion request: model=%s messages=%d", kwargs["model"], len(messages))
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise TransportError(f"LLM call failed: {e}") from e

        try:
            choice = response.choices[0]
        except (AttributeError, IndexError) as e:
            raise TransportError(f"LLM returned no choices: {e}") from e
        msg = choice.message
        calls = [_tool_call_from_response(tc) for tc in (msg.tool_calls or [])]
        message = Message("assistant", msg.content, tool_calls=calls or None)
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "completion_tokens", None) if usage else None
        return Completion(message, choice.finish_reason or "stop", tokens)

    async def stream(
        self,
        messages: list,
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
    ) -> AsyncIterator[Chunk]:
        """Yield Chunks until the remote signals completion.

        Not restartable: issue a fresh call to retry.
        """
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self._request_kwargs(messages, tools, model)
        logger.debug("stream request: model=%s messages=%d", kwargs["model"], len(messages))
        try:
            response = await litellm.acompletion(stream=True, **kwargs)
        except Exception as e:
            raise TransportError(f"LLM call failed: {e}") from e

        try:
            async for raw in response:
                yield _chunk_from_response(raw)
        except Exception as e:
            raise TransportError(f"LLM stream failed: {e}") from e
