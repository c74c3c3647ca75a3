"""Error types and per-turn accounting."""

import time


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing API key, bad flag values, etc.)."""


class SettingsLoadError(ConfigError):
    """A persisted settings file could not be read or parsed.

    Only raised inside config.py; the resolver always recovers from it.
    """


class TransportError(AgentError):
    """The remote chat API call failed or timed out."""


class ToolArgumentError(AgentError):
    """Tool call arguments do not match the tool's schema."""


class ToolExecutionError(AgentError):
    """A dispatched tool failed."""


class RepeatedToolCallError(AgentError):
    """The model keeps issuing the same tool call with the same outcome."""


class TurnInProgressError(AgentError):
    """submit() was called while another turn is still running."""


class ConfirmationBusyError(AgentError):
    """A confirmation was requested while another one is still outstanding."""


class TurnStats:
    """Counters for the turn in flight, reset at every submit()."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.started = time.monotonic()
        self.finished: float | None = None
        self.tokens = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.tool_stats: dict[str, dict[str, int]] = {}

    @property
    def elapsed(self) -> float:
        end = self.finished if self.finished is not None else time.monotonic()
        return end - self.started

    def stop(self):
        self.finished = time.monotonic()

    def record_llm_call(self, duration: float):
        self.llm_calls += 1
        self.total_llm_time += duration

    def record_tokens(self, n: int = 1):
        self.tokens += n

    def record_tool_call(self, name: str, succeeded: bool, duration: float):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1

    def summary(self) -> dict:
        return {
            "elapsed_s": round(self.elapsed, 3),
            "tokens": self.tokens,
            "llm_calls": self.llm_calls,
            "total_llm_time_s": round(self.total_llm_time, 3),
            "total_tool_time_s": round(self.total_tool_time, 3),
            "tool_calls_by_name": dict(self.tool_stats),
        }
