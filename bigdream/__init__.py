"""bigdream: an interactive command-line AI assistant with confirmed tool use."""

from .agent import AgentState, ConversationAgent, TurnResult
from .config import EffectiveSettings, SettingsOverride, resolve_settings
from .confirm import ConfirmationGate, get_gate
from .messages import (
    ConfirmationRequest,
    ConfirmationResult,
    Message,
    ToolCall,
    ToolDefinition,
)
from .report import AgentError
from .tools import ToolCatalog
from .transport import ChatTransport

__all__ = [
    "AgentError",
    "AgentState",
    "ChatTransport",
    "ConfirmationGate",
    "ConfirmationRequest",
    "ConfirmationResult",
    "ConversationAgent",
    "EffectiveSettings",
    "Message",
    "SettingsOverride",
    "ToolCall",
    "ToolCatalog",
    "ToolDefinition",
    "TurnResult",
    "get_gate",
    "resolve_settings",
]
