"""Assistant chat turns and tool dispatch."""

from .dispatcher import ToolCallDispatcher
from .model import ChatModel, LiteLLMChatModel, ModelRequest, ModelResponse
from .tools import TOOL_DECLARATIONS, ToolAction, ToolCall, ToolIntent, parse_tool_call
from .turn import ChatTurn, ChatTurnRunner, TurnState

__all__ = [
    "ChatModel",
    "ChatTurn",
    "ChatTurnRunner",
    "LiteLLMChatModel",
    "ModelRequest",
    "ModelResponse",
    "TOOL_DECLARATIONS",
    "ToolAction",
    "ToolCall",
    "ToolIntent",
    "ToolCallDispatcher",
    "TurnState",
    "parse_tool_call",
]
