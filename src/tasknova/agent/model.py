"""Chat model client for the assistant."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import litellm

from ..config import LLMConfig
from .tools import TOOL_DECLARATIONS, ToolCall

SYSTEM_INSTRUCTION = """ROLE: Productivity assistant and creative director for a solo business owner.
Respond only to what the user asks. No greetings, intros, outros or filler.
Keep advice in short bullet points (max 6) and use **bold** for key terms.
You can create, update and delete tasks, clients, projects and habits with the
provided tools, and save lasting facts about the user with updateMemory."""

IGNITE_PREFIX = (
    "[SUPER AGENT MODE: IGNITE ACTIVATED]\n\n"
    "INSTRUCTION: You are in a high-powered execution mode.\n"
    "1. Analyze the request deeply.\n"
    "2. If tasks are mentioned via @, prioritize them.\n"
    "3. Verify your plan before answering.\n"
    "4. You have full permission to CREATE, UPDATE, DELETE tasks/clients/projects if implied.\n\n"
)


@dataclass
class ModelRequest:
    text: str
    image: str | None = None
    context: str | None = None
    memory: str | None = None
    ignite: bool = False

    def prompt(self) -> str:
        message = self.text
        if self.context:
            message = f"[CURRENT APP STATE CONTEXT]:\n{self.context}\n\n[USER REQUEST]:\n{message}"
        if self.ignite:
            message = IGNITE_PREFIX + message
        return message


@dataclass
class ModelResponse:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class ChatModel(Protocol):
    async def send(self, request: ModelRequest) -> ModelResponse: ...

    async def send_tool_result(self, call: ToolCall, result: dict[str, Any]) -> None: ...

    async def complete_tool_round(self) -> ModelResponse: ...


def _image_part(image: str) -> dict[str, Any]:
    url = image if image.startswith("data:") else f"data:image/png;base64,{image}"
    return {"type": "image_url", "image_url": {"url": url}}


def system_prompt(memory: str | None) -> str:
    return (
        f"{SYSTEM_INSTRUCTION}\n\n[USER LONG-TERM MEMORY & CONTEXT]:\n"
        f"{memory or 'No prior memory established yet.'}\n\n"
        "Use Markdown formatting: ### headers, **bold** and - bullet points."
    )


class LiteLLMChatModel:
    """Multi-turn chat through litellm with function-calling tools."""

    def __init__(self, config: LLMConfig, *, memory: str | None = None) -> None:
        self.model = config.default_model
        self.timeout_seconds = config.timeout_seconds
        self.temperature = config.temperature
        self.messages: list[dict[str, Any]] = []
        self.reset(memory)

    def reset(self, memory: str | None = None) -> None:
        self.messages = [{"role": "system", "content": system_prompt(memory)}]

    async def send(self, request: ModelRequest) -> ModelResponse:
        if request.memory is not None and len(self.messages) == 1:
            self.reset(request.memory)
        if request.image:
            content: Any = [{"type": "text", "text": request.prompt()}, _image_part(request.image)]
        else:
            content = request.prompt()
        self.messages.append({"role": "user", "content": content})
        return await self._complete()

    async def send_tool_result(self, call: ToolCall, result: dict[str, Any]) -> None:
        self.messages.append(
            {
                "role": "tool",
                "tool_call_id": call.call_id,
                "name": call.name,
                "content": json.dumps({"result": result}, default=str),
            }
        )

    async def complete_tool_round(self) -> ModelResponse:
        return await self._complete()

    async def _complete(self) -> ModelResponse:
        response = await litellm.acompletion(
            model=self.model,
            messages=self.messages,
            tools=TOOL_DECLARATIONS,
            temperature=self.temperature,
            timeout=self.timeout_seconds,
            num_retries=1,
        )
        message = response.choices[0].message
        calls: list[ToolCall] = []
        raw_calls = getattr(message, "tool_calls", None) or []
        for raw in raw_calls:
            calls.append(ToolCall(name=raw.function.name, args=raw.function.arguments or "{}", call_id=raw.id))

        entry: dict[str, Any] = {"role": "assistant", "content": message.content or ""}
        if calls:
            entry["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": call.args if isinstance(call.args, str) else json.dumps(call.args),
                    },
                }
                for call in calls
            ]
        self.messages.append(entry)

        text = message.content or ("One moment, processing changes..." if calls else "No response generated.")
        return ModelResponse(text=text, tool_calls=calls)
