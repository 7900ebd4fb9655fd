from enum import Enum

from pydantic import BaseModel, Field, field_serializer

from agentloop.streaming import ThinkingData, ToolCall, ToolCallId


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class AssistantMessage(Message):
    """Assistant turn, optionally requesting tool calls.

    ``thinking`` is an opaque reasoning payload round-tripped to providers
    that require it; it is never serialised into the OpenAI wire shape.
    """

    role: MessageRole = MessageRole.ASSISTANT
    tool_calls: list[ToolCall] = Field(default_factory=list)
    thinking: ThinkingData | None = Field(default=None, exclude=True)

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[ToolCall]) -> list[dict]:
        return [
            {
                "id": t.id.external_id,
                "type": "function",
                "function": {
                    "arguments": t.arguments,
                    "name": t.name
                }
            }
            for t in tool_calls
        ]


class ToolMessage(Message):
    role: MessageRole = MessageRole.TOOL
    tool_call_id: ToolCallId

    @field_serializer("tool_call_id")
    def serialize_tool_call_id(self, tool_call_id: ToolCallId) -> str:
        return tool_call_id.external_id


def system(content: str) -> Message:
    return Message(role=MessageRole.SYSTEM, content=content)


def user(content: str) -> Message:
    return Message(role=MessageRole.USER, content=content)


def to_wire(messages: list[Message]) -> list[dict]:
    """Dump messages into OpenAI chat-completions dicts."""
    dumped = []
    for m in messages:
        d = m.model_dump()
        if isinstance(m, AssistantMessage) and not m.tool_calls:
            d.pop("tool_calls", None)
        dumped.append(d)
    return dumped
