"""Core data models for the task orchestrator.

This module defines the shared data structures passed between the
tool protocol client and the conversation orchestrator, ensuring type
safety and validation throughout the system.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ConnectionState(str, Enum):
    """Lifecycle of a tool host connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class ToolDescriptor(BaseModel):
    """
    A callable tool advertised by the tool host.

    Produced at discovery time and immutable for the lifetime
    of a connection.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Unique tool name")
    description: Optional[str] = Field(default=None)
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        alias="inputSchema",
        description="JSON Schema describing accepted arguments"
    )

    def to_llm_tool(self) -> dict[str, Any]:
        """Return the tool in OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"Execute {self.name} operation",
                "parameters": self.input_schema or {
                    "type": "object",
                    "properties": {},
                }
            }
        }


class ResourceDescriptor(BaseModel):
    """An addressable, non-tool resource exposed by the tool host."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ToolCallRequest(BaseModel):
    """A single tool call emitted by the model in one assistant turn."""
    id: str = Field(..., description="Unique per-turn call identifier")
    tool_name: str
    raw_arguments: str = Field(default="{}", description="Serialized JSON arguments")

    def to_openai(self) -> dict[str, Any]:
        """Render the call the way the completion endpoint expects it back."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.tool_name,
                "arguments": self.raw_arguments,
            }
        }


MessageRole = Literal["system", "user", "assistant", "tool"]


class ConversationMessage(BaseModel):
    """A single message in a conversation."""
    role: MessageRole
    content: Optional[str] = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _check_role_fields(self) -> "ConversationMessage":
        if self.tool_calls and self.role != "assistant":
            raise ValueError("Only assistant messages may carry tool calls")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("Tool messages must reference a tool call id")
        return self


class LLMResponse(BaseModel):
    """Response from the LLM layer."""
    content: Optional[str] = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    finish_reason: str = "stop"
    usage: dict[str, int] = Field(default_factory=dict)


class Capabilities(BaseModel):
    """Everything the connected tool host exposes."""
    tools: list[ToolDescriptor] = Field(default_factory=list)
    resources: list[ResourceDescriptor] = Field(default_factory=list)


class TaskResult(BaseModel):
    """
    Normalised outcome of a task.

    The model is asked to finish with a JSON object of this shape;
    anything else is wrapped into one by the caller.
    """
    status: str
    summary: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")
