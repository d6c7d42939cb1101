"""Shared models, configuration and logging for the task orchestrator."""

from shared.models import (
    Capabilities,
    ConnectionState,
    ConversationMessage,
    LLMResponse,
    ResourceDescriptor,
    TaskResult,
    ToolCallRequest,
    ToolDescriptor,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "Capabilities",
    "ConnectionState",
    "ConversationMessage",
    "LLMResponse",
    "ResourceDescriptor",
    "TaskResult",
    "ToolCallRequest",
    "ToolDescriptor",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
