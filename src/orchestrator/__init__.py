"""Orchestrator - Task agent.

Drives the bounded conversation loop between the LLM and the
tool host, dispatching tool calls through the MCP Client.
"""

from orchestrator.llm import CompletionEndpointError, LLMProvider, create_llm_provider
from orchestrator.conversation import ConversationState, ConversationStateError, StepBudget
from orchestrator.dispatch import ArgumentParseError, ToolDispatcher
from orchestrator.agent import TaskAgent, create_agent

__all__ = [
    "CompletionEndpointError",
    "LLMProvider",
    "create_llm_provider",
    "ConversationState",
    "ConversationStateError",
    "StepBudget",
    "ArgumentParseError",
    "ToolDispatcher",
    "TaskAgent",
    "create_agent",
]
