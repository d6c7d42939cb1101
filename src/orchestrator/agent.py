"""Task Agent - Core orchestration logic.

The agent turns one natural-language task into a final answer by
looping between the language model and the tool host:
- Ask the model, offering the host's tools
- Dispatch every tool call the model requested
- Feed the results back and ask again
- Stop on a plain answer or when the step budget runs out
"""

import uuid
from typing import Any, Optional

from shared.config import Settings
from shared.logging import get_logger, task_context
from shared.models import Capabilities, LLMResponse, ToolDescriptor
from mcp_client.client import MCPClient, MCPConnectionError, NotConnectedError
from orchestrator.conversation import ConversationState, StepBudget
from orchestrator.dispatch import ToolDispatcher
from orchestrator.llm import LLMProvider, create_llm_provider

logger = get_logger(__name__)


DEFAULT_MAX_STEPS = 20

EMPTY_RESPONSE_FALLBACK = "Task completed"

INCOMPLETE_TASK_SENTINEL = "Maximum conversation steps reached. The task may be incomplete."

DEFAULT_SYSTEM_PROMPT = """You are an AI assistant with access to browser automation tools via MCP.
You can navigate web pages, fill forms, click buttons, and extract information.

Available tools:
{tool_list}

When the user asks you to perform a task:
1. Break the task down into steps and use the appropriate tool for each step.
2. After navigating or performing any action that changes the page, ALWAYS inspect the page again (for example with a snapshot tool) before interacting with any element.
3. If content may appear asynchronously (autocomplete lists, loading results), wait first and then inspect the page again. Never act on elements you have not seen.
4. Be precise. If the user names a button label or color, verify it in the latest page state before clicking.

USER AUTHORIZATION:
The user has explicitly authorized every action the task implies, including final, irreversible ones such as placing an order, submitting a payment or confirming a booking.
Do not stop to ask for confirmation. If the task implies completing an action, you MUST perform the final step.

FINAL OUTPUT:
When the task is finished, reply without calling any tool. That reply MUST be a single raw JSON object, not wrapped in markdown code fences, for example:
{"status": "success", "summary": "Task completed successfully", "data": {"extracted_field": "value"}}
"""


def render_tool_list(tools: list[ToolDescriptor]) -> str:
    """One line per tool, for embedding in the system prompt."""
    if not tools:
        return "- (none)"
    return "\n".join(
        f"- {t.name}: {t.description}" if t.description else f"- {t.name}"
        for t in tools
    )


class TaskAgent:
    """
    Task Agent - Orchestrates LLM and MCP interactions.

    This is the central component that:
    1. Connects to the tool host through the MCP Client
    2. Offers the host's tools to the LLM
    3. Dispatches the tool calls the LLM requests
    4. Bounds every task with a step budget

    Conversation state is created per task and never shared.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        mcp_client: MCPClient,
        system_prompt: Optional[str] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        tool_choice: str = "auto"
    ) -> None:
        """
        Initialize Task Agent.

        Args:
            llm_provider: LLM provider for completions
            mcp_client: MCP client for tool execution
            system_prompt: Custom system prompt; ``{tool_list}`` is filled in
            max_steps: Maximum dispatch cycles per task
            tool_choice: Tool choice mode passed to the LLM
        """
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")

        self.llm = llm_provider
        self.mcp_client = mcp_client
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.max_steps = max_steps
        self.tool_choice = tool_choice

        self._tools: list[ToolDescriptor] = []
        self._dispatcher: Optional[ToolDispatcher] = None
        self._closed = False

    @property
    def tools(self) -> list[ToolDescriptor]:
        """Tools cached at initialization."""
        return list(self._tools)

    @property
    def is_initialized(self) -> bool:
        return self._dispatcher is not None

    async def __aenter__(self) -> "TaskAgent":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cleanup()

    async def initialize(self) -> None:
        """
        Connect to the tool host and cache its tool catalog.

        Raises:
            MCPConnectionError: If the tool host cannot be reached
        """
        logger.info("Initializing task agent")
        await self.mcp_client.connect()
        self._tools = await self.mcp_client.list_tools()
        self._dispatcher = ToolDispatcher(self.mcp_client, self.mcp_client.catalog)
        self._closed = False
        logger.info("Task agent initialized", tool_count=len(self._tools))

    def build_system_prompt(self) -> str:
        """Render the system prompt with the cached tool catalog."""
        return self.system_prompt.replace("{tool_list}", render_tool_list(self._tools))

    def _llm_tools(self) -> list[dict[str, Any]]:
        return [tool.to_llm_tool() for tool in self._tools]

    def _new_conversation(self, task: str) -> ConversationState:
        conversation = ConversationState()
        conversation.add_system_message(self.build_system_prompt())
        conversation.add_user_message(task)
        return conversation

    async def _ask(self, conversation: ConversationState, tools: list[dict[str, Any]]) -> LLMResponse:
        conversation.ensure_answered()
        return await self.llm.complete(
            messages=list(conversation.messages),
            tools=tools or None,
            tool_choice=self.tool_choice if tools else None
        )

    async def process_message(self, task: str) -> str:
        """
        Run one task to completion.

        Args:
            task: Natural-language task description

        Returns:
            The model's final text, a fallback if it was empty, or the
            incomplete-task sentinel once the step budget is used up

        Raises:
            NotConnectedError: If the agent was not initialized
            CompletionEndpointError: If the LLM call fails
            MCPConnectionError: If the tool host connection is lost
        """
        if self._dispatcher is None:
            raise NotConnectedError("Agent not initialized; call initialize() first")

        task_id = str(uuid.uuid4())
        with task_context(task_id=task_id):
            logger.info("Processing task", task_length=len(task))
            return await self._run(task, self._dispatcher)

    async def _run(self, task: str, dispatcher: ToolDispatcher) -> str:
        conversation = self._new_conversation(task)
        budget = StepBudget(self.max_steps)
        tools = self._llm_tools()

        while not budget.exhausted:
            response = await self._ask(conversation, tools)
            conversation.add_assistant_message(response)

            if not response.tool_calls:
                if not response.content:
                    logger.warning(
                        "Model returned neither text nor tool calls",
                        finish_reason=response.finish_reason,
                        step=budget.used
                    )
                    return EMPTY_RESPONSE_FALLBACK
                logger.info("Task finished", steps=budget.used)
                return response.content

            logger.debug(
                "LLM requested tool calls",
                count=len(response.tool_calls),
                step=budget.used + 1
            )

            for request, content in await dispatcher.dispatch_batch(response.tool_calls):
                conversation.add_tool_result(request.id, content)

            if not self.mcp_client.is_connected:
                raise MCPConnectionError("Tool host connection lost during task")

            budget.consume()

        logger.warning("Max conversation steps reached", steps=budget.used)
        return INCOMPLETE_TASK_SENTINEL

    async def execute_browser_task(
        self,
        description: str,
        tool_name: Optional[str] = None,
        arguments: Optional[dict[str, Any]] = None
    ) -> Any:
        """
        Execute a task, optionally bypassing the model.

        With a tool name and arguments the tool is called directly;
        otherwise the description is handed to ``process_message``.
        """
        if tool_name and arguments is not None:
            logger.info("Executing tool directly", tool=tool_name)
            return await self.mcp_client.call_tool(tool_name, arguments)
        return await self.process_message(description)

    async def list_capabilities(self) -> Capabilities:
        """List all tools and resources the tool host exposes."""
        tools = await self.mcp_client.list_tools()
        resources = await self.mcp_client.list_resources()
        return Capabilities(tools=tools, resources=resources)

    async def cleanup(self) -> None:
        """Disconnect from the tool host. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._dispatcher = None
        await self.mcp_client.disconnect()
        logger.info("Task agent cleaned up")


def create_agent(settings: Settings) -> TaskAgent:
    """Build a TaskAgent from application settings."""
    return TaskAgent(
        llm_provider=create_llm_provider(settings.llm),
        mcp_client=MCPClient(settings.tool_host),
        system_prompt=settings.agent.system_prompt,
        max_steps=settings.agent.max_steps,
        tool_choice=settings.agent.tool_choice
    )
