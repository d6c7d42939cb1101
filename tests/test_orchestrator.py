"""Tests for orchestrator components."""

import json
from types import SimpleNamespace

import pytest

from fakes import FakeSession, make_client, text_result
from shared.models import LLMResponse, ToolCallRequest, ToolDescriptor


def tool_call(call_id: str, name: str, arguments: str = "{}") -> ToolCallRequest:
    return ToolCallRequest(id=call_id, tool_name=name, raw_arguments=arguments)


def tool_response(*calls: ToolCallRequest, content: str | None = None) -> LLMResponse:
    return LLMResponse(content=content, tool_calls=list(calls), finish_reason="tool_calls")


def tool_messages(messages) -> list:
    return [m for m in messages if m.role == "tool"]


class TestConversationState:
    """Tests for ConversationState."""

    def test_append_order(self):
        """Test that messages are kept in append order."""
        from orchestrator.conversation import ConversationState

        conversation = ConversationState()
        conversation.add_system_message("System")
        conversation.add_user_message("Hello")
        conversation.add_assistant_message(LLMResponse(content="Hi"))

        assert [m.role for m in conversation.messages] == ["system", "user", "assistant"]
        assert conversation.last.content == "Hi"

    def test_messages_view_is_immutable(self):
        """Test that callers cannot rewrite history through the view."""
        from orchestrator.conversation import ConversationState

        conversation = ConversationState()
        conversation.add_user_message("Hello")

        assert isinstance(conversation.messages, tuple)

    def test_dangling_tool_calls_block_next_turn(self):
        """Test that unanswered tool calls prevent submitting again."""
        from orchestrator.conversation import ConversationState, ConversationStateError

        conversation = ConversationState()
        conversation.add_user_message("Do it")
        conversation.add_assistant_message(tool_response(
            tool_call("call_1", "echo"), tool_call("call_2", "echo")
        ))

        with pytest.raises(ConversationStateError):
            conversation.ensure_answered()

        conversation.add_tool_result("call_1", "one")
        assert [c.id for c in conversation.unanswered_tool_calls()] == ["call_2"]

        conversation.add_tool_result("call_2", "two")
        conversation.ensure_answered()

    def test_tool_result_must_reference_outstanding_call(self):
        """Test that unknown or repeated tool call ids are rejected."""
        from orchestrator.conversation import ConversationState, ConversationStateError

        conversation = ConversationState()
        conversation.add_assistant_message(tool_response(tool_call("call_1", "echo")))
        conversation.add_tool_result("call_1", "done")

        with pytest.raises(ConversationStateError):
            conversation.add_tool_result("call_1", "again")
        with pytest.raises(ConversationStateError):
            conversation.add_tool_result("call_9", "unknown")

    def test_tool_message_requires_call_id(self):
        """Test that the message model enforces role-specific fields."""
        from pydantic import ValidationError
        from shared.models import ConversationMessage

        with pytest.raises(ValidationError):
            ConversationMessage(role="tool", content="orphan")
        with pytest.raises(ValidationError):
            ConversationMessage(role="user", content="x", tool_calls=[tool_call("c", "echo")])


class TestStepBudget:
    """Tests for StepBudget."""

    def test_counts_down_to_zero(self):
        """Test that the budget strictly decreases and stops at zero."""
        from orchestrator.conversation import ConversationStateError, StepBudget

        budget = StepBudget(2)

        assert budget.consume() == 1
        assert budget.consume() == 0
        assert budget.exhausted
        assert budget.used == 2

        with pytest.raises(ConversationStateError):
            budget.consume()

    def test_rejects_empty_budget(self):
        """Test that a budget must allow at least one step."""
        from orchestrator.conversation import StepBudget

        with pytest.raises(ValueError):
            StepBudget(0)


class TestLLMProvider:
    """Tests for LLM providers."""

    @pytest.mark.asyncio
    async def test_mock_provider(self):
        """Test mock LLM provider default response."""
        from orchestrator.llm import MockLLMProvider
        from shared.models import ConversationMessage

        provider = MockLLMProvider()
        response = await provider.complete([ConversationMessage(role="user", content="Hello")])

        assert response.content is not None
        assert response.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_mock_provider_queue(self):
        """Test that queued responses are returned in order."""
        from orchestrator.llm import MockLLMProvider

        provider = MockLLMProvider()
        provider.queue_responses(
            tool_response(tool_call("call_1", "echo")),
            LLMResponse(content="done"),
        )

        first = await provider.complete([])
        second = await provider.complete([])

        assert first.tool_calls[0].tool_name == "echo"
        assert second.content == "done"
        assert len(provider.call_history) == 2

    def test_create_llm_provider_factory(self):
        """Test LLM provider factory."""
        from orchestrator.llm import MockLLMProvider, create_llm_provider
        from shared.config import LLMSettings

        provider = create_llm_provider(LLMSettings(provider="mock"))

        assert isinstance(provider, MockLLMProvider)

    def test_invalid_provider_raises(self):
        """Test that invalid provider raises error."""
        from orchestrator.llm import create_llm_provider
        from shared.config import LLMSettings

        with pytest.raises(ValueError, match="Unsupported"):
            create_llm_provider(LLMSettings(provider="invalid_provider"))

    @pytest.mark.asyncio
    async def test_llama_index_provider_extracts_tool_calls(self):
        """Test that tool calls are read from the LlamaIndex response."""
        from orchestrator.llm import LlamaIndexProvider
        from shared.config import LLMSettings
        from shared.models import ConversationMessage

        captured = {}

        class FakeLLM:
            async def achat(self, messages, **kwargs):
                captured["messages"] = messages
                captured["kwargs"] = kwargs
                return SimpleNamespace(
                    message=SimpleNamespace(
                        content=None,
                        additional_kwargs={"tool_calls": [{
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "echo", "arguments": '{"text": "x"}'},
                        }]},
                    ),
                    additional_kwargs={"prompt_tokens": 12},
                )

        class FakeProvider(LlamaIndexProvider):
            def _build_llm(self):
                return FakeLLM()

        provider = FakeProvider(LLMSettings(provider="mock"))
        tools = [ToolDescriptor(name="echo").to_llm_tool()]
        history = [
            ConversationMessage(role="user", content="echo x"),
            ConversationMessage(role="assistant", tool_calls=[tool_call("call_0", "echo")]),
            ConversationMessage(role="tool", content="echo: y", tool_call_id="call_0"),
        ]

        response = await provider.complete(history, tools=tools, tool_choice="auto")

        assert response.tool_calls == [tool_call("call_1", "echo", '{"text": "x"}')]
        assert response.finish_reason == "tool_calls"
        assert response.usage == {"prompt_tokens": 12}
        assert captured["kwargs"] == {"tools": tools, "tool_choice": "auto"}
        assert captured["messages"][1].additional_kwargs["tool_calls"][0]["id"] == "call_0"
        assert captured["messages"][2].additional_kwargs == {"tool_call_id": "call_0"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        {"choices": [{"finish_reason": "length"}]},
        SimpleNamespace(choices=[SimpleNamespace(finish_reason="length")]),
    ])
    async def test_llama_index_provider_reports_finish_reason(self, raw):
        """Test that the endpoint's own finish reason is kept, e.g. truncation."""
        from orchestrator.llm import LlamaIndexProvider
        from shared.config import LLMSettings

        class TruncatingLLM:
            async def achat(self, messages, **kwargs):
                return SimpleNamespace(
                    message=SimpleNamespace(content="", additional_kwargs={}),
                    additional_kwargs={},
                    raw=raw,
                )

        class FakeProvider(LlamaIndexProvider):
            def _build_llm(self):
                return TruncatingLLM()

        response = await FakeProvider(LLMSettings(provider="mock")).complete([])

        assert response.finish_reason == "length"
        assert response.tool_calls == []

    @pytest.mark.asyncio
    async def test_llama_index_provider_wraps_failures(self):
        """Test that endpoint failures surface as CompletionEndpointError."""
        from orchestrator.llm import CompletionEndpointError, LlamaIndexProvider
        from shared.config import LLMSettings

        class FailingLLM:
            async def achat(self, messages, **kwargs):
                raise TimeoutError("upstream timeout")

        class FakeProvider(LlamaIndexProvider):
            def _build_llm(self):
                return FailingLLM()

        provider = FakeProvider(LLMSettings(provider="mock"))

        with pytest.raises(CompletionEndpointError, match="upstream timeout"):
            await provider.complete([])


class TestToolDispatcher:
    """Tests for ToolDispatcher."""

    async def _dispatcher(self, session: FakeSession | None = None):
        from orchestrator.dispatch import ToolDispatcher

        client, _ = make_client(session or FakeSession())
        await client.connect()
        return ToolDispatcher(client, client.catalog), client

    def test_parse_arguments(self):
        """Test argument decoding rules."""
        from orchestrator.dispatch import ArgumentParseError, parse_arguments

        assert parse_arguments(tool_call("c", "echo", '{"text": "x"}')) == {"text": "x"}
        assert parse_arguments(tool_call("c", "echo", "")) == {}

        with pytest.raises(ArgumentParseError):
            parse_arguments(tool_call("c", "echo", '{"text": '))
        with pytest.raises(ArgumentParseError, match="JSON object"):
            parse_arguments(tool_call("c", "echo", '["x"]'))

    @pytest.mark.asyncio
    async def test_success_is_compact_json(self):
        """Test that structured results are serialized compactly."""
        dispatcher, _ = await self._dispatcher()

        content = await dispatcher.dispatch(tool_call("c1", "echo", '{"text":"x"}'))

        assert content == '{"text":"echo: x"}'

    @pytest.mark.asyncio
    async def test_text_result_passes_through(self):
        """Test that plain text results are recorded unchanged."""
        session = FakeSession(handlers={
            "browser_snapshot": lambda args: text_result("- heading \"Checkout\"")
        })
        dispatcher, _ = await self._dispatcher(session)

        content = await dispatcher.dispatch(tool_call("c1", "browser_snapshot"))

        assert content == "- heading \"Checkout\""

    @pytest.mark.asyncio
    async def test_malformed_arguments_become_error_text(self):
        """Test that malformed JSON is reported back, not raised."""
        session = FakeSession()
        dispatcher, _ = await self._dispatcher(session)

        content = await dispatcher.dispatch(tool_call("c1", "echo", "{not json"))

        assert content.startswith("Error executing echo:")
        assert "JSON object" in content
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_schema_violation_is_not_sent(self):
        """Test that arguments are validated before calling out."""
        session = FakeSession()
        dispatcher, _ = await self._dispatcher(session)

        content = await dispatcher.dispatch(tool_call("c1", "echo", '{"text": 5}'))

        assert "Validation failed" in content
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool_is_forwarded(self):
        """Test that tools outside the catalog still reach the host."""
        session = FakeSession(handlers={"browser_hover": lambda args: text_result("hovered")})
        dispatcher, _ = await self._dispatcher(session)

        assert "browser_hover" not in dispatcher
        content = await dispatcher.dispatch(tool_call("c1", "browser_hover", '{"ref": "s1"}'))

        assert content == "hovered"
        assert session.calls == [("browser_hover", {"ref": "s1"})]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated(self):
        """Test that any exception from a call becomes error text."""
        def explode(args):
            raise RuntimeError("renderer crashed")

        dispatcher, _ = await self._dispatcher(FakeSession(handlers={"browser_snapshot": explode}))

        content = await dispatcher.dispatch(tool_call("c1", "browser_snapshot"))

        assert content == "Error executing browser_snapshot: renderer crashed"


class TestTaskAgent:
    """Tests for TaskAgent."""

    async def _agent(self, llm, session: FakeSession | None = None, **kwargs):
        from orchestrator.agent import TaskAgent

        session = session or FakeSession()
        client, host = make_client(session)
        agent = TaskAgent(llm_provider=llm, mcp_client=client, **kwargs)
        await agent.initialize()
        return agent, session, host

    @pytest.mark.asyncio
    async def test_say_hello_needs_no_tools(self):
        """Test a task answered directly returns the text and calls no tools."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.set_next_response(LLMResponse(content="hi"))
        agent, session, _ = await self._agent(llm)

        result = await agent.process_message("say hello")

        assert result == "hi"
        assert session.calls == []
        assert len(llm.call_history) == 1

    @pytest.mark.asyncio
    async def test_initial_context(self):
        """Test the system prompt, user message and tool schema sent first."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.set_next_response(LLMResponse(content="{}"))
        agent, _, _ = await self._agent(llm)

        await agent.process_message("Find the cheapest flight")

        call = llm.call_history[0]
        system, user = call["messages"]
        assert system.role == "system"
        assert "- echo: Repeats back whatever text you send" in system.content
        assert "browser_snapshot" in system.content
        assert "raw JSON object" in system.content
        assert user.role == "user"
        assert user.content == "Find the cheapest flight"
        assert [t["function"]["name"] for t in call["tools"]] == ["echo", "browser_snapshot"]
        assert call["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_echo_tool_round(self):
        """Test one echo call and the tool message it produces."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses(
            tool_response(tool_call("call_1", "echo", '{"text":"x"}')),
            LLMResponse(content='{"status": "success"}'),
        )
        agent, session, _ = await self._agent(llm)

        result = await agent.process_message("echo x")

        assert result == '{"status": "success"}'
        assert session.calls == [("echo", {"text": "x"})]

        second_turn = llm.call_history[1]["messages"]
        assert second_turn[2].role == "assistant"
        assert second_turn[2].tool_calls[0].id == "call_1"
        assert second_turn[3].role == "tool"
        assert second_turn[3].tool_call_id == "call_1"
        assert second_turn[3].content == '{"text":"echo: x"}'

    @pytest.mark.asyncio
    async def test_batch_order_and_failure_isolation(self):
        """Test that N calls yield N ordered tool messages despite failures."""
        from orchestrator.llm import MockLLMProvider

        session = FakeSession(handlers={
            "browser_click": lambda args: text_result("Element not found", is_error=True),
            "browser_snapshot": lambda args: text_result("- button \"Pay\""),
        })
        llm = MockLLMProvider()
        llm.queue_responses(
            tool_response(
                tool_call("call_a", "echo", '{"text":"a"}'),
                tool_call("call_b", "browser_click", '{"ref": "s1e2"}'),
                tool_call("call_c", "echo", "{broken"),
                tool_call("call_d", "browser_snapshot"),
            ),
            LLMResponse(content="done"),
        )
        agent, session, _ = await self._agent(llm, session)

        result = await agent.process_message("pay")

        assert result == "done"
        assert [name for name, _ in session.calls] == ["echo", "browser_click", "browser_snapshot"]

        tools = tool_messages(llm.call_history[1]["messages"])
        assert [m.tool_call_id for m in tools] == ["call_a", "call_b", "call_c", "call_d"]
        assert tools[0].content == '{"text":"echo: a"}'
        assert tools[1].content == "Error executing browser_click: Element not found"
        assert tools[2].content.startswith("Error executing echo:")
        assert tools[3].content == "- button \"Pay\""

    @pytest.mark.asyncio
    async def test_step_budget_exhaustion(self):
        """Test that 20 dispatch cycles end with the sentinel, not an error."""
        from orchestrator.agent import INCOMPLETE_TASK_SENTINEL
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses(*[
            tool_response(tool_call(f"call_{i}", "echo", '{"text":"again"}'))
            for i in range(25)
        ])
        agent, session, _ = await self._agent(llm)

        result = await agent.process_message("loop forever")

        assert result == INCOMPLETE_TASK_SENTINEL
        assert len(llm.call_history) == 20
        assert len(session.calls) == 20

    @pytest.mark.asyncio
    async def test_configurable_step_budget(self):
        """Test that the step budget is a parameter."""
        from orchestrator.agent import INCOMPLETE_TASK_SENTINEL
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses(*[
            tool_response(tool_call(f"call_{i}", "browser_snapshot")) for i in range(5)
        ])
        agent, session, _ = await self._agent(llm, max_steps=3)

        assert await agent.process_message("loop") == INCOMPLETE_TASK_SENTINEL
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_empty_final_content_uses_fallback(self):
        """Test that an empty final answer is replaced by the fallback."""
        from orchestrator.agent import EMPTY_RESPONSE_FALLBACK
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.set_next_response(LLMResponse(content="", finish_reason="length"))
        agent, _, _ = await self._agent(llm)

        assert await agent.process_message("anything") == EMPTY_RESPONSE_FALLBACK

    @pytest.mark.asyncio
    async def test_completion_failure_propagates(self):
        """Test that LLM failures end the task with an exception."""
        from unittest.mock import AsyncMock
        from orchestrator.llm import CompletionEndpointError, MockLLMProvider

        llm = MockLLMProvider()
        llm.complete = AsyncMock(side_effect=CompletionEndpointError("rate limited"))
        agent, _, _ = await self._agent(llm)

        with pytest.raises(CompletionEndpointError):
            await agent.process_message("anything")

    @pytest.mark.asyncio
    async def test_lost_connection_is_fatal_after_batch(self):
        """Test that a dead tool host ends the task once the batch is answered."""
        import anyio
        from mcp_client.client import MCPConnectionError
        from orchestrator.llm import MockLLMProvider

        def dead(args):
            raise anyio.BrokenResourceError()

        session = FakeSession(handlers={"browser_snapshot": dead})
        llm = MockLLMProvider()
        llm.queue_responses(
            tool_response(
                tool_call("call_1", "browser_snapshot"),
                tool_call("call_2", "echo", '{"text":"x"}'),
            ),
            LLMResponse(content="never reached"),
        )
        agent, session, _ = await self._agent(llm, session)

        with pytest.raises(MCPConnectionError):
            await agent.process_message("snapshot")

        assert len(llm.call_history) == 1

    @pytest.mark.asyncio
    async def test_host_exit_mid_call_is_fatal(self):
        """Test that a host exiting during the in-flight call ends the task."""
        from mcp.shared.exceptions import McpError
        from mcp.types import CONNECTION_CLOSED, ErrorData
        from mcp_client.client import MCPConnectionError
        from orchestrator.llm import MockLLMProvider

        def exits(args):
            raise McpError(ErrorData(code=CONNECTION_CLOSED, message="Connection closed"))

        llm = MockLLMProvider()
        llm.queue_responses(
            tool_response(tool_call("call_1", "browser_snapshot")),
            LLMResponse(content="never reached"),
        )
        agent, _, _ = await self._agent(llm, FakeSession(handlers={"browser_snapshot": exits}))

        with pytest.raises(MCPConnectionError):
            await agent.process_message("snapshot")

        assert len(llm.call_history) == 1
        assert not agent.mcp_client.is_connected

    @pytest.mark.asyncio
    async def test_requires_initialize(self):
        """Test that tasks cannot run before initialize()."""
        from mcp_client.client import NotConnectedError
        from orchestrator.agent import TaskAgent
        from orchestrator.llm import MockLLMProvider

        client, _ = make_client()
        agent = TaskAgent(llm_provider=MockLLMProvider(), mcp_client=client)

        with pytest.raises(NotConnectedError):
            await agent.process_message("anything")

    @pytest.mark.asyncio
    async def test_execute_browser_task_direct(self):
        """Test that a named tool with arguments bypasses the model."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        agent, session, _ = await self._agent(llm)

        result = await agent.execute_browser_task("echo", tool_name="echo", arguments={"text": "x"})

        assert result == {"text": "echo: x"}
        assert llm.call_history == []

    @pytest.mark.asyncio
    async def test_execute_browser_task_delegates(self):
        """Test that without a tool name the model drives the task."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.set_next_response(LLMResponse(content="navigated"))
        agent, session, _ = await self._agent(llm)

        assert await agent.execute_browser_task("Open example.com") == "navigated"
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_list_capabilities(self):
        """Test that tools and resources are aggregated."""
        from mcp.types import Resource
        from orchestrator.llm import MockLLMProvider

        session = FakeSession(resources=[Resource(uri="file:///page.html", name="page")])
        agent, _, _ = await self._agent(MockLLMProvider(), session)

        capabilities = await agent.list_capabilities()

        assert [t.name for t in capabilities.tools] == ["echo", "browser_snapshot"]
        assert [r.name for r in capabilities.resources] == ["page"]

    @pytest.mark.asyncio
    async def test_cleanup_disconnects_once(self):
        """Test that cleanup tears the connection down and is idempotent."""
        from orchestrator.llm import MockLLMProvider

        agent, _, host = await self._agent(MockLLMProvider())

        await agent.cleanup()
        await agent.cleanup()

        assert host.closed == 1
        assert not agent.mcp_client.is_connected

    @pytest.mark.asyncio
    async def test_context_manager_scope(self):
        """Test that the agent's lifecycle can be tied to a block."""
        from orchestrator.agent import TaskAgent
        from orchestrator.llm import MockLLMProvider

        client, host = make_client()

        async with TaskAgent(llm_provider=MockLLMProvider(), mcp_client=client) as agent:
            assert agent.is_initialized
            assert len(agent.tools) == 2

        assert host.opened == 1
        assert host.closed == 1


class TestTaskResults:
    """Tests for final answer normalisation."""

    def test_json_answer(self):
        """Test that a raw JSON object is decoded."""
        from orchestrator.results import parse_task_result

        result = parse_task_result(json.dumps({
            "status": "success",
            "summary": "Order placed",
            "data": {"orderId": "702-1"},
        }))

        assert result.status == "success"
        assert result.data == {"orderId": "702-1"}

    def test_fenced_json_answer(self):
        """Test that a fenced JSON block is tolerated."""
        from orchestrator.results import parse_task_result

        result = parse_task_result('```json\n{"status": "success", "data": {"price": "$10"}}\n```')

        assert result.status == "success"
        assert result.data["price"] == "$10"

    def test_text_answer_is_wrapped(self):
        """Test that non-JSON text becomes a completed result."""
        from orchestrator.results import parse_task_result

        result = parse_task_result("Task completed", {"productUrl": "https://example.com/p/1"})

        assert result.status == "completed"
        assert result.summary == "Task completed"
        assert result.data == {"productUrl": "https://example.com/p/1"}

    def test_error_result(self):
        """Test error-shaped results."""
        from orchestrator.results import error_result

        result = error_result("Task failed", RuntimeError("boom"), {"destination": "Airport"})

        assert result.status == "error"
        assert result.data == {"destination": "Airport", "error": "boom"}
