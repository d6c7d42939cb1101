"""Task Agent - FastAPI Application.

Exposes one TaskAgent over HTTP. The agent is constructed and
initialized in the application lifespan, handed to request handlers
through dependency injection, and cleaned up on shutdown.
"""

import asyncio
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging
from shared.models import Capabilities, TaskResult
from mcp_client.client import MCPClientError, ToolInvocationError
from orchestrator.agent import TaskAgent, create_agent
from orchestrator.llm import CompletionEndpointError
from orchestrator.results import error_result, parse_task_result

logger = get_logger(__name__)


AgentFactory = Callable[[Settings], TaskAgent]


# Request/Response Models
class TaskRequest(BaseModel):
    """A natural-language task for the agent."""
    task: str = Field(..., min_length=1, description="Task description")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Recorded as result data when the answer is not JSON"
    )


class ToolInvocationRequest(BaseModel):
    """Direct tool invocation, bypassing the model."""
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolInvocationResponse(BaseModel):
    """Result of a direct tool invocation."""
    tool_name: str
    result: Any = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    tool_host: str
    tool_count: int


def get_agent(request: Request) -> TaskAgent:
    """Dependency returning the agent owned by the application."""
    agent: Optional[TaskAgent] = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Agent not initialized"
        )
    return agent


def get_task_lock(request: Request) -> asyncio.Lock:
    """Dependency returning the lock that serialises tasks on the shared client."""
    return request.app.state.task_lock


def create_app(
    settings: Optional[Settings] = None,
    agent_factory: AgentFactory = create_agent
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings; loaded from config when omitted
        agent_factory: Builds the agent owned by the application

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        setup_logging(settings.log_level, json_output=settings.environment == "production")
        logger.info("Starting task agent server")

        agent = agent_factory(settings)
        app.state.task_lock = asyncio.Lock()
        try:
            await agent.initialize()
            app.state.agent = agent
            logger.info("Task agent server started", tool_count=len(agent.tools))
            yield
        finally:
            logger.info("Shutting down task agent server")
            app.state.agent = None
            await agent.cleanup()

    app = FastAPI(
        title="Task Agent",
        description="LLM-driven tool orchestration over MCP",
        version="0.1.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(agent: TaskAgent = Depends(get_agent)):
        """Health check endpoint."""
        connected = agent.mcp_client.is_connected
        return HealthResponse(
            status="healthy" if connected else "degraded",
            tool_host=agent.mcp_client.state.value,
            tool_count=len(agent.tools)
        )

    @app.get("/capabilities", response_model=Capabilities, tags=["Tools"])
    async def list_capabilities(agent: TaskAgent = Depends(get_agent)):
        """List tools and resources exposed by the tool host."""
        try:
            return await agent.list_capabilities()
        except MCPClientError as e:
            logger.error("Failed to list capabilities", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Failed to retrieve capabilities from tool host"
            )

    @app.post("/tasks", response_model=TaskResult, tags=["Tasks"])
    async def run_task(
        request: TaskRequest,
        agent: TaskAgent = Depends(get_agent),
        lock: asyncio.Lock = Depends(get_task_lock)
    ):
        """
        Run a natural-language task.

        The agent's final answer is returned as a TaskResult; fatal
        failures come back as an error-shaped result with status 502.
        """
        try:
            async with lock:
                text = await agent.process_message(request.task)
        except (CompletionEndpointError, MCPClientError) as e:
            logger.error("Task failed", error=str(e), exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=error_result("Task failed", e, request.context).model_dump()
            )

        return parse_task_result(text, request.context)

    @app.post("/tools/{tool_name}", response_model=ToolInvocationResponse, tags=["Tools"])
    async def invoke_tool(
        tool_name: str,
        request: ToolInvocationRequest,
        agent: TaskAgent = Depends(get_agent),
        lock: asyncio.Lock = Depends(get_task_lock)
    ):
        """Call one tool directly, without the model."""
        try:
            async with lock:
                result = await agent.execute_browser_task(
                    f"Call {tool_name}",
                    tool_name=tool_name,
                    arguments=request.arguments
                )
        except ToolInvocationError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Tool {tool_name} failed: {e}"
            )
        except MCPClientError as e:
            logger.error("Direct tool call failed", tool=tool_name, error=str(e))
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=str(e)
            )

        return ToolInvocationResponse(tool_name=tool_name, result=result)

    return app


def main():
    """Run the task agent server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port
    )


if __name__ == "__main__":
    main()
