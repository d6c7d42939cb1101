"""Normalisation of the agent's final answer.

The model is instructed to finish with a raw JSON object, but that is
not enforced, so callers turn whatever text came back into a TaskResult.
"""

import json
import re
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import TaskResult

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_task_result(text: str, context: Optional[dict[str, Any]] = None) -> TaskResult:
    """
    Parse the agent's final text into a TaskResult.

    Args:
        text: Final text returned by the agent
        context: Values recorded as ``data`` when the text is not JSON

    Returns:
        The decoded result, or the text wrapped as a completed result
    """
    candidate = text.strip()
    fenced = _FENCED_JSON.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        payload = None

    if isinstance(payload, dict):
        payload["status"] = str(payload.get("status") or "completed")
        if payload.get("summary") is not None and not isinstance(payload["summary"], str):
            payload["summary"] = json.dumps(payload["summary"])
        data = payload.get("data")
        if data is None:
            payload["data"] = {}
        elif not isinstance(data, dict):
            payload["data"] = {"value": data}
        return TaskResult(**payload)

    logger.debug("Final answer is not a JSON object, wrapping it")
    return TaskResult(status="completed", summary=text, data=dict(context or {}))


def error_result(
    summary: str,
    error: BaseException | str,
    context: Optional[dict[str, Any]] = None
) -> TaskResult:
    """Build an error-shaped TaskResult for a task that failed outright."""
    return TaskResult(
        status="error",
        summary=summary,
        data={**(context or {}), "error": str(error)}
    )
