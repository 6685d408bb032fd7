"""Tool registration and execution for models without native tool support."""

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Union

from .models import ParsedToolCall, ToolDefinition

logger = logging.getLogger(__name__)

# handler(name, arguments) -> result; may be sync or async
ToolHandler = Callable[[str, Dict[str, Any]], Union[Any, Awaitable[Any]]]

TOOL_PROMPT_HEADER = (
    "Available tools (respond with JSON: "
    '{"name":"<tool>","arguments":{...}}):'
)


class ToolExecutor:
    """
    Registry of tool handlers.

    Failures are reported back to the model as JSON error payloads instead
    of failing the request:
    - unknown tool -> {"error": "Unknown tool: <name>"}
    - handler raised -> {"error": "<message>"}
    """

    def __init__(self):
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        """Register a handler for a tool name, replacing any previous one."""
        self._handlers[name] = handler
        logger.debug(f"Registered tool: {name}")

    def has(self, name: str) -> bool:
        return name in self._handlers

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers.keys())

    async def execute(self, call: ParsedToolCall) -> str:
        """Execute a tool call. Returns string result for the model."""
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning(f"Unknown tool requested: {call.name}")
            return json.dumps({"error": f"Unknown tool: {call.name}"})

        try:
            result = handler(call.name, call.arguments)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(f"Tool {call.name} failed: {e}")
            return json.dumps({"error": str(e) or e.__class__.__name__})

        return result if isinstance(result, str) else json.dumps(result)

    async def execute_all(self, calls: Sequence[ParsedToolCall]) -> Dict[str, str]:
        """Execute calls one after another, in order. Maps call id -> result."""
        results: Dict[str, str] = {}
        for call in calls:
            logger.info(f"Executing tool {call.name} ({call.id})")
            results[call.id] = await self.execute(call)
        return results

    @staticmethod
    def format_for_prompt(tools: Sequence[ToolDefinition]) -> str:
        """Build the tool catalog appended to the system prompt."""
        if not tools:
            return ""

        # Later definitions replace earlier ones with the same name
        catalog: Dict[str, ToolDefinition] = {}
        for tool in tools:
            catalog[tool.function.name] = tool

        lines = []
        for name, tool in catalog.items():
            desc = tool.function.description or "No description."
            params = json.dumps(tool.function.parameters) if tool.function.parameters else "{}"
            lines.append(f"- {name}: {desc} (parameters: {params})")

        return "\n\n" + TOOL_PROMPT_HEADER + "\n" + "\n".join(lines)


# =============================================================================
# Built-in demonstration tools
# =============================================================================

def get_weather(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    location = arguments.get("location") or "unknown"
    return {"location": location, "temp": 72, "unit": "fahrenheit"}


def get_joke(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {"joke": "Why did the developer quit? Because they didn't get arrays."}


def create_default_executor() -> ToolExecutor:
    """Executor with the built-in demonstration tools registered."""
    executor = ToolExecutor()
    executor.register("get_weather", get_weather)
    executor.register("get_joke", get_joke)
    return executor
