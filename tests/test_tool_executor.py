"""Tests for the tool registry and executor."""

import asyncio
import json

from gateway.models import ParsedToolCall, ToolDefinition
from gateway.tool_executor import (
    TOOL_PROMPT_HEADER,
    ToolExecutor,
    create_default_executor,
)


def _call(name, arguments=None, call_id=None):
    return ParsedToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments or {})


async def test_unknown_tool_returns_error_payload():
    executor = ToolExecutor()

    result = await executor.execute(_call("launch_rocket"))

    assert json.loads(result) == {"error": "Unknown tool: launch_rocket"}


async def test_raising_handler_returns_error_payload():
    def broken(name, arguments):
        raise ValueError("bad location")

    executor = ToolExecutor()
    executor.register("broken", broken)

    result = await executor.execute(_call("broken"))

    assert json.loads(result) == {"error": "bad location"}


async def test_async_handler_is_awaited():
    async def lookup(name, arguments):
        await asyncio.sleep(0)
        return {"echo": arguments["q"]}

    executor = ToolExecutor()
    executor.register("lookup", lookup)

    result = await executor.execute(_call("lookup", {"q": "hi"}))

    assert json.loads(result) == {"echo": "hi"}


async def test_string_results_pass_through():
    executor = ToolExecutor()
    executor.register("plain", lambda name, arguments: "already text")

    assert await executor.execute(_call("plain")) == "already text"


async def test_execute_all_preserves_order_with_inverse_delays():
    finished = []

    def make_handler(delay):
        async def handler(name, arguments):
            await asyncio.sleep(delay)
            finished.append(name)
            return {"tool": name}
        return handler

    executor = ToolExecutor()
    executor.register("slow", make_handler(0.03))
    executor.register("medium", make_handler(0.02))
    executor.register("fast", make_handler(0.0))

    calls = [_call("slow"), _call("medium"), _call("fast")]
    results = await executor.execute_all(calls)

    assert list(results.keys()) == ["call_slow", "call_medium", "call_fast"]
    assert [json.loads(r)["tool"] for r in results.values()] == ["slow", "medium", "fast"]
    assert finished == ["slow", "medium", "fast"]


def test_format_for_prompt_empty():
    assert ToolExecutor.format_for_prompt([]) == ""


def test_format_for_prompt_last_definition_wins():
    tools = [
        ToolDefinition.model_validate({"function": {"name": "get_weather", "description": "old"}}),
        ToolDefinition.model_validate({"function": {"name": "get_joke"}}),
        ToolDefinition.model_validate({
            "function": {
                "name": "get_weather",
                "description": "new",
                "parameters": {"type": "object"},
            },
        }),
    ]

    catalog = ToolExecutor.format_for_prompt(tools)

    assert catalog.startswith("\n\n" + TOOL_PROMPT_HEADER + "\n")
    lines = catalog.strip().splitlines()[1:]
    assert lines == [
        '- get_weather: new (parameters: {"type": "object"})',
        "- get_joke: No description. (parameters: {})",
    ]


async def test_default_executor_weather_and_joke():
    executor = create_default_executor()

    weather = json.loads(await executor.execute(_call("get_weather", {"location": "Paris"})))
    joke = json.loads(await executor.execute(_call("get_joke")))

    assert executor.tool_names == ["get_weather", "get_joke"]
    assert executor.has("get_weather")
    assert not executor.has("get_stock")
    assert weather == {"location": "Paris", "temp": 72, "unit": "fahrenheit"}
    assert "joke" in joke
