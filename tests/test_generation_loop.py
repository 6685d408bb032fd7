"""Tests for the bounded tool-calling loop."""

import json
from unittest.mock import patch

import pytest

from gateway.adapters import prepare_chat
from gateway.generation_loop import RunCancelled, correction_prompt, run_tool_loop
from gateway.models import ChatCompletionRequest, CompletionResult, LoopState
from gateway.ollama_client import BackendError
from gateway.tool_executor import ToolExecutor, create_default_executor

from conftest import WEATHER_TOOL, FakeEngine, make_config, tool_call_text


def _prepare(messages=None, **body):
    body["messages"] = messages or [{"role": "user", "content": "What's the weather in Paris?"}]
    return prepare_chat(ChatCompletionRequest.model_validate(body), make_config())


async def test_no_tools_single_iteration_without_extraction():
    engine = FakeEngine([tool_call_text("get_weather", {"location": "Paris"})])
    prepared = _prepare()

    with patch("gateway.generation_loop.parse_tool_calls") as parser, \
            patch("gateway.generation_loop.has_tool_call_intent") as intent:
        run = await run_tool_loop(engine, create_default_executor(), prepared)

    parser.assert_not_called()
    intent.assert_not_called()
    assert len(engine.calls) == 1
    assert run.iteration == 1
    assert run.state == LoopState.DONE
    assert run.last_content == tool_call_text("get_weather", {"location": "Paris"})


async def test_weather_end_to_end():
    engine = FakeEngine([
        tool_call_text("get_weather", {"location": "Paris"}),
        "It's 72°F in Paris.",
    ])
    prepared = _prepare(tools=[WEATHER_TOOL])

    run = await run_tool_loop(engine, create_default_executor(), prepared)

    assert run.state == LoopState.DONE
    assert run.iteration == 2
    assert run.last_content == "It's 72°F in Paris."

    second_call = engine.calls[1]["messages"]
    assistant, tool = second_call[-2], second_call[-1]
    assert assistant["role"] == "assistant"
    assert assistant["tool_calls"][0]["function"]["name"] == "get_weather"
    assert json.loads(assistant["tool_calls"][0]["function"]["arguments"]) == {"location": "Paris"}
    assert tool["role"] == "tool"
    assert tool["tool_call_id"] == assistant["tool_calls"][0]["id"]
    assert json.loads(tool["content"]) == {"location": "Paris", "temp": 72, "unit": "fahrenheit"}


async def test_catalog_reaches_the_model():
    engine = FakeEngine(["Hi"])
    prepared = _prepare(tools=[WEATHER_TOOL])

    await run_tool_loop(engine, create_default_executor(), prepared)

    system = engine.calls[0]["messages"][0]
    assert system["role"] == "system"
    assert "- get_weather: Get the current weather for a location" in system["content"]


async def test_required_with_intent_only_retries_once():
    broken = '{"name": "get_weather", "arguments": {location: Paris}'
    engine = FakeEngine([broken, "Sorry, here is the answer."])
    prepared = _prepare(tools=[WEATHER_TOOL], tool_choice="required")

    run = await run_tool_loop(engine, create_default_executor(), prepared)

    assert len(engine.calls) == 2
    assert run.state == LoopState.DONE
    assert run.last_content == "Sorry, here is the answer."
    retry_messages = engine.calls[1]["messages"]
    assert retry_messages[-2] == {"role": "assistant", "content": broken}
    assert retry_messages[-1] == {"role": "user", "content": correction_prompt()}


async def test_named_choice_correction_names_the_function():
    engine = FakeEngine(["tool_call please", "done"])
    prepared = _prepare(
        tools=[WEATHER_TOOL],
        tool_choice={"type": "function", "function": {"name": "get_weather"}},
    )

    await run_tool_loop(engine, create_default_executor(), prepared)

    assert engine.calls[1]["messages"][-1]["content"] == (
        'Please call a tool with valid JSON format: {"name":"get_weather","arguments":{...}}'
    )


async def test_auto_choice_does_not_retry_on_intent():
    engine = FakeEngine(["tool_call please", "unused"])
    prepared = _prepare(tools=[WEATHER_TOOL])

    run = await run_tool_loop(engine, create_default_executor(), prepared)

    assert len(engine.calls) == 1
    assert run.last_content == "tool_call please"


async def test_iteration_cap_returns_last_text():
    replies = [tool_call_text("get_weather", {"location": f"City{i}"}) for i in range(10)]
    engine = FakeEngine(replies)
    prepared = _prepare(tools=[WEATHER_TOOL])

    run = await run_tool_loop(engine, create_default_executor(), prepared, max_iterations=5)

    assert len(engine.calls) == 5
    assert run.iteration == 5
    assert run.state == LoopState.ITERATION_CAP
    assert run.finished
    assert run.finish_reason == "stop"
    assert run.last_content == tool_call_text("get_weather", {"location": "City4"})


async def test_usage_is_summed_across_iterations():
    engine = FakeEngine([
        CompletionResult(tool_call_text("get_weather", {"location": "Paris"}), 20, 7),
        CompletionResult("Sunny.", 35, 3),
    ])
    prepared = _prepare(tools=[WEATHER_TOOL])

    run = await run_tool_loop(engine, create_default_executor(), prepared)

    assert run.usage.prompt_tokens == 55
    assert run.usage.completion_tokens == 10
    assert run.usage.total_tokens == 65


async def test_unknown_tool_error_is_fed_back_and_run_continues():
    engine = FakeEngine([tool_call_text("get_stock", {"ticker": "X"}), "I can't do that."])
    prepared = _prepare(tools=[WEATHER_TOOL])

    run = await run_tool_loop(engine, ToolExecutor(), prepared)

    assert run.state == LoopState.DONE
    assert run.last_content == "I can't do that."
    tool_message = engine.calls[1]["messages"][-1]
    assert json.loads(tool_message["content"]) == {"error": "Unknown tool: get_stock"}


async def test_client_disconnect_cancels_run():
    engine = FakeEngine([tool_call_text("get_weather", {"location": "Paris"}), "never"])
    prepared = _prepare(tools=[WEATHER_TOOL])

    async def disconnected():
        return True

    with pytest.raises(RunCancelled):
        await run_tool_loop(engine, create_default_executor(), prepared, should_abort=disconnected)

    assert len(engine.calls) == 1


async def test_backend_error_propagates():
    engine = FakeEngine([BackendError(500, "Ollama error: boom")])
    prepared = _prepare()

    with pytest.raises(BackendError):
        await run_tool_loop(engine, create_default_executor(), prepared)


async def test_request_messages_are_not_mutated():
    engine = FakeEngine([tool_call_text("get_weather", {"location": "Paris"}), "ok"])
    prepared = _prepare(tools=[WEATHER_TOOL])
    before = list(prepared.messages)

    run = await run_tool_loop(engine, create_default_executor(), prepared)

    assert prepared.messages == before
    assert len(run.messages) == len(before) + 2


async def test_explicit_zero_iterations_is_respected():
    engine = FakeEngine(["unused"])
    prepared = _prepare()

    run = await run_tool_loop(engine, create_default_executor(), prepared, max_iterations=0)

    assert engine.calls == []
    assert run.state == LoopState.ITERATION_CAP
    assert run.last_content == ""
