"""Shared test fixtures for the gateway."""

import json
from typing import Any, Dict, List, Optional, Union

import pytest
from httpx import ASGITransport, AsyncClient

from gateway.config import Config
from gateway.main import create_app
from gateway.models import CompletionResult, GenerationOptions
from gateway.tool_executor import create_default_executor

Reply = Union[str, CompletionResult, Exception]


class FakeEngine:
    """
    Scripted inference backend.

    Replies are consumed in order; the last one repeats once the script
    runs out. Strings become CompletionResult(prompt_tokens=10,
    completion_tokens=5); exceptions are raised.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, model_id: str = "fake-model"):
        self.replies: List[Reply] = list(replies or ["Hello!"])
        self.model_id = model_id
        self.is_ready = False
        self.load_count = 0
        self.calls: List[Dict[str, Any]] = []
        self.embedded: List[str] = []
        self.vectors: Dict[str, List[float]] = {}

    async def load(self) -> None:
        self.load_count += 1
        self.is_ready = True

    async def complete(self, messages, options: Optional[GenerationOptions] = None) -> CompletionResult:
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "options": options,
        })
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return CompletionResult(content=reply, prompt_tokens=10, completion_tokens=5)
        return reply

    async def embed(self, text: str) -> List[float]:
        self.embedded.append(text)
        return self.vectors.get(text, [3.0, 4.0])

    async def close(self) -> None:
        pass


def make_config(**overrides) -> Config:
    defaults = {
        "host": "127.0.0.1",
        "port": 8080,
        "api_key": "",
        "debug": False,
        "ollama_url": "http://ollama.test",
        "model_id": "fake-model",
        "model_alias": "test-model",
        "embedding_model": "fake-embed",
        "request_timeout": 5.0,
        "preload_model": False,
        "max_tokens_cap": 2048,
        "default_max_tokens": 256,
        "max_tool_iterations": 5,
        "stream_chunk_size": 1,
    }
    defaults.update(overrides)
    return Config(**defaults)


def tool_call_text(name: str, arguments: Dict[str, Any]) -> str:
    return json.dumps({"name": name, "arguments": arguments})


def parse_sse(body: str) -> List[Any]:
    """Split an SSE body into decoded payloads ("[DONE]" kept as a string)."""
    frames = []
    for block in body.split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: "), block
        data = block[len("data: "):]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Get the current weather for a location",
        "parameters": {
            "type": "object",
            "properties": {"location": {"type": "string"}},
            "required": ["location"],
        },
    },
}


@pytest.fixture
def test_config() -> Config:
    return make_config()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
async def client(engine: FakeEngine, test_config: Config):
    """In-process client for an app backed by the fake engine."""
    app = create_app(test_config, engine=engine, executor=create_default_executor())
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c
