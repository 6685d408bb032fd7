"""Ollama inference backend."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import config
from .models import CompletionResult, GenerationOptions, estimate_tokens

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """Error status returned by the Ollama server."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class OllamaClient:
    """
    Async client for the Ollama API.

    Handles:
    - Loading the model once (concurrent callers share one in-flight load)
    - Chat completion with token accounting
    - Text embeddings

    Calls into the model are serialized; the loaded model is the one
    resource every request shares.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        timeout = timeout if timeout is not None else config.request_timeout
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))
        self.base_url = (base_url or config.ollama_url).rstrip("/")
        self.model = model or config.model_id
        self.embedding_model = embedding_model or config.embedding_model

        self._loaded = False
        self._load_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def model_id(self) -> str:
        return self.model

    @property
    def is_ready(self) -> bool:
        return self._loaded

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def load(self) -> None:
        """
        Load the model into the Ollama server.

        Idempotent. While a load is in flight, further callers wait on it
        instead of starting another one. A failed load can be retried.
        """
        if self._loaded:
            return

        if self._load_task is None:
            logger.info(f"Loading model {self.model} from {self.base_url}")
            self._load_task = asyncio.create_task(self._load_model())

        task = self._load_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and not self._loaded and self._load_task is task:
                self._load_task = None

    async def _load_model(self) -> None:
        # An empty generate request makes Ollama load the model into memory
        resp = await self.client.post(
            f"{self.base_url}/api/generate",
            json={"model": self.model},
        )
        self._raise_for_status(resp)
        self._loaded = True
        logger.info(f"Model {self.model} loaded")

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        options: Optional[GenerationOptions] = None,
    ) -> CompletionResult:
        """Run one chat completion. Returns assistant text and token counts."""
        if not self._loaded:
            raise RuntimeError("Model not loaded. Call load() first.")

        options = options or GenerationOptions()
        ollama_messages = self._to_ollama_messages(messages)
        if not ollama_messages:
            raise RuntimeError("No valid messages to complete.")

        payload = {
            "model": self.model,
            "messages": ollama_messages,
            "stream": False,
            "options": self._to_ollama_options(options),
        }

        logger.debug(f"Chat request: model={self.model}, messages={len(ollama_messages)}")

        async with self._lock:
            resp = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        self._raise_for_status(resp)
        data = resp.json()

        content = (data.get("message") or {}).get("content") or ""
        prompt_tokens = data.get("prompt_eval_count")
        completion_tokens = data.get("eval_count")

        if prompt_tokens is None:
            prompt_tokens = estimate_tokens("\n".join(m["content"] for m in ollama_messages))
        if completion_tokens is None:
            completion_tokens = estimate_tokens(content)

        return CompletionResult(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            finish_reason="length" if data.get("done_reason") == "length" else "stop",
        )

    async def embed(self, text: str) -> List[float]:
        """Embed one text with the embedding model."""
        async with self._lock:
            resp = await self.client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.embedding_model, "input": text},
            )
        self._raise_for_status(resp)
        embeddings = resp.json().get("embeddings") or []
        if not embeddings:
            raise RuntimeError(f"Embedding model {self.embedding_model} returned no vector")
        return [float(x) for x in embeddings[0]]

    @staticmethod
    def _to_ollama_messages(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
        """
        Convert OpenAI messages to plain role/content pairs.

        The model has no native tool support, so tool results are passed
        back as user turns and assistant tool_calls are dropped (their JSON
        is already in the assistant content).
        """
        converted = []
        for m in messages:
            role = m.get("role", "user")
            content = m.get("content") or ""

            if role == "tool":
                role = "user"
                content = f"[Tool result]\n{content}"
            elif role == "developer":
                role = "system"

            if content:
                converted.append({"role": role, "content": content})

        return converted

    @staticmethod
    def _to_ollama_options(options: GenerationOptions) -> Dict[str, Any]:
        mapped = {
            "num_predict": options.max_new_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "min_p": options.min_p,
            "repeat_penalty": options.repeat_penalty,
            "presence_penalty": options.presence_penalty,
            "frequency_penalty": options.frequency_penalty,
            "seed": options.seed,
            "stop": options.stop or None,
        }
        return {k: v for k, v in mapped.items() if v is not None}

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if not resp.is_error:
            return

        try:
            message = resp.json().get("error") or resp.text
        except ValueError:
            message = resp.text
        logger.error(f"Ollama HTTP error {resp.status_code}: {message}")
        raise BackendError(resp.status_code, f"Ollama error: {message}")
