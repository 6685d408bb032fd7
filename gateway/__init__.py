"""
Tool-Calling Gateway

OpenAI-compatible HTTP/SSE layer around a single text-generation model,
with prompted tool calling for models that cannot emit structured calls.

Components:
- tool_executor: Tool registry, execution, and prompt catalog
- tool_parser: Tool-call extraction from free-form model output
- adapters: Per-endpoint request normalization
- generation_loop: Bounded tool-calling loop
- renderer: JSON and SSE rendering per endpoint
- errors: OpenAI error taxonomy and failure classification
- ollama_client: Ollama inference backend
- api: OpenAI-compatible endpoints
"""

from .main import app, create_app

__version__ = "0.1.0"
