"""
Tool-Calling Gateway - Main Entry Point

OpenAI-compatible API server in front of a single Ollama model, with
prompted tool calling for models that have no native function calling.

Usage:
    python -m gateway.main

Environment Variables:
    GATEWAY_HOST        - Server host (default: 0.0.0.0)
    GATEWAY_PORT        - Server port (default: 8080)
    OLLAMA_URL          - Ollama API URL (default: http://localhost:11434)
    MODEL_ID            - Generation model (default: smollm:135m)
    MODEL_ALIAS         - Model name reported to clients (default: MODEL_ID)
    EMBEDDING_MODEL     - Embedding model (default: nomic-embed-text)
    MAX_TOKENS_CAP      - Upper bound for max_tokens (default: 2048)
    DEFAULT_MAX_TOKENS  - max_tokens when the request has none (default: 256)
    MAX_TOOL_ITERATIONS - Model calls per chat request (default: 5)
    STREAM_CHUNK_SIZE   - Characters per SSE frame (default: 1)
    API_KEY             - Require "Authorization: Bearer <API_KEY>" when set
    PRELOAD_MODEL       - Load the model at startup (default: true)
    DEBUG               - Enable debug logging
"""

import asyncio
import logging
import secrets
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import router as api_router
from .config import Config, config
from .errors import ApiError, UnauthorizedError, error_response
from .ollama_client import OllamaClient
from .tool_executor import ToolExecutor, create_default_executor

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


async def _preload(engine) -> None:
    """Load the model in the background so startup is not blocked."""
    try:
        await engine.load()
    except Exception as e:
        # Requests retry the load and surface the error to clients
        logger.error(f"Model preload failed: {e}")


def create_app(
    cfg: Optional[Config] = None,
    engine=None,
    executor: Optional[ToolExecutor] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        cfg: Configuration (defaults to the environment-driven global)
        engine: Inference backend (defaults to an OllamaClient)
        executor: Tool registry (defaults to the built-in demonstration tools)
    """
    cfg = cfg or config
    engine = engine or OllamaClient(
        base_url=cfg.ollama_url,
        model=cfg.model_id,
        embedding_model=cfg.embedding_model,
        timeout=cfg.request_timeout,
    )
    executor = executor or create_default_executor()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown lifecycle."""

        # Startup
        logger.info("=" * 60)
        logger.info("Tool-Calling Gateway Starting")
        logger.info("=" * 60)
        logger.info(f"Ollama URL: {cfg.ollama_url}")
        logger.info(f"Model: {cfg.model_id} (served as {cfg.served_model})")
        logger.info(f"Embedding model: {cfg.embedding_model}")
        logger.info(f"Tools: {executor.tool_names}")
        logger.info(f"Auth: {'bearer token' if cfg.auth_enabled else 'disabled'}")

        preload_task = None
        if cfg.preload_model:
            preload_task = asyncio.create_task(_preload(engine))

        logger.info("-" * 60)
        logger.info(f"Server ready at http://{cfg.host}:{cfg.port}")
        logger.info(f"OpenAI endpoint: http://{cfg.host}:{cfg.port}/v1")
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info("Shutting down...")
        if preload_task and not preload_task.done():
            preload_task.cancel()
        await engine.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Tool-Calling Gateway",
        description=(
            "OpenAI-compatible API for a single local model. "
            "Tool calls are detected in the model's text output, "
            "executed server-side, and fed back until the model answers."
        ),
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.engine = engine
    app.state.executor = executor

    @app.middleware("http")
    async def require_api_key(request: Request, call_next):
        """Reject requests without the configured bearer token."""
        if cfg.auth_enabled:
            scheme, _, token = request.headers.get("authorization", "").partition(" ")
            if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), cfg.api_key):
                return error_response(UnauthorizedError())
        return await call_next(request)

    # Added last so it wraps auth and answers CORS preflights itself
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Render routing errors (404, 405) in the OpenAI error shape."""
        if exc.status_code == 404:
            message = f"Not found: {request.method} {request.url.path}"
        else:
            message = str(exc.detail)
        return ApiError(exc.status_code, message, "invalid_request_error").to_response()

    app.include_router(api_router)

    @app.get("/health")
    @app.get("/v1/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok" if engine.is_ready else "loading",
            "model_loaded": engine.is_ready,
            "model": cfg.served_model,
        }

    @app.get("/")
    async def root():
        """Root endpoint with basic info."""
        return {
            "name": "Tool-Calling Gateway",
            "version": VERSION,
            "model": cfg.served_model,
            "endpoints": {
                "models": "/v1/models",
                "chat": "/v1/chat/completions",
                "completions": "/v1/completions",
                "responses": "/v1/responses",
                "embeddings": "/v1/embeddings",
                "health": "/health",
            },
        }

    return app


app = create_app()


def main():
    """Run the gateway server."""
    uvicorn.run(
        "gateway.main:app",
        host=config.host,
        port=config.port,
        reload=False,
        log_level="debug" if config.debug else "info",
    )


if __name__ == "__main__":
    main()
