"""
OpenAI-compatible API endpoints.

Provides /v1/models, /v1/chat/completions, /v1/completions,
/v1/responses and /v1/embeddings. Chat requests run through the
tool-calling loop; the other generation endpoints make a single model
call. Streaming responses re-emit the generated text as SSE frames.
"""

import logging
import time
from typing import Type, TypeVar

from fastapi import APIRouter, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .adapters import (
    PreparedRequest,
    clean_responses_output,
    encode_embedding,
    l2_normalize,
    prepare_chat,
    prepare_completion,
    prepare_embeddings,
    prepare_responses,
)
from .config import Config
from .errors import BadRequestError, error_response
from .generation_loop import RunCancelled, run_tool_loop
from .models import (
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    ResponsesRequest,
    Usage,
    estimate_tokens,
)
from .renderer import (
    ChatCodec,
    CompletionCodec,
    ResponseCodec,
    ResponsesCodec,
    render_embeddings,
    stream_text,
)

logger = logging.getLogger(__name__)

router = APIRouter()

RequestModel = TypeVar("RequestModel", bound=BaseModel)

# nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


async def _parse_body(request: Request, model: Type[RequestModel]) -> RequestModel:
    """Decode and validate a JSON body. Failures map to 400."""
    try:
        body = await request.json()
    except ValueError:
        raise BadRequestError("Request body is not valid JSON")
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return model.model_validate(body)


def _sse_response(
    codec: ResponseCodec,
    prepared: PreparedRequest,
    text: str,
    finish_reason: str,
    cfg: Config,
) -> StreamingResponse:
    session = codec.new_session()
    frames = stream_text(
        codec,
        session,
        prepared.model,
        text,
        stop=prepared.options.stop,
        finish_reason=finish_reason,
        chunk_size=cfg.stream_chunk_size,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Request-ID": session.id,
        },
    )


@router.get("/v1/models")
async def list_models(request: Request):
    """List the served model (OpenAI-compatible)."""
    engine = request.app.state.engine
    cfg: Config = request.app.state.config

    return {
        "object": "list",
        "data": [{
            "id": cfg.served_model,
            "object": "model",
            "created": int(time.time()),
            "owned_by": "gateway",
            "meta": {
                "status": "loaded" if engine.is_ready else "loading",
                "backend_model": engine.model_id,
            },
        }],
    }


@router.post("/v1/chat/completions")
async def chat_completions(request: Request):
    """
    OpenAI-compatible chat completions with prompted tool calling.

    When tools are supplied the catalog is added to the system prompt and
    the model's replies are scanned for JSON tool calls, which are executed
    server-side until the model answers in plain text.
    """
    engine = request.app.state.engine
    executor = request.app.state.executor
    cfg: Config = request.app.state.config

    try:
        body = await _parse_body(request, ChatCompletionRequest)
        prepared = prepare_chat(body, cfg)
        logger.info(
            f"Chat completion: messages={len(prepared.messages)}, "
            f"tools={len(prepared.tools)}, stream={prepared.stream}"
        )

        await engine.load()
        run = await run_tool_loop(
            engine,
            executor,
            prepared,
            max_iterations=cfg.max_tool_iterations,
            should_abort=request.is_disconnected,
        )
    except RunCancelled:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except Exception as e:
        return error_response(e)

    codec = ChatCodec()
    if prepared.stream:
        return _sse_response(codec, prepared, run.last_content, run.finish_reason, cfg)
    return codec.render(prepared.model, run.last_content, run.usage, run.finish_reason)


@router.post("/v1/completions")
async def completions(request: Request):
    """OpenAI-compatible text completion (prompt-based)."""
    engine = request.app.state.engine
    cfg: Config = request.app.state.config

    try:
        body = await _parse_body(request, CompletionRequest)
        prepared = prepare_completion(body, cfg)
        logger.info(f"Text completion: prompt={len(prepared.prompt)} chars, stream={prepared.stream}")

        await engine.load()
        result = await engine.complete(prepared.messages, prepared.options)
    except Exception as e:
        return error_response(e)

    text = result.content + prepared.suffix
    if prepared.echo:
        text = prepared.prompt + text

    codec = CompletionCodec()
    if prepared.stream:
        return _sse_response(codec, prepared, text, result.finish_reason, cfg)

    usage = Usage()
    usage.add(result)
    return codec.render(prepared.model, text, usage, result.finish_reason)


@router.post("/v1/responses")
async def responses(request: Request):
    """OpenAI responses API over a flattened role-labelled transcript."""
    engine = request.app.state.engine
    cfg: Config = request.app.state.config

    try:
        body = await _parse_body(request, ResponsesRequest)
        prepared = prepare_responses(body, cfg)
        logger.info(f"Responses: transcript={len(prepared.prompt)} chars, stream={prepared.stream}")

        await engine.load()
        result = await engine.complete(prepared.messages, prepared.options)
    except Exception as e:
        return error_response(e)

    text = clean_responses_output(result.content, prepared.prompt)

    codec = ResponsesCodec()
    if prepared.stream:
        return _sse_response(codec, prepared, text, result.finish_reason, cfg)

    usage = Usage()
    usage.add(result)
    return codec.render(prepared.model, text, usage, result.finish_reason)


@router.post("/v1/embeddings")
async def embeddings(request: Request):
    """OpenAI-compatible embeddings; one backend call per input string."""
    engine = request.app.state.engine
    cfg: Config = request.app.state.config

    try:
        body = await _parse_body(request, EmbeddingRequest)
        inputs = prepare_embeddings(body)
        logger.info(f"Embeddings: inputs={len(inputs)}, format={body.encoding_format}")

        vectors = []
        for text in inputs:
            vector = await engine.embed(text)
            vectors.append(encode_embedding(l2_normalize(vector), body.encoding_format))
    except Exception as e:
        return error_response(e)

    prompt_tokens = sum(estimate_tokens(text) for text in inputs)
    return render_embeddings(body.model or cfg.embedding_model, vectors, prompt_tokens)
