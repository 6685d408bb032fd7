"""
OpenAI wire-format rendering.

Each generation endpoint has a codec that knows its JSON shapes: the full
response document and the delta/terminal chunks of its SSE stream. The
stream encoder is shared and only asks the codec for payloads.
"""

import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from .models import Usage
from .state import StreamSession, new_id

logger = logging.getLogger(__name__)


def format_sse(payload: Dict[str, Any]) -> str:
    """Format one payload as an SSE data frame."""
    return f"data: {json.dumps(payload)}\n\n"


class ResponseCodec:
    """Shapes the JSON documents of one endpoint."""

    object: str = ""
    chunk_object: str = ""
    id_prefix: str = ""

    def new_session(self) -> StreamSession:
        return StreamSession(id=new_id(self.id_prefix))

    def envelope(self, response_id: str, created: int, model: str, obj: str) -> Dict[str, Any]:
        return {"id": response_id, "object": obj, "created": created, "model": model}

    def render(
        self,
        model: str,
        text: str,
        usage: Usage,
        finish_reason: str = "stop",
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def delta(self, session: StreamSession, model: str, text: str, index: int) -> Dict[str, Any]:
        raise NotImplementedError

    def finish(self, session: StreamSession, model: str, finish_reason: str, index: int) -> Dict[str, Any]:
        raise NotImplementedError


class ChatCodec(ResponseCodec):
    """chat.completion / chat.completion.chunk"""

    object = "chat.completion"
    chunk_object = "chat.completion.chunk"
    id_prefix = "chatcmpl-"

    def render(self, model, text, usage, finish_reason="stop"):
        doc = self.envelope(new_id(self.id_prefix), int(time.time()), model, self.object)
        doc["choices"] = [{
            "index": 0,
            "message": {"role": "assistant", "content": text or None},
            "finish_reason": finish_reason,
        }]
        doc["usage"] = usage.to_dict()
        doc["system_fingerprint"] = f"gateway-{model}"
        return doc

    def delta(self, session, model, text, index):
        delta: Dict[str, Any] = {"content": text}
        if index == 1:
            delta = {"role": "assistant", "content": text}
        chunk = self.envelope(session.id, session.created_at, model, self.chunk_object)
        chunk["choices"] = [{"index": 0, "delta": delta, "finish_reason": None}]
        return chunk

    def finish(self, session, model, finish_reason, index):
        chunk = self.envelope(session.id, session.created_at, model, self.chunk_object)
        chunk["choices"] = [{"index": 0, "delta": {}, "finish_reason": finish_reason}]
        return chunk


class CompletionCodec(ResponseCodec):
    """text_completion (same object name for stream chunks)"""

    object = "text_completion"
    chunk_object = "text_completion"
    id_prefix = "cmpl-"

    def render(self, model, text, usage, finish_reason="stop"):
        doc = self.envelope(new_id(self.id_prefix), int(time.time()), model, self.object)
        doc["choices"] = [{
            "index": 0,
            "text": text,
            "logprobs": None,
            "finish_reason": finish_reason,
        }]
        doc["usage"] = usage.to_dict()
        return doc

    def _chunk(self, session, model, text, finish_reason):
        chunk = self.envelope(session.id, session.created_at, model, self.chunk_object)
        chunk["choices"] = [{
            "index": 0,
            "text": text,
            "logprobs": None,
            "finish_reason": finish_reason,
        }]
        return chunk

    def delta(self, session, model, text, index):
        return self._chunk(session, model, text, None)

    def finish(self, session, model, finish_reason, index):
        return self._chunk(session, model, "", finish_reason)


class ResponsesCodec(ResponseCodec):
    """response object with message / message_delta output items"""

    object = "response"
    chunk_object = "response"
    id_prefix = "resp_"

    def __init__(self):
        self.message_id = new_id("msg_")

    def render(self, model, text, usage, finish_reason="stop"):
        doc = self.envelope(new_id(self.id_prefix), int(time.time()), model, self.object)
        doc["status"] = "completed" if finish_reason == "stop" else "incomplete"
        doc["output"] = [{
            "type": "message",
            "id": self.message_id,
            "role": "assistant",
            "content": [{"type": "output_text", "text": text, "annotations": []}],
        }]
        doc["usage"] = usage.to_dict()
        return doc

    def delta(self, session, model, text, index):
        chunk = self.envelope(session.id, session.created_at, model, self.chunk_object)
        chunk["output"] = [{
            "type": "message_delta",
            "id": self.message_id,
            "delta": {"role": "assistant", "content": text},
            "usage": {"output_tokens": index},
        }]
        return chunk

    def finish(self, session, model, finish_reason, index):
        chunk = self.envelope(session.id, session.created_at, model, self.chunk_object)
        chunk["output"] = [{
            "type": "message_delta",
            "id": self.message_id,
            "delta": {},
            "usage": {"output_tokens": index},
            "finish_reason": finish_reason,
        }]
        return chunk


def render_embeddings(
    model: str,
    embeddings: Sequence[Union[List[float], str]],
    prompt_tokens: int,
) -> Dict[str, Any]:
    """Render the embeddings list document."""
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "embedding": embedding, "index": i}
            for i, embedding in enumerate(embeddings)
        ],
        "model": model,
        "usage": Usage(prompt_tokens=prompt_tokens).to_dict(),
    }


def _stop_matched(previous: str, emitted: str, stop: Sequence[str]) -> Optional[str]:
    """Return the stop sequence whose first occurrence ends in the newest increment."""
    for seq in stop:
        window_start = max(0, len(previous) - len(seq) + 1)
        if seq in emitted[window_start:]:
            return seq
    return None

async def stream_text(
    codec: ResponseCodec,
    session: StreamSession,
    model: str,
    text: str,
    stop: Sequence[str] = (),
    finish_reason: str = "stop",
    chunk_size: int = 1,
) -> AsyncIterator[str]:
    """
    Re-emit already generated text as SSE frames.

    Frames carry chunk_size characters each. The token budget was already
    enforced by the backend, so the whole text is sent. The stream ends
    with one terminal frame and then [DONE]:
    - "stop" as soon as a stop sequence completes inside the last increment
    - finish_reason (the backend's, "stop" or "length") when the text runs out

    Errors propagate to the transport, which drops the connection without
    [DONE].
    """
    chunk_size = max(1, chunk_size)
    emitted = ""
    increments = 0

    try:
        for start in range(0, len(text), chunk_size):
            piece = text[start:start + chunk_size]
            previous = emitted
            emitted += piece
            increments += 1

            yield session.frame(format_sse(codec.delta(session, model, piece, increments)))

            matched = _stop_matched(previous, emitted, stop)
            if matched is not None:
                logger.debug(f"Stream {session.id}: stop sequence {matched!r} after {increments} increments")
                finish_reason = "stop"
                break

        yield session.frame(format_sse(codec.finish(session, model, finish_reason, increments)))
        yield session.close()
    finally:
        session.abort()
