"""
Request normalization for every endpoint.

Each endpoint's body is reduced to the same inference call: a list of
role/content messages plus GenerationOptions. Chat bodies keep their
messages (with the tool catalog folded into the system prompt), text
completions become a single user turn, and responses-API input is
flattened into a labelled transcript.
"""

import base64
import logging
import math
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import Config, config as default_config
from .errors import BadRequestError
from .models import (
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    GenerationOptions,
    NamedToolChoice,
    ResponseInputImage,
    ResponseInputMessage,
    ResponseInputText,
    ResponsesRequest,
    SamplingFields,
    ToolDefinition,
)
from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)

ASSISTANT_CUE = "Assistant:"

_RESPONSE_ROLE_LABELS = {
    "system": "System",
    "developer": "System",
    "user": "User",
    "assistant": "Assistant",
}


@dataclass
class PreparedRequest:
    """Endpoint body normalized into one inference call."""
    model: str
    messages: List[Dict[str, Any]]
    options: GenerationOptions
    stream: bool = False
    tools: List[ToolDefinition] = field(default_factory=list)
    forced_tool: bool = False
    forced_tool_name: Optional[str] = None
    prompt: str = ""
    echo: bool = False
    suffix: str = ""


def clamp_max_tokens(requested: Optional[int], cfg: Config = default_config) -> int:
    """Clamp the token budget to [1, max_tokens_cap]."""
    value = requested if requested is not None else cfg.default_max_tokens
    return max(1, min(value, cfg.max_tokens_cap))


def normalize_stop(stop: Union[str, List[str], None]) -> List[str]:
    if stop is None:
        return []
    if isinstance(stop, str):
        return [stop] if stop else []
    return [s for s in stop if s]


def build_options(
    req: SamplingFields,
    requested_max_tokens: Optional[int],
    cfg: Config = default_config,
) -> GenerationOptions:
    return GenerationOptions(
        max_new_tokens=clamp_max_tokens(requested_max_tokens, cfg),
        temperature=req.temperature,
        top_p=req.top_p,
        top_k=req.top_k,
        min_p=req.min_p,
        repeat_penalty=req.repeat_penalty,
        presence_penalty=req.presence_penalty,
        frequency_penalty=req.frequency_penalty,
        seed=req.seed,
        stop=normalize_stop(req.stop),
    )


def message_text(content: Union[str, List[Dict[str, Any]], None]) -> str:
    """Flatten chat message content (string or content parts) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, dict) and isinstance(part.get("text"), str):
            parts.append(part["text"])
    return "".join(parts)


# =============================================================================
# Chat
# =============================================================================

def prepare_chat(req: ChatCompletionRequest, cfg: Config = default_config) -> PreparedRequest:
    """Normalize a chat request; append the tool catalog to the system prompt."""
    if not req.messages:
        raise BadRequestError("messages must be a non-empty array", param="messages")

    tool_choice = req.tool_choice or "auto"
    tools = list(req.tools or []) if tool_choice != "none" else []

    forced_name = None
    if isinstance(tool_choice, NamedToolChoice):
        forced_name = tool_choice.function.name
        if tools and forced_name not in {t.function.name for t in tools}:
            raise BadRequestError(
                f"tool_choice names unknown function: {forced_name}",
                param="tool_choice",
            )
    forced = tool_choice == "required" or forced_name is not None

    messages = []
    for m in req.messages:
        message: Dict[str, Any] = {"role": m.role, "content": message_text(m.content)}
        if m.name:
            message["name"] = m.name
        if m.tool_call_id:
            message["tool_call_id"] = m.tool_call_id
        if m.tool_calls:
            message["tool_calls"] = [tc.model_dump() for tc in m.tool_calls]
        messages.append(message)

    catalog = ToolExecutor.format_for_prompt(tools)
    if catalog:
        system = next((m for m in messages if m["role"] == "system"), None)
        if system is not None:
            system["content"] = system["content"] + catalog
        else:
            messages.insert(0, {"role": "system", "content": catalog.lstrip()})

    max_tokens = req.max_completion_tokens if req.max_completion_tokens is not None else req.max_tokens

    return PreparedRequest(
        model=req.model or cfg.served_model,
        messages=messages,
        options=build_options(req, max_tokens, cfg),
        stream=req.stream,
        tools=tools,
        forced_tool=forced and bool(tools),
        forced_tool_name=forced_name,
    )


# =============================================================================
# Text completion
# =============================================================================

def prepare_completion(req: CompletionRequest, cfg: Config = default_config) -> PreparedRequest:
    """Turn a raw prompt into a single user message."""
    if req.prompt is None or req.prompt == [] or req.prompt == "":
        raise BadRequestError("prompt is required", param="prompt")

    prompt = req.prompt if isinstance(req.prompt, str) else "\n".join(req.prompt)

    return PreparedRequest(
        model=req.model or cfg.served_model,
        messages=[{"role": "user", "content": prompt}],
        options=build_options(req, req.max_tokens, cfg),
        stream=req.stream,
        prompt=prompt,
        echo=req.echo,
        suffix=req.suffix or "",
    )


# =============================================================================
# Responses
# =============================================================================

def _image_tag(image_url: Optional[str], file_id: Optional[str]) -> str:
    return f"[image: {image_url or file_id or 'unknown'}]"


def _response_content_text(content) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if part.type == "input_image" or (part.text is None and (part.image_url or part.file_id)):
            parts.append(_image_tag(part.image_url, part.file_id))
        else:
            parts.append(part.text or "")
    return "".join(parts)


def build_responses_transcript(req: ResponsesRequest) -> str:
    """
    Flatten responses-API input into a labelled transcript.

    Every turn becomes "<Role>: <text>" followed by a blank line, and the
    transcript ends with an "Assistant:" cue for the model to continue.
    """
    if req.input is None or req.input == [] or req.input == "":
        raise BadRequestError("input is required", param="input")

    items = req.input if isinstance(req.input, list) else [req.input]

    turns = []
    if req.instructions:
        turns.append(f"System: {req.instructions}")

    for item in items:
        if isinstance(item, str):
            turns.append(f"User: {item}")
        elif isinstance(item, ResponseInputText):
            turns.append(f"User: {item.text}")
        elif isinstance(item, ResponseInputImage):
            turns.append(f"User: {_image_tag(item.image_url, item.file_id)}")
        elif isinstance(item, ResponseInputMessage):
            label = _RESPONSE_ROLE_LABELS[item.role]
            turns.append(f"{label}: {_response_content_text(item.content)}")

    return "".join(f"{turn}\n\n" for turn in turns) + ASSISTANT_CUE


def prepare_responses(req: ResponsesRequest, cfg: Config = default_config) -> PreparedRequest:
    transcript = build_responses_transcript(req)
    max_tokens = req.max_output_tokens if req.max_output_tokens is not None else req.max_tokens

    return PreparedRequest(
        model=req.model or cfg.served_model,
        messages=[{"role": "user", "content": transcript}],
        options=build_options(req, max_tokens, cfg),
        stream=req.stream,
        prompt=transcript,
    )


def clean_responses_output(text: str, transcript: str) -> str:
    """Strip an echoed transcript or leading role label from model output."""
    if text.startswith(transcript):
        text = text[len(transcript):]
    else:
        cue = text.rfind(ASSISTANT_CUE)
        if cue != -1:
            text = text[cue + len(ASSISTANT_CUE):]
    return text.strip()


# =============================================================================
# Embeddings
# =============================================================================

def prepare_embeddings(req: EmbeddingRequest) -> List[str]:
    """Return the list of texts to embed, one backend call each."""
    if req.input is None or req.input == [] or req.input == "":
        raise BadRequestError("input is required", param="input")
    inputs = req.input if isinstance(req.input, list) else [req.input]
    for i, text in enumerate(inputs):
        if not text:
            raise BadRequestError(f"input[{i}] must be a non-empty string", param="input")
    return inputs


def l2_normalize(vector: Sequence[float]) -> List[float]:
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return list(vector)
    return [x / norm for x in vector]


def encode_embedding(vector: Sequence[float], encoding_format: str) -> Union[List[float], str]:
    """Encode a vector as a float list or base64 little-endian float32."""
    if encoding_format == "base64":
        packed = struct.pack(f"<{len(vector)}f", *vector)
        return base64.b64encode(packed).decode("ascii")
    return list(vector)
