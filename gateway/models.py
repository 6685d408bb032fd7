"""Data models for the gateway."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel


# ============================================================================
# OpenAI-Compatible Request Models
# ============================================================================

class ToolCallFunction(BaseModel):
    """Function part of an assistant tool call (arguments are a JSON string)."""
    name: str
    arguments: str = "{}"


class MessageToolCall(BaseModel):
    """Tool call carried by an assistant message."""
    id: str
    type: Literal["function"] = "function"
    function: ToolCallFunction


class ChatMessage(BaseModel):
    """OpenAI chat message format."""
    role: Literal["system", "developer", "user", "assistant", "tool"]
    content: Union[str, List[Dict[str, Any]], None] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[MessageToolCall]] = None


class ToolFunction(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    strict: Optional[bool] = None


class ToolDefinition(BaseModel):
    """OpenAI tool definition (only function tools exist)."""
    type: Literal["function"] = "function"
    function: ToolFunction


class NamedFunction(BaseModel):
    name: str


class NamedToolChoice(BaseModel):
    """tool_choice forcing one specific function."""
    type: Literal["function"] = "function"
    function: NamedFunction


ToolChoice = Union[Literal["none", "auto", "required"], NamedToolChoice]


class SamplingFields(BaseModel):
    """Sampling parameters shared by every generation endpoint."""
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    min_p: Optional[float] = None
    repeat_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    seed: Optional[int] = None
    stop: Union[str, List[str], None] = None
    stream: bool = False


class ChatCompletionRequest(SamplingFields):
    """OpenAI chat completion request."""
    messages: Optional[List[ChatMessage]] = None
    max_completion_tokens: Optional[int] = None
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[ToolChoice] = None


class CompletionRequest(SamplingFields):
    """OpenAI text completion request."""
    prompt: Union[str, List[str], None] = None
    echo: bool = False
    suffix: Optional[str] = None


class ResponseContentPart(BaseModel):
    """Content part inside a responses-API message item."""
    type: str = "input_text"
    text: Optional[str] = None
    image_url: Optional[str] = None
    file_id: Optional[str] = None
    detail: Optional[str] = None


class ResponseInputText(BaseModel):
    type: Literal["input_text"]
    text: str


class ResponseInputImage(BaseModel):
    type: Literal["input_image"]
    image_url: Optional[str] = None
    file_id: Optional[str] = None
    detail: Optional[str] = None


class ResponseInputMessage(BaseModel):
    type: Literal["message"] = "message"
    role: Literal["system", "developer", "user", "assistant"]
    content: Union[str, List[ResponseContentPart]] = ""


ResponseInputItem = Union[str, ResponseInputText, ResponseInputImage, ResponseInputMessage]


class ResponsesRequest(SamplingFields):
    """OpenAI responses-API request."""
    input: Union[ResponseInputItem, List[ResponseInputItem], None] = None
    instructions: Optional[str] = None
    max_output_tokens: Optional[int] = None


class EmbeddingRequest(BaseModel):
    """OpenAI embeddings request."""
    model: Optional[str] = None
    input: Union[str, List[str], None] = None
    encoding_format: Literal["float", "base64"] = "float"


# ============================================================================
# Internal State Models
# ============================================================================

class LoopState(str, Enum):
    """Orchestration loop state."""
    AWAITING_MODEL = "awaiting_model"
    INSPECTING_OUTPUT = "inspecting_output"
    EXECUTING_TOOLS = "executing_tools"
    FORCING_RETRY = "forcing_retry"
    DONE = "done"
    ITERATION_CAP = "iteration_cap"


@dataclass
class GenerationOptions:
    """Sampling options passed to the inference backend."""
    max_new_tokens: int = 256
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    min_p: Optional[float] = None
    repeat_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    seed: Optional[int] = None
    stop: List[str] = field(default_factory=list)


@dataclass
class ParsedToolCall:
    """Tool call extracted from free-form assistant text."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """One reply from the inference backend."""
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "stop"


@dataclass
class Usage:
    """Token usage accumulated across one request."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, result: CompletionResult) -> None:
        self.prompt_tokens += result.prompt_tokens
        self.completion_tokens += result.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def estimate_tokens(text: str) -> int:
    """Rough token count used when the backend does not report one."""
    return math.ceil(len(text) / 4)
