"""Per-request run and stream state."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .models import CompletionResult, LoopState, Usage

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


@dataclass
class OrchestrationRun:
    """
    State of one tool-calling conversation.

    Tracks:
    - The message sequence (append-only for the life of the run)
    - The current iteration and loop state
    - Token usage summed over every model call
    - The last text the model produced
    """
    messages: List[Dict[str, Any]]
    state: LoopState = LoopState.AWAITING_MODEL
    iteration: int = 0
    usage: Usage = field(default_factory=Usage)
    last_content: str = ""
    finish_reason: str = "stop"

    def record(self, result: CompletionResult) -> None:
        """Account for one model reply."""
        self.usage.add(result)
        self.last_content = result.content
        self.finish_reason = result.finish_reason

    def append(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    def transition(self, state: LoopState) -> None:
        logger.debug(f"Run iteration {self.iteration}: {self.state.value} -> {state.value}")
        self.state = state

    @property
    def finished(self) -> bool:
        return self.state in (LoopState.DONE, LoopState.ITERATION_CAP)


def new_id(prefix: str, length: int = 12) -> str:
    """Generate a response/message id such as chatcmpl-1a2b3c4d5e6f."""
    return f"{prefix}{uuid.uuid4().hex[:length]}"


@dataclass
class StreamSession:
    """
    State of one SSE response.

    Owned by the request that created it and closed exactly once.
    """
    id: str
    created_at: int = field(default_factory=lambda: int(time.time()))
    bytes_flushed: int = 0
    frames_sent: int = 0
    closed: bool = False

    def frame(self, data: str) -> str:
        """Account for one outgoing SSE frame."""
        if self.closed:
            raise RuntimeError(f"Stream {self.id} is already closed")
        self.bytes_flushed += len(data.encode("utf-8"))
        self.frames_sent += 1
        return data

    def close(self) -> str:
        """Emit the [DONE] marker and close the session."""
        data = self.frame(DONE_FRAME)
        self.closed = True
        logger.debug(f"Stream {self.id} closed after {self.frames_sent} frames ({self.bytes_flushed} bytes)")
        return data

    def abort(self) -> None:
        """Close without [DONE]; the client sees a truncated stream."""
        if not self.closed:
            self.closed = True
            logger.warning(f"Stream {self.id} aborted after {self.frames_sent} frames")
