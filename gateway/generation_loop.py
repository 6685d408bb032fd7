"""
Core tool-calling loop for models without native function calling.

Each iteration asks the model for a reply and inspects it:
- no tool call -> the reply is the final answer
- malformed call while a tool call is required -> re-prompt with a correction
- tool call(s) -> execute them, append the results, ask the model again

The loop is bounded by max_tool_iterations; when the bound is reached the
last reply is returned as the answer.
"""

import json
import logging
from typing import Awaitable, Callable, Optional

from .adapters import PreparedRequest
from .config import config
from .models import LoopState
from .state import OrchestrationRun
from .tool_executor import ToolExecutor
from .tool_parser import has_tool_call_intent, parse_tool_calls

logger = logging.getLogger(__name__)

AbortProbe = Callable[[], Awaitable[bool]]


class RunCancelled(Exception):
    """The client went away; the run was abandoned."""


def correction_prompt(tool_name: Optional[str] = None) -> str:
    """User turn sent after a malformed tool call when a call is required."""
    name = tool_name or "<tool_name>"
    return (
        "Please call a tool with valid JSON format: "
        f'{{"name":"{name}","arguments":{{...}}}}'
    )


async def _check_abort(run: OrchestrationRun, should_abort: Optional[AbortProbe]) -> None:
    if should_abort is not None and await should_abort():
        logger.info(f"Client disconnected, abandoning run at iteration {run.iteration}")
        raise RunCancelled(f"Run cancelled at iteration {run.iteration}")


async def run_tool_loop(
    engine,
    executor: ToolExecutor,
    prepared: PreparedRequest,
    max_iterations: Optional[int] = None,
    should_abort: Optional[AbortProbe] = None,
) -> OrchestrationRun:
    """
    Run the bounded tool-calling conversation for one chat request.

    Args:
        engine: Inference backend exposing complete(messages, options)
        executor: Tool registry used to resolve extracted calls
        prepared: Normalized chat request (messages already carry the tool catalog)
        max_iterations: Model calls allowed (defaults to config.max_tool_iterations)
        should_abort: Async probe checked after every await; True cancels the run

    Returns the finished run: final text in run.last_content, summed usage
    in run.usage, and the terminal state (DONE or ITERATION_CAP).

    Backend failures propagate and abort the run. Tool failures do not.
    """
    if max_iterations is None:
        max_iterations = config.max_tool_iterations
    run = OrchestrationRun(messages=list(prepared.messages))
    has_tools = bool(prepared.tools)

    while run.iteration < max_iterations:
        run.iteration += 1
        run.transition(LoopState.AWAITING_MODEL)

        result = await engine.complete(run.messages, prepared.options)
        run.record(result)
        await _check_abort(run, should_abort)

        run.transition(LoopState.INSPECTING_OUTPUT)
        calls = parse_tool_calls(result.content) if has_tools else []

        if not calls:
            if prepared.forced_tool and has_tool_call_intent(result.content):
                logger.info(f"Malformed tool call on iteration {run.iteration}, asking model to retry")
                run.transition(LoopState.FORCING_RETRY)
                run.append({"role": "assistant", "content": result.content})
                run.append({"role": "user", "content": correction_prompt(prepared.forced_tool_name)})
                continue

            run.transition(LoopState.DONE)
            logger.info(f"Run complete after {run.iteration} iteration(s)")
            return run

        run.transition(LoopState.EXECUTING_TOOLS)
        logger.info(f"Iteration {run.iteration}: {len(calls)} tool call(s): {[c.name for c in calls]}")

        run.append({
            "role": "assistant",
            "content": result.content,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in calls
            ],
        })

        results = await executor.execute_all(calls)
        await _check_abort(run, should_abort)

        for call in calls:
            run.append({
                "role": "tool",
                "tool_call_id": call.id,
                "content": results.get(call.id, "{}"),
            })

    run.transition(LoopState.ITERATION_CAP)
    logger.warning(f"Tool iteration cap ({max_iterations}) reached, returning last reply")
    return run
