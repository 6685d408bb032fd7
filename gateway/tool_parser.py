"""
Tool-call extraction from free-form model output.

Models without native function calling are asked to answer with a JSON
envelope such as {"name": "get_weather", "arguments": {"location": "Rome"}}.
The reply may wrap that envelope in prose or code fences, so extraction
scans for balanced-brace spans and validates each one on its own.
"""

import json
import logging
import re
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import ParsedToolCall

logger = logging.getLogger(__name__)

# An envelope may hold one level of nested objects (the arguments).
MAX_BRACE_DEPTH = 2

_NAME_RE = re.compile(r'"name"\s*:\s*"([^"]+)"')
_ARGS_KEY_RE = re.compile(r'"arguments"\s*:\s*')
_JSON_STRING_RE = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)
_INTENT_RE = re.compile(r'"name"\s*:\s*"[^"]+"\s*,\s*"arguments"')
_INTENT_TOKENS = ("tool_call", "function_call")


def generate_tool_call_id() -> str:
    """Generate a unique tool call ID."""
    return f"call_{uuid.uuid4().hex[:24]}"


def _balanced_span(text: str, start: int, max_depth: int) -> Optional[int]:
    """
    Return the end index (exclusive) of the object opening at text[start].

    Braces inside JSON strings are ignored. Returns None when the object is
    unterminated or nests deeper than max_depth.
    """
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
            if depth > max_depth:
                return None
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1

    return None


def iter_json_candidates(text: str, max_depth: int = MAX_BRACE_DEPTH) -> Iterator[str]:
    """
    Yield balanced-brace substrings of text, left to right.

    A span that nests too deeply is skipped and scanning resumes just after
    its opening brace, so shallower objects inside it are still found.
    """
    pos = 0
    while True:
        start = text.find("{", pos)
        if start == -1:
            return
        end = _balanced_span(text, start, max_depth)
        if end is None:
            pos = start + 1
            continue
        yield text[start:end]
        pos = end


def _normalize_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        if isinstance(decoded, dict):
            return decoded
        return {"raw": decoded}
    return None


def _parse_candidate(candidate: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Extract (name, arguments) from one candidate span, or None."""
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        obj = None

    if isinstance(obj, dict):
        name = obj.get("name")
        if not isinstance(name, str) or not name or "arguments" not in obj:
            return None
        arguments = _normalize_arguments(obj["arguments"])
        if arguments is None:
            return None
        return name, arguments

    # Lenient path for spans that are not strict JSON as a whole
    name_match = _NAME_RE.search(candidate)
    args_match = _ARGS_KEY_RE.search(candidate)
    if not name_match or not args_match:
        return None

    value_start = args_match.end()
    if candidate.startswith("{", value_start):
        value_end = _balanced_span(candidate, value_start, MAX_BRACE_DEPTH - 1)
    else:
        string_match = _JSON_STRING_RE.match(candidate, value_start)
        value_end = string_match.end() if string_match else None
    if value_end is None:
        return None

    try:
        raw_args = json.loads(candidate[value_start:value_end])
    except json.JSONDecodeError:
        return None
    arguments = _normalize_arguments(raw_args)
    if arguments is None:
        return None
    return name_match.group(1), arguments


def parse_tool_calls(text: str) -> List[ParsedToolCall]:
    """
    Extract tool calls from assistant text.

    Each candidate must carry a string "name" and an "arguments" object (or a
    JSON-encoded object string). Malformed candidates are skipped. Only the
    first call per tool name is kept.
    """
    calls: List[ParsedToolCall] = []
    seen = set()

    if not text:
        return calls

    for candidate in iter_json_candidates(text):
        parsed = _parse_candidate(candidate)
        if parsed is None:
            continue

        name, arguments = parsed
        if name in seen:
            logger.debug(f"Dropping duplicate call to {name}")
            continue
        seen.add(name)

        calls.append(ParsedToolCall(
            id=generate_tool_call_id(),
            name=name,
            arguments=arguments,
        ))

    return calls


def has_tool_call_intent(text: str) -> bool:
    """Check if the model output looks like it's trying to call a tool."""
    if not text:
        return False
    if _INTENT_RE.search(text):
        return True
    lowered = text.lower()
    return any(token in lowered for token in _INTENT_TOKENS)
