"""Tool-call detection and dispatch.

Tool calls reach the agent through two channels at once:

- structured: the provider's native function-calling field, OpenAI shape
  ``{"id", "type": "function", "function": {"name", "arguments"}}``
- embedded: a wrapper inside the response text

      <use_mcp_tool>
      <tool_name>get_weather</tool_name>
      <arguments>{"city": "Oslo"}</arguments>
      </use_mcp_tool>

Both are parsed independently and merged into one ordered list per turn;
every request keeps its ``source`` so logs can tell them apart. Arguments
that are not valid JSON become ``{"input": raw_text}``.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000

_WRAPPER_RE = re.compile(r"<use_mcp_tool>([\s\S]*?)</use_mcp_tool>")
_TOOL_NAME_RE = re.compile(r"<tool_name>([\s\S]*?)</tool_name>")
_ARGUMENTS_RE = re.compile(r"<arguments>([\s\S]*?)</arguments>")


class ToolCallSource(str, Enum):
    STRUCTURED = "structured"
    EMBEDDED = "embedded"


@dataclass(frozen=True)
class ToolCallRequest:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    source: ToolCallSource = ToolCallSource.STRUCTURED
    call_id: str = ""
    raw_text: str = ""

    def signature(self) -> str:
        return self.name + ":" + json.dumps(self.arguments, sort_keys=True, default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "arguments": dict(self.arguments),
            "source": self.source.value,
            "call_id": self.call_id,
        }


@dataclass
class ToolExecutionOutcome:
    tool_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    call_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"tool_name": self.tool_name, "success": self.success, "duration": round(self.duration, 3)}
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
        return data


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Lenient argument parsing shared by both channels."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if not isinstance(raw, str):
        return {"input": raw}
    text = raw.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"input": text}
    if isinstance(parsed, dict):
        return parsed
    return {"input": parsed}


def parse_structured_tool_calls(tool_calls: Optional[Iterable[Any]]) -> List[ToolCallRequest]:
    """Parse native tool-call objects. Entries without a name are dropped."""
    requests: List[ToolCallRequest] = []
    for tc in tool_calls or []:
        if not isinstance(tc, dict):
            continue
        function = tc.get("function") if isinstance(tc.get("function"), dict) else tc
        name = (function.get("name") or "").strip()
        if not name:
            logger.debug("Ignoring structured tool call without a name: %r", tc)
            continue
        raw_args = function.get("arguments")
        requests.append(ToolCallRequest(
            name=name,
            arguments=parse_arguments(raw_args),
            source=ToolCallSource.STRUCTURED,
            call_id=str(tc.get("id") or ""),
            raw_text=raw_args if isinstance(raw_args, str) else "",
        ))
    return requests


def parse_embedded_tool_calls(text: Optional[str]) -> List[ToolCallRequest]:
    """Parse ``<use_mcp_tool>`` wrappers in free text, in order of appearance."""
    if not text or "<use_mcp_tool>" not in text:
        return []
    requests: List[ToolCallRequest] = []
    for match in _WRAPPER_RE.finditer(text):
        body = match.group(1)
        name_match = _TOOL_NAME_RE.search(body)
        if not name_match or not name_match.group(1).strip():
            continue
        args_match = _ARGUMENTS_RE.search(body)
        requests.append(ToolCallRequest(
            name=name_match.group(1).strip(),
            arguments=parse_arguments(args_match.group(1) if args_match else None),
            source=ToolCallSource.EMBEDDED,
            raw_text=match.group(0),
        ))
    return requests


def detect_tool_calls(chunk: Any) -> List[ToolCallRequest]:
    """Tool calls carried by a single stream chunk, structured first."""
    return (
        parse_structured_tool_calls(getattr(chunk, "tool_calls", None))
        + parse_embedded_tool_calls(getattr(chunk, "delta", None))
    )


def merge_tool_calls(
    structured: Iterable[ToolCallRequest],
    embedded: Iterable[ToolCallRequest],
) -> List[ToolCallRequest]:
    """Structured calls first, then embedded ones not already requested natively."""
    merged = list(structured)
    seen = {req.signature() for req in merged}
    for req in embedded:
        if req.signature() in seen:
            logger.debug("Dropping embedded duplicate of structured call %s", req.name)
            continue
        seen.add(req.signature())
        merged.append(req)
    return merged


class ToolCallCollector:
    """Accumulates one turn's stream.

    Text deltas are concatenated; structured calls are keyed by call id so a
    provider re-sending a call does not duplicate it. Embedded wrappers are
    parsed from the full turn text once the stream ends, since a wrapper may
    span several chunks.
    """

    def __init__(self):
        self._text_parts: List[str] = []
        self._structured: Dict[str, ToolCallRequest] = {}
        self.completed = False

    def add_chunk(self, chunk: Any) -> None:
        delta = getattr(chunk, "delta", None)
        if delta:
            self._text_parts.append(delta)
        for req in parse_structured_tool_calls(getattr(chunk, "tool_calls", None)):
            key = req.call_id or req.signature()
            self._structured[key] = req
        if getattr(chunk, "is_complete", False):
            self.completed = True

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    def requests(self) -> List[ToolCallRequest]:
        return merge_tool_calls(self._structured.values(), parse_embedded_tool_calls(self.text))


def format_tool_result(result: Any, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    """Render a tool result for reinjection, truncating oversized output."""
    if isinstance(result, str):
        content = result
    else:
        content = json.dumps(result, indent=2, ensure_ascii=False, default=str)
    if len(content) > max_chars:
        original_len = len(content)
        content = (
            content[:max_chars]
            + f"\n\n[Truncated: tool response was {original_len:,} chars, "
            f"exceeding the {max_chars:,} char limit]"
        )
    return content


class ToolCoordinator:
    """Dispatches tool calls to a catalog and tracks their status.

    The catalog needs ``__contains__`` and ``async execute_tool(name, args)``.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __init__(self, catalog: Optional[Any] = None):
        self.catalog = catalog
        self.status: Dict[str, str] = {}
        self.outcomes: List[ToolExecutionOutcome] = []

    def tool_schemas(self) -> List[Dict[str, Any]]:
        if self.catalog is None:
            return []
        return self.catalog.schemas()

    def tool_specs(self) -> List[Any]:
        if self.catalog is None:
            return []
        return self.catalog.specs()

    def mark_pending(self, requests: Iterable[ToolCallRequest]) -> None:
        for req in requests:
            self.status[req.call_id or req.signature()] = self.PENDING

    async def execute(self, name: str, args: Optional[Dict[str, Any]] = None, call_id: str = "") -> ToolExecutionOutcome:
        key = call_id or f"{name}:{json.dumps(args or {}, sort_keys=True, default=str)}"
        self.status[key] = self.RUNNING
        start = time.monotonic()

        if self.catalog is None or name not in self.catalog:
            outcome = ToolExecutionOutcome(tool_name=name, success=False, error=f"Tool not found: {name}", call_id=call_id)
        else:
            try:
                raw = await self.catalog.execute_tool(name, dict(args or {}))
            except Exception as e:
                logger.warning("Catalog raised while executing %s: %s", name, e)
                raw = {"success": False, "error": f"Tool execution error: {e}"}
            if raw.get("success"):
                outcome = ToolExecutionOutcome(tool_name=name, success=True, result=raw.get("result"), call_id=call_id)
            else:
                outcome = ToolExecutionOutcome(
                    tool_name=name, success=False, error=str(raw.get("error") or "Unknown error"), call_id=call_id,
                )

        outcome.duration = time.monotonic() - start
        self.status[key] = self.SUCCEEDED if outcome.success else self.FAILED
        self.outcomes.append(outcome)
        logger.debug(
            "Tool %s %s in %.2fs", name, "succeeded" if outcome.success else f"failed: {outcome.error}", outcome.duration,
        )
        return outcome
