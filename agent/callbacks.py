"""Caller-supplied callbacks for one agent run.

All callbacks are optional and may be sync or async. Notification hooks
(on_stream, on_tool_suggested, on_tool_executed, on_complete, on_error,
on_compaction_start, on_compaction_complete) are fire-and-continue: errors in
them are logged and never block the loop. The two decision points,
``confirm_tool`` and ``on_tool_error``, are awaited and their errors
propagate.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

SKIP = "skip"
RETRY = "retry"
REGENERATE = "regenerate"
ERROR_RESOLUTIONS = (SKIP, RETRY, REGENERATE)


@dataclass
class AgentCallbacks:
    on_stream: Optional[Callable[[str], Any]] = None
    on_tool_suggested: Optional[Callable[[list], Any]] = None
    confirm_tool: Optional[Callable[[Any], Any]] = None
    on_tool_executed: Optional[Callable[[str, Any], Any]] = None
    on_tool_error: Optional[Callable[[str, str], Any]] = None
    on_complete: Optional[Callable[[str], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    on_compaction_start: Optional[Callable[[], Any]] = None
    on_compaction_complete: Optional[Callable[[], Any]] = None


async def emit(hook: Optional[Callable], *args) -> None:
    """Fire a notification hook, logging and ignoring its errors."""
    if hook is None:
        return
    try:
        result = hook(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        logger.warning("Error in callback %s: %s", getattr(hook, "__name__", repr(hook)), e)


async def decide(hook: Callable, *args) -> Any:
    """Call a decision callback; errors propagate to the caller."""
    result = hook(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


def normalize_resolution(value: Any) -> str:
    """Map an on_tool_error answer onto skip | retry | regenerate."""
    text = str(getattr(value, "value", value) or "").strip().lower()
    if text in ERROR_RESOLUTIONS:
        return text
    logger.debug("Unrecognized tool error resolution %r, treating as skip", value)
    return SKIP
