"""Hidden working-memory update markers.

The system prompt asks the model to end a response with

    [MEMORY_UPDATE]
    - Name: Ada
    - Location: Oslo
    [/MEMORY_UPDATE]

whenever it learns durable facts about the user. The markers are stripped
from displayed text, and after a completed run their lines are merged into
the stored working memory.
"""

import logging
import re
from typing import List, Optional

logger = logging.getLogger(__name__)

MEMORY_OPEN = "[MEMORY_UPDATE]"
MEMORY_CLOSE = "[/MEMORY_UPDATE]"

_MARKER_RE = re.compile(r"\[MEMORY_UPDATE\]([\s\S]*?)\[/MEMORY_UPDATE\]")


def extract_memory_updates(text: str) -> List[str]:
    """Bodies of every complete marker, stripped, empty ones dropped."""
    if not text:
        return []
    return [body.strip() for body in _MARKER_RE.findall(text) if body.strip()]


def strip_memory_markers(text: str) -> str:
    """Remove complete markers and truncate at a trailing incomplete one.

    The truncation keeps a half-streamed marker from flashing on screen.
    """
    if not text:
        return ""
    cleaned = _MARKER_RE.sub("", text)
    incomplete = cleaned.find(MEMORY_OPEN)
    if incomplete != -1:
        cleaned = cleaned[:incomplete]
    return cleaned.strip()


def merge_working_memory(existing: Optional[str], updates: List[str]) -> str:
    """Append new update lines to existing working memory.

    Lines are compared after whitespace normalisation; order is preserved and
    nothing already present is repeated.
    """
    lines = [line.rstrip() for line in (existing or "").splitlines() if line.strip()]
    seen = {" ".join(line.split()) for line in lines}
    for block in updates:
        for line in block.splitlines():
            key = " ".join(line.split())
            if not key or key in seen:
                continue
            seen.add(key)
            lines.append(line.strip())
    return "\n".join(lines)


async def apply_memory_updates(store, thread_id: str, resource_id: Optional[str], response_text: str) -> bool:
    """Merge markers found in ``response_text`` into the store.

    Returns True when the stored working memory changed.
    """
    updates = extract_memory_updates(response_text)
    if not updates or store is None or not hasattr(store, "update_working_memory"):
        return False
    existing = await store.get_working_memory(thread_id, resource_id)
    merged = merge_working_memory(existing, updates)
    if merged == merge_working_memory(existing, []):
        return False
    await store.update_working_memory(thread_id, resource_id, merged)
    logger.info("Working memory updated for %s (%s update block(s))", resource_id or thread_id, len(updates))
    return True
