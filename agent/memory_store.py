"""Concrete memory stores.

InMemoryMemoryStore keeps everything in dicts (tests, embedding).
JsonFileMemoryStore persists under a root directory:

    <root>/conversation_<thread>.json       -- {"thread_id", "resource_id", "updated_at", "messages": [...]}
    <root>/working_memory_<resource>.md     -- resource-scoped when a resource id is given,
    <root>/working_memory_<thread>.md       -- otherwise thread-scoped

Saves replace the whole thread (last writer wins).
"""

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from agent.messages import ConversationMessage
from waypoint_constants import WAYPOINT_HOME

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_name(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value) or "_"


def _working_memory_key(thread_id: str, resource_id: Optional[str]) -> str:
    return resource_id or thread_id


class InMemoryMemoryStore:
    def __init__(self):
        self._threads: Dict[str, List[ConversationMessage]] = {}
        self._working_memory: Dict[str, str] = {}

    async def get_working_memory(self, thread_id: str, resource_id: Optional[str]) -> Optional[str]:
        return self._working_memory.get(_working_memory_key(thread_id, resource_id))

    async def update_working_memory(self, thread_id: str, resource_id: Optional[str], text: str) -> None:
        self._working_memory[_working_memory_key(thread_id, resource_id)] = text

    async def get_conversation_messages(self, thread_id: str) -> List[ConversationMessage]:
        return list(self._threads.get(thread_id, []))

    async def save_messages(
        self, thread_id: str, resource_id: Optional[str], messages: Sequence[ConversationMessage]
    ) -> None:
        self._threads[thread_id] = list(messages)


class JsonFileMemoryStore:
    """File-backed store. Unreadable files degrade to "no data" with a warning."""

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root) if root else WAYPOINT_HOME / "memory"

    def conversation_path(self, thread_id: str) -> Path:
        return self.root / f"conversation_{_safe_name(thread_id)}.json"

    def working_memory_path(self, thread_id: str, resource_id: Optional[str]) -> Path:
        return self.root / f"working_memory_{_safe_name(_working_memory_key(thread_id, resource_id))}.md"

    def _atomic_write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp_", suffix=path.suffix)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def get_working_memory(self, thread_id: str, resource_id: Optional[str]) -> Optional[str]:
        path = self.working_memory_path(thread_id, resource_id)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read working memory %s: %s", path, e)
            return None

    async def update_working_memory(self, thread_id: str, resource_id: Optional[str], text: str) -> None:
        self._atomic_write(self.working_memory_path(thread_id, resource_id), text)

    async def get_conversation_messages(self, thread_id: str) -> List[ConversationMessage]:
        path = self.conversation_path(thread_id)
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            messages = [ConversationMessage.from_dict(m) for m in data.get("messages", [])]
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Could not read conversation file %s: %s", path, e)
            return []
        return messages

    async def save_messages(
        self, thread_id: str, resource_id: Optional[str], messages: Sequence[ConversationMessage]
    ) -> None:
        entry = {
            "thread_id": thread_id,
            "resource_id": resource_id,
            "updated_at": datetime.now().isoformat(),
            "message_count": len(messages),
            "messages": [m.to_dict() for m in messages],
        }
        self._atomic_write(
            self.conversation_path(thread_id),
            json.dumps(entry, indent=2, ensure_ascii=False, default=str),
        )
        logger.debug("Saved %s messages for thread %s", len(messages), thread_id)
