"""Memory context assembly.

Resolves the working-memory text and the conversation history for one
request. History can live in two places, the memory store or the caller's
local session, and exactly one of them is used per request:

    1. working memory       -> store.get_working_memory(thread, resource)
    2. stored history       -> store.get_conversation_messages(thread), last N
    3. local session        -> only when (2) returned nothing, last N

Every store call is failure tolerant: an exception degrades to "no data" and
is logged, it never aborts the request.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from agent.messages import ConversationMessage

logger = logging.getLogger(__name__)

HISTORY_FROM_STORE = "store"
HISTORY_FROM_SESSION = "session"
HISTORY_NONE = "none"


class MemoryStore(Protocol):
    async def get_working_memory(self, thread_id: str, resource_id: Optional[str]) -> Optional[str]:
        ...

    async def get_conversation_messages(self, thread_id: str) -> List[ConversationMessage]:
        ...

    async def save_messages(
        self, thread_id: str, resource_id: Optional[str], messages: Sequence[ConversationMessage]
    ) -> None:
        ...

    async def update_working_memory(self, thread_id: str, resource_id: Optional[str], text: str) -> None:
        ...


@dataclass
class MemorySnapshot:
    working_memory: str = ""
    conversation_history: List[ConversationMessage] = field(default_factory=list)
    history_source: str = HISTORY_NONE


def truncate_history(messages: Sequence[ConversationMessage], limit: int) -> List[ConversationMessage]:
    """Keep the most recent ``limit`` messages."""
    if limit <= 0:
        return []
    return list(messages[-limit:])


class MemoryContextAssembler:
    """Builds a MemorySnapshot from a memory store and/or the local session."""

    def __init__(
        self,
        memory_store: Optional[MemoryStore] = None,
        *,
        enable_working_memory: bool = True,
        enable_conversation_history: bool = True,
        conversation_history_limit: int = 10,
    ):
        self.memory_store = memory_store
        self.enable_working_memory = enable_working_memory
        self.enable_conversation_history = enable_conversation_history
        self.conversation_history_limit = conversation_history_limit

    async def _read_working_memory(self, thread_id, resource_id) -> str:
        if not (self.enable_working_memory and self.memory_store is not None and thread_id):
            return ""
        try:
            text = await self.memory_store.get_working_memory(thread_id, resource_id)
        except Exception as e:
            logger.warning("Failed to read working memory for thread %s: %s", thread_id, e)
            return ""
        return text or ""

    async def _read_stored_history(self, thread_id) -> List[ConversationMessage]:
        if self.memory_store is None or not thread_id:
            return []
        try:
            messages = await self.memory_store.get_conversation_messages(thread_id)
        except Exception as e:
            logger.warning("Failed to read conversation history for thread %s: %s", thread_id, e)
            return []
        return list(messages or [])

    async def assemble(
        self,
        thread_id: Optional[str],
        resource_id: Optional[str] = None,
        session_messages: Optional[Sequence[ConversationMessage]] = None,
        current_message: Optional[ConversationMessage] = None,
    ) -> MemorySnapshot:
        """Resolve working memory and history for one request.

        ``session_messages`` is the locally held session, used only as a
        fallback. ``current_message`` (the message being composed) is never
        part of the returned history.
        """
        snapshot = MemorySnapshot(working_memory=await self._read_working_memory(thread_id, resource_id))

        if not self.enable_conversation_history:
            logger.debug("Conversation history disabled, snapshot has no history")
            return snapshot

        current_id = current_message.id if current_message is not None else None
        limit = self.conversation_history_limit

        stored = [m for m in await self._read_stored_history(thread_id) if m.id != current_id]
        if stored:
            snapshot.conversation_history = truncate_history(stored, limit)
            snapshot.history_source = HISTORY_FROM_STORE
        else:
            local = [m for m in (session_messages or []) if m.id != current_id]
            if local:
                snapshot.conversation_history = truncate_history(local, limit)
                snapshot.history_source = HISTORY_FROM_SESSION

        logger.debug(
            "Memory snapshot for thread %s: %s history messages from %s, working memory %s chars",
            thread_id, len(snapshot.conversation_history), snapshot.history_source,
            len(snapshot.working_memory),
        )
        return snapshot
