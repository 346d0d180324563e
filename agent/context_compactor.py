"""Pre-send conversation compaction.

When a request's estimated size crosses ``trigger_token_threshold`` the older
part of the conversation is summarized by an LLM and replaced with a single
synthetic message; the most recent ``preserve_recent_count`` messages are
kept untouched. Compaction only ever runs before the first turn of a request.

Any summarizer failure returns the original message list unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from agent.messages import ConversationMessage, FilePart, ImagePart, TextPart
from agent.model_metadata import (
    MESSAGE_STRUCTURE_TOKENS,
    estimate_tokens,
    estimate_tokens_for_message,
    estimate_tokens_for_messages,
)

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = (
    "[Conversation History Summary]\n"
    "The following is a summary of earlier conversation history to save context space:\n\n"
)
SUMMARY_SUFFIX = "\n\n[End of Summary - Recent messages follow]"

COMPACTION_PROMPT = """You are a conversation summarization assistant. Your task is to create a concise but comprehensive summary of a conversation history.

Your summary should:
1. Capture all key topics discussed and decisions made
2. Preserve important facts, data, and user preferences mentioned
3. Maintain chronological flow where relevant
4. Focus on information that would be useful for continuing the conversation
5. Be formatted as a narrative summary (not bullet points unless necessary)

Guidelines:
- Preserve specific details like names, numbers, dates, and technical terms
- Include any user instructions or preferences stated
- Note any unresolved questions or pending tasks
- Omit redundant pleasantries and filler
- Keep the summary under roughly {target_tokens} tokens

Provide only the summary text without any meta-commentary."""


@dataclass
class CompactionPolicy:
    trigger_token_threshold: int = 65536
    target_token_count: int = 4000
    preserve_recent_count: int = 4
    summarizer_model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_token_threshold": self.trigger_token_threshold,
            "target_token_count": self.target_token_count,
            "preserve_recent_count": self.preserve_recent_count,
            "summarizer_model": self.summarizer_model,
        }


def format_transcript(messages: Sequence[ConversationMessage]) -> str:
    """Render messages as ``Role: text`` blocks for the summarizer."""
    blocks = []
    for msg in messages:
        if isinstance(msg.content, str):
            content = msg.content
        else:
            pieces = []
            for part in msg.content:
                if isinstance(part, TextPart):
                    pieces.append(part.text)
                elif isinstance(part, ImagePart):
                    pieces.append("[image]")
                elif isinstance(part, FilePart):
                    pieces.append(f"[file: {part.filename}]")
            content = " ".join(pieces)
        blocks.append(f"{msg.role.capitalize()}: {content}")
    return "\n\n".join(blocks)


class ConversationCompactor:
    """Summarizes the older prefix of a conversation.

    Args:
        policy: Thresholds and summarizer selection.
        provider: Fallback summarizer, normally the agent's own provider.
        summarizers: Optional ``{model_ref: provider}`` mapping. The entry
            named by ``policy.summarizer_model`` wins, otherwise the first
            entry, otherwise ``provider``.
        memory_store: When given, compacted history is written back so the
            same prefix is not summarized again on the next request.
    """

    def __init__(
        self,
        policy: Optional[CompactionPolicy] = None,
        *,
        provider: Optional[Any] = None,
        summarizers: Optional[Mapping[str, Any]] = None,
        memory_store: Optional[Any] = None,
    ):
        self.policy = policy or CompactionPolicy()
        self.provider = provider
        self.summarizers = dict(summarizers or {})
        self.memory_store = memory_store
        self.compaction_count = 0

        if self.policy.target_token_count >= self.policy.trigger_token_threshold:
            logger.warning("target_token_count should be significantly lower than trigger_token_threshold")

    def should_compact(
        self,
        messages: Sequence[ConversationMessage],
        system_prompt: Optional[str] = None,
        tool_schemas: Optional[Sequence[Any]] = None,
        model_name: Optional[str] = None,
    ) -> bool:
        total = estimate_tokens(messages, system_prompt, tool_schemas, model_name)
        logger.debug("Compaction check: %s tokens vs threshold %s", total, self.policy.trigger_token_threshold)
        return total > self.policy.trigger_token_threshold

    def resolve_summarizer(self) -> Optional[Any]:
        ref = self.policy.summarizer_model
        if ref and ref in self.summarizers:
            return self.summarizers[ref]
        if self.summarizers:
            return next(iter(self.summarizers.values()))
        return self.provider

    def split(self, messages: Sequence[ConversationMessage]):
        """Return ``(to_summarize, to_keep)``."""
        keep = min(max(self.policy.preserve_recent_count, 0), len(messages))
        cut = len(messages) - keep
        return list(messages[:cut]), list(messages[cut:])

    async def summarize(self, messages: Sequence[ConversationMessage], cancel_event=None) -> str:
        summarizer = self.resolve_summarizer()
        if summarizer is None:
            raise RuntimeError("No summarizer provider configured")

        parts: List[str] = []

        def _collect(chunk):
            if chunk.delta:
                parts.append(chunk.delta)

        await summarizer.send_streaming_message(
            [ConversationMessage.user(format_transcript(messages))],
            _collect,
            cancel_event,
            None,
            COMPACTION_PROMPT.format(target_tokens=self.policy.target_token_count),
        )
        return "".join(parts).strip()

    def build_summary_message(self, summary: str, summarized_count: int) -> ConversationMessage:
        """Wrap a summary, trimming it so the message fits target_token_count."""
        budget = self.policy.target_token_count - MESSAGE_STRUCTURE_TOKENS
        text = summary
        while True:
            message = ConversationMessage.user(
                SUMMARY_PREFIX + text + SUMMARY_SUFFIX,
                metadata={"compaction_summary": True, "summarized_count": summarized_count},
            )
            cost = estimate_tokens_for_message(message)
            if cost <= budget or not text:
                return message
            keep = min(len(text) - 1, int(len(text) * budget / cost))
            text = text[:max(keep, 0)].rstrip()

    async def compact(
        self,
        messages: Sequence[ConversationMessage],
        *,
        thread_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        cancel_event=None,
    ) -> List[ConversationMessage]:
        """Return a shorter message list, or ``messages`` itself when nothing changed.

        Cancellation (InterruptedError) propagates; every other failure is
        logged and the original list is returned.
        """
        original = list(messages)
        to_summarize, to_keep = self.split(original)
        if not to_summarize:
            logger.debug("All %s messages are within the preserved tail, nothing to compact", len(original))
            return original

        before = estimate_tokens_for_messages(original)
        try:
            summary = await self.summarize(to_summarize, cancel_event)
        except InterruptedError:
            raise
        except Exception as e:
            logger.warning("Conversation compaction failed, continuing uncompacted: %s", e)
            return original

        if not summary:
            logger.warning("Summarizer returned an empty summary, continuing uncompacted")
            return original

        compacted = [self.build_summary_message(summary, len(to_summarize))] + to_keep
        self.compaction_count += 1
        after = estimate_tokens_for_messages(compacted)
        logger.info(
            "Compacted %s messages into a summary (%s -> %s tokens, %s recent kept)",
            len(to_summarize), before, after, len(to_keep),
        )

        if self.memory_store is not None and thread_id:
            try:
                await self.memory_store.save_messages(thread_id, resource_id, compacted)
            except Exception as e:
                logger.warning("Failed to persist compacted history for thread %s: %s", thread_id, e)

        return compacted
