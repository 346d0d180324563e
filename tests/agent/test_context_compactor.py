"""Tests for agent.context_compactor -- split, summarize, persist, degrade.

Run with:
    python -m pytest tests/agent/test_context_compactor.py -v
"""

import asyncio

import pytest

from agent.context_compactor import (
    SUMMARY_PREFIX,
    SUMMARY_SUFFIX,
    CompactionPolicy,
    ConversationCompactor,
    format_transcript,
)
from agent.memory_store import InMemoryMemoryStore
from agent.messages import ConversationMessage, FilePart, ImagePart, TextPart
from agent.model_metadata import estimate_tokens_for_messages
from tests.fakes.fake_provider import ScriptedProvider, turn


def _conversation(n, size=200):
    msgs = []
    for i in range(n):
        factory = ConversationMessage.user if i % 2 == 0 else ConversationMessage.assistant
        msgs.append(factory(f"message {i} " + "w" * size))
    return msgs


def _policy(**overrides):
    values = dict(trigger_token_threshold=500, target_token_count=200, preserve_recent_count=4)
    values.update(overrides)
    return CompactionPolicy(**values)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestFormatTranscript:
    def test_roles_and_placeholders(self):
        msgs = [
            ConversationMessage.user((TextPart("look"), ImagePart(url="u"), FilePart(filename="a.pdf"))),
            ConversationMessage.assistant("A diagram."),
        ]
        transcript = format_transcript(msgs)
        assert transcript == "User: look [image] [file: a.pdf]\n\nAssistant: A diagram."


class TestShouldCompact:
    def test_threshold(self):
        compactor = ConversationCompactor(_policy(trigger_token_threshold=100))
        assert not compactor.should_compact([ConversationMessage.user("short")])
        assert compactor.should_compact(_conversation(4))


class TestSplit:
    def test_keeps_tail(self):
        msgs = _conversation(10)
        to_summarize, to_keep = ConversationCompactor(_policy()).split(msgs)
        assert to_summarize == msgs[:6]
        assert to_keep == msgs[6:]

    def test_fewer_messages_than_tail(self):
        msgs = _conversation(3)
        to_summarize, to_keep = ConversationCompactor(_policy()).split(msgs)
        assert to_summarize == []
        assert to_keep == msgs

    def test_zero_preserved(self):
        msgs = _conversation(3)
        to_summarize, to_keep = ConversationCompactor(_policy(preserve_recent_count=0)).split(msgs)
        assert to_summarize == msgs
        assert to_keep == []


class TestResolveSummarizer:
    def test_named_ref_wins(self):
        a, b = ScriptedProvider([]), ScriptedProvider([])
        compactor = ConversationCompactor(_policy(summarizer_model="b"), summarizers={"a": a, "b": b})
        assert compactor.resolve_summarizer() is b

    def test_first_entry_then_provider(self):
        a, own = ScriptedProvider([]), ScriptedProvider([])
        assert ConversationCompactor(_policy(), provider=own, summarizers={"a": a}).resolve_summarizer() is a
        assert ConversationCompactor(_policy(summarizer_model="missing"), provider=own).resolve_summarizer() is own


# ---------------------------------------------------------------------------
# compact()
# ---------------------------------------------------------------------------

class TestCompact:
    @pytest.mark.asyncio
    async def test_summary_plus_identical_tail(self):
        msgs = _conversation(12)
        summarizer = ScriptedProvider([turn("The user and assistant exchanged twelve messages.")])
        compactor = ConversationCompactor(_policy(), provider=summarizer)

        compacted = await compactor.compact(msgs)

        assert len(compacted) == 5
        summary = compacted[0]
        assert summary.role == "user"
        assert summary.text.startswith(SUMMARY_PREFIX)
        assert summary.text.endswith(SUMMARY_SUFFIX)
        assert summary.metadata == {"compaction_summary": True, "summarized_count": 8}
        for kept, original in zip(compacted[1:], msgs[-4:]):
            assert kept is original
        assert compactor.compaction_count == 1

    @pytest.mark.asyncio
    async def test_summarizer_request(self):
        msgs = _conversation(6)
        summarizer = ScriptedProvider([turn("sum")])
        await ConversationCompactor(_policy(target_token_count=321), provider=summarizer).compact(msgs)

        call = summarizer.calls[0]
        assert len(call["messages"]) == 1
        assert "message 0" in call["messages"][0].text
        assert "message 5" not in call["messages"][0].text
        assert "321" in call["system_prompt"]
        assert call["tools"] is None

    @pytest.mark.asyncio
    async def test_size_bound(self):
        msgs = _conversation(30, size=400)
        long_summary = "detail " * 2000
        policy = _policy(target_token_count=300)
        compacted = await ConversationCompactor(policy, provider=ScriptedProvider([turn(long_summary)])).compact(msgs)

        tail_cost = estimate_tokens_for_messages(msgs[-4:])
        assert estimate_tokens_for_messages(compacted) <= policy.target_token_count + tail_cost

    @pytest.mark.asyncio
    async def test_persists_compacted_history(self):
        store = InMemoryMemoryStore()
        msgs = _conversation(8)
        compactor = ConversationCompactor(_policy(), provider=ScriptedProvider([turn("sum")]), memory_store=store)

        compacted = await compactor.compact(msgs, thread_id="t1", resource_id="u1")

        assert await store.get_conversation_messages("t1") == compacted

    @pytest.mark.asyncio
    async def test_failure_returns_original(self):
        msgs = _conversation(8)
        compactor = ConversationCompactor(_policy(), provider=ScriptedProvider([TimeoutError("slow")]))
        assert await compactor.compact(msgs) == msgs
        assert compactor.compaction_count == 0

    @pytest.mark.asyncio
    async def test_empty_summary_returns_original(self):
        msgs = _conversation(8)
        compactor = ConversationCompactor(_policy(), provider=ScriptedProvider([turn("   ")]))
        assert await compactor.compact(msgs) == msgs

    @pytest.mark.asyncio
    async def test_no_summarizer_returns_original(self):
        msgs = _conversation(8)
        assert await ConversationCompactor(_policy()).compact(msgs) == msgs

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self):
        summarizer = ScriptedProvider([])
        msgs = _conversation(2)
        assert await ConversationCompactor(_policy(), provider=summarizer).compact(msgs) == msgs
        assert summarizer.call_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        cancel = asyncio.Event()
        cancel.set()
        compactor = ConversationCompactor(_policy(), provider=ScriptedProvider([turn("sum")]))
        with pytest.raises(InterruptedError):
            await compactor.compact(_conversation(8), cancel_event=cancel)

    def test_policy_to_dict(self):
        assert _policy(summarizer_model="cheap").to_dict() == {
            "trigger_token_threshold": 500,
            "target_token_count": 200,
            "preserve_recent_count": 4,
            "summarizer_model": "cheap",
        }
