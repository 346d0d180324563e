"""Tests for agent.messages and agent.callbacks."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.callbacks import REGENERATE, RETRY, SKIP, decide, emit, normalize_resolution
from agent.messages import ConversationMessage, FilePart, ImagePart, TextPart


class TestConversationMessage:
    def test_factories(self):
        assert ConversationMessage.user("hi").role == "user"
        assert ConversationMessage.assistant("hi").role == "assistant"
        assert ConversationMessage.system("hi").role == "system"

    def test_invalid_role(self):
        with pytest.raises(ValueError):
            ConversationMessage(role="tool", content="x")

    def test_unique_ids(self):
        assert ConversationMessage.user("a").id != ConversationMessage.user("a").id

    def test_list_content_frozen(self):
        msg = ConversationMessage.user([TextPart("a"), ImagePart(url="u")])
        assert isinstance(msg.content, tuple)

    def test_text_joins_text_parts(self):
        msg = ConversationMessage.user((TextPart("a"), ImagePart(url="u"), TextPart("b")))
        assert msg.text == "a\nb"

    @pytest.mark.parametrize("content,expected", [
        ("hello", True),
        ("   ", False),
        ((TextPart(" "),), False),
        ((TextPart(""), ImagePart(url="u")), True),
        ((FilePart(filename="a.txt"),), True),
    ])
    def test_has_content(self, content, expected):
        assert ConversationMessage.user(content).has_content() is expected

    def test_dict_round_trip(self):
        msg = ConversationMessage.assistant(
            (TextPart("see file"), FilePart(filename="a.csv", text="1,2")), metadata={"turn": 2},
        )
        assert ConversationMessage.from_dict(msg.to_dict()) == msg

    def test_from_dict_defaults(self):
        msg = ConversationMessage.from_dict({"role": "user", "content": None})
        assert msg.content == ""
        assert msg.id


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_emit_sync_and_async(self):
        sync_hook = MagicMock()
        async_hook = AsyncMock()
        await emit(sync_hook, "a")
        await emit(async_hook, "b")
        await emit(None, "c")
        sync_hook.assert_called_once_with("a")
        async_hook.assert_awaited_once_with("b")

    @pytest.mark.asyncio
    async def test_emit_swallows_hook_errors(self):
        await emit(MagicMock(side_effect=RuntimeError("ui crashed")))

    @pytest.mark.asyncio
    async def test_decide_propagates(self):
        with pytest.raises(RuntimeError):
            await decide(AsyncMock(side_effect=RuntimeError("no answer")))
        assert await decide(AsyncMock(return_value="retry")) == "retry"

    @pytest.mark.parametrize("value,expected", [
        ("skip", SKIP),
        (" Retry ", RETRY),
        ("regenerate", REGENERATE),
        ("abort", SKIP),
        (None, SKIP),
    ])
    def test_normalize_resolution(self, value, expected):
        assert normalize_resolution(value) == expected
