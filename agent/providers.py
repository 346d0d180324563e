"""LLM provider transport.

The agent loop only depends on the ``LLMProvider`` protocol: a ``model``
attribute plus ``send_streaming_message()``, which calls ``on_chunk`` once per
streamed text delta and exactly once with ``is_complete=True`` at the end of a
successful stream. Errors are raised, never reported through a chunk.

``OpenAICompatibleProvider`` implements the protocol on top of the openai SDK
and works with OpenRouter or any OpenAI-compatible endpoint.
"""

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union

from openai import AsyncOpenAI

from agent.messages import ConversationMessage, FilePart, ImagePart, TextPart
from waypoint_constants import OPENROUTER_BASE_URL

logger = logging.getLogger(__name__)


@dataclass
class StreamChunk:
    """One unit of streamed model output.

    ``tool_calls`` uses the OpenAI shape::

        {"id": "call_1", "type": "function",
         "function": {"name": "get_weather", "arguments": "{\\"city\\": \\"Oslo\\"}"}}
    """

    delta: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    is_complete: bool = False


ChunkHandler = Callable[[StreamChunk], Union[None, Awaitable[None]]]


class LLMProvider(Protocol):
    model: str

    async def send_streaming_message(
        self,
        messages: Sequence[ConversationMessage],
        on_chunk: ChunkHandler,
        cancel_event: Optional[asyncio.Event] = None,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        ...


async def emit_chunk(on_chunk: ChunkHandler, chunk: StreamChunk) -> None:
    """Deliver a chunk to a sync or async handler."""
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result


def raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise InterruptedError("Streaming cancelled")


def _part_to_openai(part) -> Dict[str, Any]:
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.as_url()}}
    if isinstance(part, FilePart):
        body = part.text or f"(binary content, {part.media_type})"
        return {"type": "text", "text": f"[File: {part.filename}]\n{body}"}
    return {"type": "text", "text": part.text}


def to_openai_messages(
    messages: Sequence[ConversationMessage],
    system_prompt: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Convert conversation messages to chat-completions request messages."""
    api_messages: List[Dict[str, Any]] = []
    if system_prompt:
        api_messages.append({"role": "system", "content": system_prompt})
    for msg in messages:
        if isinstance(msg.content, str):
            content: Any = msg.content
        elif all(isinstance(p, TextPart) for p in msg.content):
            content = msg.text
        else:
            content = [_part_to_openai(p) for p in msg.content]
        api_messages.append({"role": msg.role, "content": content})
    return api_messages


def _is_client_error(error: Exception) -> bool:
    """4xx responses (except rate limits) will never succeed on retry."""
    status_code = getattr(error, "status_code", None)
    return isinstance(status_code, int) and 400 <= status_code < 500 and status_code != 429


async def _backoff_sleep(seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise InterruptedError("Streaming cancelled during retry backoff")


class OpenAICompatibleProvider:
    """Streaming chat-completions transport.

    Args:
        model: Model name sent with every request.
        api_key: Defaults to OPENROUTER_API_KEY, then OPENAI_API_KEY.
        base_url: Defaults to WAYPOINT_BASE_URL, then OpenRouter when an
            OpenRouter key is in use.
        client: Pre-built ``AsyncOpenAI`` client (mainly for tests).
        max_retries: Attempts after the first failure. Retries only happen
            before any delta has been delivered, so the caller never sees
            duplicated text.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[Any] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        temperature: Optional[float] = None,
    ):
        self.model = model
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.temperature = temperature

        if client is None:
            openrouter_key = os.getenv("OPENROUTER_API_KEY")
            api_key = api_key or openrouter_key or os.getenv("OPENAI_API_KEY")
            base_url = base_url or os.getenv("WAYPOINT_BASE_URL")
            if not base_url and openrouter_key and api_key == openrouter_key:
                base_url = OPENROUTER_BASE_URL
            client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._client = client

    def _build_request(self, messages, tools, system_prompt) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages, system_prompt),
            "stream": True,
        }
        if tools:
            kwargs["tools"] = list(tools)
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    async def send_streaming_message(
        self,
        messages: Sequence[ConversationMessage],
        on_chunk: ChunkHandler,
        cancel_event: Optional[asyncio.Event] = None,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        request = self._build_request(messages, tools, system_prompt)
        retry_count = 0

        while True:
            raise_if_cancelled(cancel_event)
            started = False
            try:
                stream = await self._client.chat.completions.create(**request)
                pending: Dict[int, Dict[str, Any]] = {}
                async with stream:
                    async for chunk in stream:
                        raise_if_cancelled(cancel_event)
                        if not chunk.choices:
                            continue
                        delta = chunk.choices[0].delta
                        if delta is None:
                            continue
                        for tc_delta in getattr(delta, "tool_calls", None) or []:
                            started = True
                            _merge_tool_call_delta(pending, tc_delta)
                        text = getattr(delta, "content", None)
                        if text:
                            started = True
                            await emit_chunk(on_chunk, StreamChunk(delta=text))

                tool_calls = [_finish_tool_call(pending[idx]) for idx in sorted(pending)]
                started = True
                await emit_chunk(on_chunk, StreamChunk(tool_calls=tool_calls or None, is_complete=True))
                return

            except InterruptedError:
                raise
            except Exception as api_error:
                retry_count += 1
                if started or retry_count > self.max_retries or _is_client_error(api_error):
                    logger.error(
                        "Streaming request to %s failed (attempt %s): %s",
                        self.model, retry_count, api_error,
                    )
                    raise
                wait_time = min(self.backoff_base * (2 ** (retry_count - 1)), 30)
                logger.warning(
                    "Streaming request failed (attempt %s/%s): %s. Retrying in %ss",
                    retry_count, self.max_retries, type(api_error).__name__, wait_time,
                )
                await _backoff_sleep(wait_time, cancel_event)


def _merge_tool_call_delta(pending: Dict[int, Dict[str, Any]], tc_delta: Any) -> None:
    idx = getattr(tc_delta, "index", None)
    if idx is None:
        idx = len(pending)
    entry = pending.setdefault(idx, {"id": "", "name": "", "arguments": ""})
    if getattr(tc_delta, "id", None):
        entry["id"] = tc_delta.id
    function = getattr(tc_delta, "function", None)
    if function is not None:
        if getattr(function, "name", None):
            entry["name"] += function.name
        if getattr(function, "arguments", None):
            entry["arguments"] += function.arguments


def _finish_tool_call(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": entry["id"],
        "type": "function",
        "function": {"name": entry["name"], "arguments": entry["arguments"] or "{}"},
    }
