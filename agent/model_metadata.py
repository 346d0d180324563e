"""Model metadata, context lengths, and token estimation utilities.

Pure utility functions with no GuidedAgent dependency. Used by the
ConversationCompactor and run_agent.py for pre-flight budget checks.

The estimates are deliberately heuristic (~4 chars/token) but deterministic:
the same input always yields the same count, and adding a message never
lowers the total.
"""

import logging
import math
import os
import re
import time
from typing import Any, Dict, Iterable, Optional, Sequence

import requests

from agent.messages import ConversationMessage, FilePart, ImagePart, TextPart
from waypoint_constants import OPENROUTER_MODELS_URL

logger = logging.getLogger(__name__)

# Remote limits are keyed by model id and by canonical slug.
_remote_limits: Dict[str, int] = {}
_remote_limits_fetched_at: float = 0.0
REMOTE_LIMITS_TTL = 3600

# Floor for models we know nothing about; MODEL_CONTEXT_LENGTH overrides it.
SAFE_DEFAULT_CONTEXT_LENGTH = 8192

# Matched by substring in either direction, first hit wins, so more specific
# names come before their prefixes.
KNOWN_CONTEXT_LENGTHS = {
    "anthropic/claude-opus-4": 200000,
    "anthropic/claude-sonnet-4": 200000,
    "anthropic/claude-haiku-4.5": 200000,
    "claude-3-5-sonnet": 200000,
    "openai/gpt-4o-mini": 128000,
    "openai/gpt-4o": 128000,
    "openai/gpt-4-turbo": 128000,
    "gpt-4.1": 1047576,
    "google/gemini-2.5-pro": 1048576,
    "google/gemini-2.0-flash": 1048576,
    "meta-llama/llama-3.3-70b-instruct": 131072,
    "deepseek/deepseek-chat-v3": 65536,
    "qwen/qwen-2.5-72b-instruct": 32768,
    "moonshotai/kimi-k2": 131072,
}

TOKENS_PER_CHAR_TEXT = 0.25
TOKENS_PER_CHAR_CODE = 0.3
TOKENS_PER_IMAGE = 765
TOKENS_PER_FILE = 100
TOKENS_PER_TOOL = 100
MESSAGE_BASE_TOKENS = 4
MESSAGE_STRUCTURE_TOKENS = 2
SYSTEM_PROMPT_OVERHEAD = 10
RESPONSE_BUFFER_TOKENS = 8000

_CODE_PATTERNS = [
    re.compile(r"function\s+\w+\s*\("),
    re.compile(r"\bdef\s+\w+\s*\("),
    re.compile(r"class\s+\w+"),
    re.compile(r"\bfrom\s+[\w.]+\s+import\b"),
    re.compile(r"\bimport\s+[\w*{},\s]{1,200}?\bfrom\b"),
    re.compile(r"(const|let|var)\s+\w+\s*="),
    re.compile(r"(if|for|while)\s*\([^()\n]{1,200}\)\s*\{"),
    # Innermost brace pair; one exists whenever any "{" precedes a "}".
    re.compile(r"\{[^{}]*\}"),
    re.compile(r"```[^`]*```"),
]

# CJK ideographs, kana and hangul tokenise at roughly one token per char.
_CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]")

# Tokenizers trained on large Chinese corpora pack CJK text tighter.
CJK_TOKEN_WEIGHTS = {
    "qwen": 0.6,
    "deepseek": 0.6,
    "moonshotai": 0.6,
    "kimi": 0.6,
    "glm": 0.6,
}


def cjk_token_weight(model_name: Optional[str]) -> float:
    """Extra tokens per CJK character for ``model_name``'s tokenizer family."""
    if model_name:
        lowered = model_name.lower()
        for family, weight in CJK_TOKEN_WEIGHTS.items():
            if family in lowered:
                return weight
    return 1.0


def _fallback_context_length() -> int:
    raw = os.getenv("MODEL_CONTEXT_LENGTH")
    if not raw:
        return SAFE_DEFAULT_CONTEXT_LENGTH
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer MODEL_CONTEXT_LENGTH=%r", raw)
        return SAFE_DEFAULT_CONTEXT_LENGTH


def fetch_remote_limits(force_refresh: bool = False) -> Dict[str, int]:
    """Context lengths from the OpenRouter model list, refreshed hourly.

    A failed refresh keeps serving the previous result (or nothing).
    """
    global _remote_limits, _remote_limits_fetched_at

    fresh = (time.time() - _remote_limits_fetched_at) < REMOTE_LIMITS_TTL
    if _remote_limits and fresh and not force_refresh:
        return _remote_limits

    try:
        response = requests.get(OPENROUTER_MODELS_URL, timeout=10)
        response.raise_for_status()
        entries = response.json().get("data", [])
    except Exception as e:
        logger.warning("Could not refresh model limits from %s: %s", OPENROUTER_MODELS_URL, e)
        return _remote_limits

    limits: Dict[str, int] = {}
    for entry in entries:
        length = entry.get("context_length")
        if not isinstance(length, int) or length <= 0:
            continue
        for key in (entry.get("id"), entry.get("canonical_slug")):
            if key:
                limits[key] = length

    _remote_limits = limits
    _remote_limits_fetched_at = time.time()
    logger.debug("Loaded context lengths for %s models", len(limits))
    return limits


def get_model_limit(model: Optional[str], use_remote_metadata: bool = False) -> int:
    """Context window size for ``model``.

    Lookup order: remote list (only with ``use_remote_metadata``), the
    KNOWN_CONTEXT_LENGTHS table, then MODEL_CONTEXT_LENGTH or the 8192 floor.
    """
    if model:
        if use_remote_metadata:
            remote = fetch_remote_limits().get(model)
            if remote:
                return remote
        for known, length in KNOWN_CONTEXT_LENGTHS.items():
            if known in model or model in known:
                return length

    fallback = _fallback_context_length()
    if model:
        logger.warning("No context length known for %s, assuming %s tokens", model, f"{fallback:,}")
    return fallback


def _looks_like_code(text: str) -> bool:
    return any(pattern.search(text) for pattern in _CODE_PATTERNS)


def estimate_tokens_for_text(text: str, model_name: Optional[str] = None) -> int:
    if not text:
        return 0
    ratio = TOKENS_PER_CHAR_CODE if _looks_like_code(text) else TOKENS_PER_CHAR_TEXT
    cjk_chars = len(_CJK_RE.findall(text))
    return math.ceil(len(text) * ratio) + math.ceil(cjk_chars * cjk_token_weight(model_name))


def estimate_tokens_for_message(message: ConversationMessage, model_name: Optional[str] = None) -> int:
    tokens = MESSAGE_BASE_TOKENS
    if isinstance(message.content, str):
        return tokens + estimate_tokens_for_text(message.content, model_name)
    for part in message.content:
        if isinstance(part, TextPart):
            tokens += estimate_tokens_for_text(part.text, model_name)
        elif isinstance(part, ImagePart):
            tokens += TOKENS_PER_IMAGE
        elif isinstance(part, FilePart):
            tokens += TOKENS_PER_FILE + estimate_tokens_for_text(part.text, model_name)
    return tokens


def estimate_tokens_for_messages(messages: Iterable[ConversationMessage], model_name: Optional[str] = None) -> int:
    return sum(
        estimate_tokens_for_message(msg, model_name) + MESSAGE_STRUCTURE_TOKENS
        for msg in messages
    )


def estimate_tokens_for_context(system_prompt: Optional[str], model_name: Optional[str] = None) -> int:
    if not system_prompt:
        return 0
    return estimate_tokens_for_text(system_prompt, model_name) + SYSTEM_PROMPT_OVERHEAD


def estimate_tokens_for_tools(tool_schemas: Optional[Sequence[Any]]) -> int:
    if not tool_schemas:
        return 0
    return len(tool_schemas) * TOKENS_PER_TOOL


def estimate_tokens(
    messages: Sequence[ConversationMessage],
    system_prompt: Optional[str] = None,
    tool_schemas: Optional[Sequence[Any]] = None,
    model_name: Optional[str] = None,
) -> int:
    """Estimate the prompt size of a full request.

    ``model_name`` selects the CJK weight (see CJK_TOKEN_WEIGHTS); unknown
    or missing models use one extra token per CJK character.
    """
    return (
        estimate_tokens_for_messages(messages, model_name)
        + estimate_tokens_for_context(system_prompt, model_name)
        + estimate_tokens_for_tools(tool_schemas)
    )


def is_over_limit(
    messages: Sequence[ConversationMessage],
    system_prompt: Optional[str] = None,
    tool_schemas: Optional[Sequence[Any]] = None,
    model_name: Optional[str] = None,
    *,
    use_remote_metadata: bool = False,
) -> bool:
    """True when the request plus a response buffer exceeds the model's window."""
    limit = get_model_limit(model_name, use_remote_metadata=use_remote_metadata)
    buffer = min(RESPONSE_BUFFER_TOKENS, limit // 4)
    total = estimate_tokens(messages, system_prompt, tool_schemas, model_name)
    logger.debug("Token budget check: %s + %s buffer vs limit %s", total, buffer, limit)
    return total + buffer > limit


def format_token_usage(token_count: int) -> str:
    if token_count < 1000:
        return f"{token_count} tokens"
    if token_count < 10000:
        return f"{token_count / 1000:.1f}K tokens"
    return f"{token_count / 1000:.0f}K tokens"


def get_token_warning_level(token_count: int, limit: int) -> str:
    """Classify usage against a limit as 'safe', 'warning' or 'critical'."""
    ratio = token_count / limit if limit > 0 else 1.0
    if ratio < 0.7:
        return "safe"
    if ratio < 0.9:
        return "warning"
    return "critical"

