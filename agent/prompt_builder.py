"""Prompt text and small prompt helpers.

Everything here is plain strings or pure functions; PromptAssembler and the
agent loop combine them per request.
"""

import re
from typing import Any, Iterable, List, Optional, Sequence

# ---------------------------------------------------------------------------
# Working memory
# ---------------------------------------------------------------------------

MEMORY_UPDATE_PROTOCOL = (
    "**CRITICAL - Memory Update Protocol:**\n"
    "When the user shares personal information (name, preferences, interests, location, etc.), "
    "you MUST append a hidden memory update marker at the END of your response, AFTER all "
    "user-visible content. Format:\n\n"
    "[MEMORY_UPDATE]\n"
    "- Name: [user's name]\n"
    "- Location: [user's location]\n"
    "- Preferences: [any preferences]\n"
    "[/MEMORY_UPDATE]\n\n"
    "**IMPORTANT**: This marker will be automatically hidden from the user - do NOT explain or "
    "mention it in your visible response! Just respond naturally to the user, then add the "
    "marker at the end."
)


def build_working_memory_section(memory_text: Optional[str]) -> str:
    parts = ["## User Information (Working Memory)"]
    if memory_text and memory_text.strip():
        parts.append(
            "You have access to important information about this user that you should remember "
            "and reference when relevant. This information persists across ALL conversations:"
        )
        parts.append(memory_text.strip())
    parts.append(MEMORY_UPDATE_PROTOCOL)
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Mode instructions
# ---------------------------------------------------------------------------

GUIDED_MODE_PROMPT = """<role>
You are an AI assistant in **Guided Mode** - an interactive, step-by-step assistant.
Your goal is to guide the user through complex tasks by breaking them down into steps, providing clear options, and executing tools only when appropriate.
</role>
<response_logic>
You must choose one of two response types for every turn:

### Type 1: Provide Options (Decision Point)
Use this when you need user input or there are multiple ways to proceed.
1. **Brief Context**: One sentence acknowledging the situation.
2. **Guiding Question**: Ask what the user wants to do.
3. **Options**: Provide 2-4 options, one per line, each prefixed with `➤CHOICE:`.

### Type 2: Execute Tool (Action Point)
Use this when the user's intent is clear and a tool can fulfill it.
1. **Explanation**: One sentence explaining what you are about to do.
2. **Tool Call**: Call the tool, unless the information is already available in the context.
3. **Follow-up**: In the next turn, analyze the result and provide Type 1 options.
</response_logic>
<rules>
- Always explain why you are calling a tool before calling it.
- Never send an empty message.
- Never say "I will call X" without actually generating the tool call.
- Do not call a tool to fetch information that is already present in the context.
- If you have enough information, act instead of asking again.
</rules>"""

NORMAL_MODE_PROMPT = """You are a helpful AI assistant.

Answer directly without preamble or meta-commentary. Use the available tools when they are needed to answer accurately, and call them instead of describing what you would do. Do not repeat a tool call whose result is already in the conversation."""

MODE_PROMPTS = {
    "guided": GUIDED_MODE_PROMPT,
    "normal": NORMAL_MODE_PROMPT,
}

EMBEDDED_TOOL_CALL_FORMAT = """If native function calling is unavailable, request a tool with:
<use_mcp_tool>
<tool_name>tool_name_here</tool_name>
<arguments>{"param": "value"}</arguments>
</use_mcp_tool>"""


# ---------------------------------------------------------------------------
# Language
# ---------------------------------------------------------------------------

_KANA_RE = re.compile(r"[\u3040-\u30ff]")
_HANGUL_RE = re.compile(r"[\uac00-\ud7af\u1100-\u11ff]")
_HAN_RE = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf]")

LANGUAGE_NAMES = {
    "en": "ENGLISH",
    "zh": "CHINESE",
    "ja": "JAPANESE",
    "ko": "KOREAN",
}


def detect_user_language(text: Optional[str]) -> str:
    """Return 'ja', 'ko', 'zh' or 'en' from the characters present.

    Kana implies Japanese even when kanji are present; otherwise any Han
    ideograph means Chinese. Everything else defaults to English.
    """
    if not text or not text.strip():
        return "en"
    if _KANA_RE.search(text):
        return "ja"
    if _HANGUL_RE.search(text):
        return "ko"
    if _HAN_RE.search(text):
        return "zh"
    return "en"


def language_directive(language: str) -> str:
    """System-prompt directive pinning the reply language."""
    if language == "zh":
        return "**关键语言要求**：用户使用中文交流。你必须仅使用中文进行回复。严禁使用其他语言。"
    name = LANGUAGE_NAMES.get(language, "ENGLISH")
    return (
        f"**CRITICAL LANGUAGE REQUIREMENT**: The user is communicating in {name}. "
        f"You MUST respond EXCLUSIVELY in {name}. Do NOT use any other language."
    )


def result_language_reminder(language: str) -> str:
    """Reminder appended to successful tool results."""
    if language == "zh":
        return (
            "**关键语言要求**：用户使用中文交流。即使上方的工具执行结果包含其他语言（如英文），"
            "你也必须将信息整合并仅使用中文进行回复。在最终回复中严禁使用其他语言。"
        )
    name = LANGUAGE_NAMES.get(language, "ENGLISH")
    return (
        f"**CRITICAL LANGUAGE REQUIREMENT**: The user is communicating in {name}. Even if the tool "
        f"results above are in another language, you MUST synthesize the information and respond "
        f"EXCLUSIVELY in {name}. Do NOT use any other language in your final response."
    )


def failure_language_reminder(language: str) -> str:
    if language == "zh":
        return "**关键语言要求**：仅使用中文回复。"
    return f"**CRITICAL LANGUAGE REQUIREMENT**: Respond EXCLUSIVELY in {LANGUAGE_NAMES.get(language, 'ENGLISH')}."


RESULT_FORMAT_INSTRUCTION = """Please follow this format for your response:
1. First, write a brief execution summary message (1 sentence)
2. Then provide the next step or guidance based on this result with options if needed.

Make sure the execution summary is natural and describes what was accomplished."""


# ---------------------------------------------------------------------------
# Tool explanations (used when a turn requests tools without any text)
# ---------------------------------------------------------------------------

TOOL_EXPLANATIONS = {
    "en": {
        "fetch_web_content": "Fetching web content...",
        "web_search": "Searching the web...",
        "enhanced_search": "Searching the web...",
        "get_current_date": "Checking the current date...",
    },
    "zh": {
        "fetch_web_content": "正在获取网页内容...",
        "web_search": "正在搜索网络...",
        "enhanced_search": "正在搜索网络...",
        "get_current_date": "正在获取当前日期...",
    },
    "ja": {
        "fetch_web_content": "ウェブコンテンツを取得しています...",
        "web_search": "ウェブを検索しています...",
        "enhanced_search": "ウェブを検索しています...",
        "get_current_date": "現在の日付を確認しています...",
    },
    "ko": {
        "fetch_web_content": "웹 콘텐츠를 가져오는 중...",
        "web_search": "웹을 검색하는 중...",
        "enhanced_search": "웹을 검색하는 중...",
        "get_current_date": "현재 날짜를 확인하는 중...",
    },
}

_GENERIC_EXPLANATION = {
    "en": "Using tools: {tools}",
    "zh": "正在使用工具：{tools}",
    "ja": "ツールを使用しています：{tools}",
    "ko": "도구 사용 중: {tools}",
}


def explain_tool_calls(tool_names: Sequence[str], language: str = "en") -> str:
    """Short placeholder text for a turn that only requested tools."""
    canned = TOOL_EXPLANATIONS.get(language, TOOL_EXPLANATIONS["en"])
    for name in tool_names:
        if name in canned:
            return canned[name]
    template = _GENERIC_EXPLANATION.get(language, _GENERIC_EXPLANATION["en"])
    return template.format(tools=", ".join(tool_names) or "tools")


# ---------------------------------------------------------------------------
# Tool listing
# ---------------------------------------------------------------------------

def _describe_tool(spec: Any) -> str:
    lines = [f"## {spec.name}", spec.description or ""]
    properties = spec.parameters or {}
    if properties:
        required = set(spec.required or [])
        lines.append("### Parameters:")
        for param, schema in properties.items():
            label = "required" if param in required else "optional"
            desc = schema.get("description", "")
            lines.append(f"  - {param} ({label}): {schema.get('type', 'any')}{' - ' + desc if desc else ''}")
    output = spec.output_schema
    if output:
        lines.append("### Output Format:")
        if output.get("description"):
            lines.append(output["description"])
        if output.get("type") == "object" and output.get("properties"):
            lines.append("Returns object with fields:")
            for field_name, field_schema in output["properties"].items():
                desc = field_schema.get("description", "")
                lines.append(f"  - {field_name}: {field_schema.get('type', 'any')}{' - ' + desc if desc else ''}")
        elif output.get("type"):
            lines.append(f"Returns: {output['type']}")
    return "\n".join(line for line in lines if line)


def build_tools_prompt(specs: Iterable[Any]) -> str:
    """``<available_tools>`` block listing each tool's parameters and output."""
    described: List[str] = [_describe_tool(spec) for spec in specs]
    if not described:
        return ""
    return "<available_tools>\n" + "\n\n".join(described) + "\n</available_tools>\n\n" + EMBEDDED_TOOL_CALL_FORMAT
