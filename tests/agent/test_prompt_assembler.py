"""Tests for PromptAssembler and the prompt_builder helpers it combines.

Covers:
    - Layer ordering (memory first, language directive last)
    - Working-memory gating
    - Mode selection
    - Tool listing
    - Language detection and canned tool explanations
"""

import pytest

from agent.prompt_assembler import PromptAssembler
from agent.prompt_builder import (
    GUIDED_MODE_PROMPT,
    MEMORY_UPDATE_PROTOCOL,
    NORMAL_MODE_PROMPT,
    build_tools_prompt,
    build_working_memory_section,
    detect_user_language,
    explain_tool_calls,
    language_directive,
)
from tools.catalog import ToolSpec


def _spec(**overrides):
    values = dict(
        name="get_weather",
        description="Current weather for a city",
        handler=lambda city: None,
        parameters={"city": {"type": "string", "description": "City name"}, "units": {"type": "string"}},
        required=["city"],
    )
    values.update(overrides)
    return ToolSpec(**values)


# ---------------------------------------------------------------------------
# PromptAssembler
# ---------------------------------------------------------------------------

class TestPromptAssembler:
    def test_layer_order(self):
        prompt = PromptAssembler().build(
            working_memory="- Name: Ada",
            external_context="Project: Waypoint",
            tool_specs=[_spec()],
        )
        positions = [
            prompt.index("## User Information (Working Memory)"),
            prompt.index(GUIDED_MODE_PROMPT),
            prompt.index("<available_tools>"),
            prompt.index("Project: Waypoint"),
            prompt.index(language_directive("en")),
        ]
        assert positions == sorted(positions)
        assert prompt.endswith(language_directive("en"))

    def test_memory_included_when_enabled(self):
        prompt = PromptAssembler().build(working_memory="- Name: Ada")
        assert "- Name: Ada" in prompt
        assert MEMORY_UPDATE_PROTOCOL in prompt

    def test_protocol_present_even_without_memory(self):
        prompt = PromptAssembler().build(working_memory=None)
        assert MEMORY_UPDATE_PROTOCOL in prompt

    def test_memory_disabled(self):
        prompt = PromptAssembler(enable_working_memory=False).build(working_memory="- Name: Ada")
        assert "Ada" not in prompt
        assert "[MEMORY_UPDATE]" not in prompt

    def test_normal_mode(self):
        assembler = PromptAssembler(mode="normal")
        prompt = assembler.build()
        assert assembler.mode == "normal"
        assert NORMAL_MODE_PROMPT in prompt
        assert GUIDED_MODE_PROMPT not in prompt

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            PromptAssembler(mode="freestyle")

    def test_tool_listing_optional(self):
        prompt = PromptAssembler(include_tool_listing=False).build(tool_specs=[_spec()])
        assert "<available_tools>" not in prompt

    def test_blank_external_context_skipped(self):
        prompt = PromptAssembler(enable_working_memory=False).build(external_context="   ")
        assert prompt == GUIDED_MODE_PROMPT + "\n\n" + language_directive("en")

    def test_rebuilt_per_call(self):
        assembler = PromptAssembler()
        first = assembler.build(language="en")
        second = assembler.build(language="zh")
        assert first != second
        assert second.endswith(language_directive("zh"))


# ---------------------------------------------------------------------------
# prompt_builder helpers
# ---------------------------------------------------------------------------

class TestDetectUserLanguage:
    @pytest.mark.parametrize("text,expected", [
        ("What's the weather?", "en"),
        ("", "en"),
        (None, "en"),
        ("今天天气怎么样", "zh"),
        ("今日の天気は？", "ja"),
        ("오늘 날씨 어때요", "ko"),
        ("Is 北京 cold today?", "zh"),
    ])
    def test_detection(self, text, expected):
        assert detect_user_language(text) == expected


class TestToolListing:
    def test_parameters_and_required(self):
        listing = build_tools_prompt([_spec()])
        assert listing.startswith("<available_tools>\n## get_weather")
        assert "  - city (required): string - City name" in listing
        assert "  - units (optional): string" in listing
        assert "<use_mcp_tool>" in listing

    def test_output_schema(self):
        spec = _spec(output_schema={
            "type": "object",
            "description": "Weather report",
            "properties": {"temp_c": {"type": "number", "description": "Temperature"}},
        })
        listing = build_tools_prompt([spec])
        assert "### Output Format:" in listing
        assert "  - temp_c: number - Temperature" in listing

    def test_empty(self):
        assert build_tools_prompt([]) == ""


class TestExplainToolCalls:
    def test_canned(self):
        assert explain_tool_calls(["web_search"]) == "Searching the web..."

    def test_generic(self):
        assert explain_tool_calls(["get_weather", "convert"]) == "Using tools: get_weather, convert"

    def test_chinese(self):
        assert explain_tool_calls(["get_current_date"], "zh") == "正在获取当前日期..."

    def test_unknown_language_falls_back_to_english(self):
        assert explain_tool_calls(["get_current_date"], "fr") == "Checking the current date..."

    @pytest.mark.parametrize("text", ["今日の天気は？", "오늘 날씨 어때요"])
    def test_every_detected_language_has_its_own_text(self, text):
        language = detect_user_language(text)
        assert explain_tool_calls(["get_current_date"], language) != "Checking the current date..."
        assert explain_tool_calls(["get_weather"], language) != "Using tools: get_weather"


class TestWorkingMemorySection:
    def test_empty_memory_keeps_protocol(self):
        section = build_working_memory_section("  ")
        assert section.startswith("## User Information (Working Memory)")
        assert section.endswith(MEMORY_UPDATE_PROTOCOL)
