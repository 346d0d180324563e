"""Outbound system message assembly.

Layers, joined by blank lines, empty layers skipped:

    1. working-memory section + memory update protocol (only when enabled)
    2. mode instructions (guided | normal) and the tool listing
    3. externally supplied context block
    4. language directive for the user's latest message (always last)

Built fresh for every request: working memory and the detected language both
change between requests, so nothing is cached.
"""

from typing import Any, Iterable, Optional

from agent.prompt_builder import (
    MODE_PROMPTS,
    build_tools_prompt,
    build_working_memory_section,
    language_directive,
)


class PromptAssembler:
    """Assembles the system prompt from layered components.

    Args:
        mode: "guided" or "normal".
        enable_working_memory: Whether the memory section and update
            protocol are included at all.
        include_tool_listing: Describe tools in the prompt as well as in
            the structured ``tools`` request field.
    """

    def __init__(self, *, mode="guided", enable_working_memory=True, include_tool_listing=True):
        if mode not in MODE_PROMPTS:
            raise ValueError(f"Unknown mode: {mode!r}")
        self._mode = mode
        self._enable_working_memory = enable_working_memory
        self._include_tool_listing = include_tool_listing

    @property
    def mode(self) -> str:
        return self._mode

    def build(
        self,
        *,
        language: str = "en",
        working_memory: Optional[str] = None,
        external_context: Optional[str] = None,
        tool_specs: Optional[Iterable[Any]] = None,
    ) -> str:
        prompt_parts = []

        if self._enable_working_memory:
            prompt_parts.append(build_working_memory_section(working_memory))

        prompt_parts.append(MODE_PROMPTS[self._mode])

        if self._include_tool_listing and tool_specs:
            tools_prompt = build_tools_prompt(tool_specs)
            if tools_prompt:
                prompt_parts.append(tools_prompt)

        if external_context and external_context.strip():
            prompt_parts.append(external_context.strip())

        prompt_parts.append(language_directive(language))

        return "\n\n".join(prompt_parts)
