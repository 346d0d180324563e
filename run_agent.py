#!/usr/bin/env python3
"""
Guided Agent Runner

This module provides the multi-turn agent loop: it streams a model response,
detects tool calls on both the structured and the embedded channel, asks the
caller to confirm each call, executes confirmed calls and feeds their outcomes
back to the model until it answers without requesting tools.

Features:
- Bounded tool-calling loop (default 5 turns per request)
- Confirmation gate and skip / retry / regenerate recovery per tool call
- Working memory and conversation history from a pluggable memory store
- Automatic compaction of long histories before the loop starts
- Cooperative cancellation through an asyncio.Event

Usage:
    from run_agent import GuidedAgent
    from agent.callbacks import AgentCallbacks

    agent = GuidedAgent.from_config()
    result = await agent.run_conversation(
        "What's the weather in Oslo?",
        thread_id="thread-1",
        callbacks=AgentCallbacks(on_stream=print_delta, confirm_tool=ask_user),
    )
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from agent.callbacks import AgentCallbacks, emit
from agent.config import AgentSettings, load_settings
from agent.context_compactor import ConversationCompactor
from agent.memory_context import HISTORY_FROM_SESSION, MemoryContextAssembler
from agent.messages import ConversationMessage
from agent.model_metadata import (
    estimate_tokens,
    format_token_usage,
    get_model_limit,
    get_token_warning_level,
    is_over_limit,
)
from agent.prompt_assembler import PromptAssembler
from agent.prompt_builder import detect_user_language, explain_tool_calls
from agent.providers import OpenAICompatibleProvider
from agent.tool_coordinator import ToolCallCollector, ToolCoordinator
from agent.tool_flow import ToolCallFlow, ToolCallState, build_outcome_message
from agent.working_memory import MEMORY_OPEN, apply_memory_updates, strip_memory_markers

logger = logging.getLogger(__name__)

TURN_LIMIT_NOTICE = "\n\n[Stopped after {max_turns} turns. The tool-calling loop reached its turn limit.]"


class GuidedAgent:
    """
    Multi-turn agent with confirmed tool calling.

    One instance can serve many requests; per-request state (callbacks,
    cancellation, thread) is passed to run_conversation().
    """

    def __init__(
        self,
        provider: Optional[Any] = None,
        *,
        catalog: Optional[Any] = None,
        settings: Optional[AgentSettings] = None,
        memory_store: Optional[Any] = None,
        summarizers: Optional[Mapping[str, Any]] = None,
    ):
        """
        Args:
            provider: LLMProvider used for every turn. Without one, every run
                fails through on_error.
            catalog: Frozen ToolCatalog offered to the model.
            settings: AgentSettings; defaults are used when omitted.
            memory_store: Source of working memory and stored history, and
                the target for persistence.
            summarizers: Optional ``{model_ref: provider}`` mapping for
                compaction; the agent's own provider is the fallback.
        """
        self.provider = provider
        self.catalog = catalog
        self.settings = settings or AgentSettings()
        self.memory_store = memory_store

        self.prompt_assembler = PromptAssembler(
            mode=self.settings.mode,
            enable_working_memory=self.settings.enable_working_memory,
        )
        self.memory_assembler = MemoryContextAssembler(
            memory_store,
            enable_working_memory=self.settings.enable_working_memory,
            enable_conversation_history=self.settings.enable_conversation_history,
            conversation_history_limit=self.settings.conversation_history_limit,
        )
        self.compactor = ConversationCompactor(
            self.settings.compaction,
            provider=provider,
            summarizers=summarizers,
            memory_store=memory_store if self._persistence_enabled() else None,
        )

        # One event per in-flight run; interrupt() sets them all.
        self._active_cancel_events: Set[asyncio.Event] = set()

    @classmethod
    def from_config(cls, home: Optional[Path] = None, **kwargs) -> "GuidedAgent":
        """Build an agent from ``~/.waypoint`` settings with an OpenAI-compatible provider."""
        settings = load_settings(home)
        provider = kwargs.pop("provider", None) or OpenAICompatibleProvider(settings.model)
        return cls(provider, settings=settings, **kwargs)

    def _persistence_enabled(self) -> bool:
        return (
            self.memory_store is not None
            and self.settings.enable_conversation_history
            and self.settings.persist_history
        )

    def interrupt(self) -> None:
        """Cancel every request currently in flight."""
        pending = [event for event in self._active_cancel_events if not event.is_set()]
        if pending:
            logger.info("Interrupt requested for %s run(s)", len(pending))
        for event in pending:
            event.set()

    def _log_token_usage(self, messages, system_prompt, tool_schemas) -> None:
        model = getattr(self.provider, "model", None)
        total = estimate_tokens(messages, system_prompt, tool_schemas, model)
        limit = get_model_limit(model, use_remote_metadata=self.settings.use_remote_model_metadata)
        logger.debug(
            "Context usage: %s / %s tokens (%s)",
            format_token_usage(total), format_token_usage(limit), get_token_warning_level(total, limit),
        )
        if is_over_limit(
            messages, system_prompt, tool_schemas, model,
            use_remote_metadata=self.settings.use_remote_model_metadata,
        ):
            logger.warning("Request context (%s tokens) exceeds the limit for %s", total, model)

    async def _maybe_compact(self, messages, system_prompt, tool_schemas, callbacks, thread_id, resource_id, cancel_event):
        if not self.settings.enable_compaction:
            return messages, False
        model = getattr(self.provider, "model", None)
        if not self.compactor.should_compact(messages, system_prompt, tool_schemas, model):
            return messages, False

        await emit(callbacks.on_compaction_start)
        try:
            compacted = await self.compactor.compact(
                messages, thread_id=thread_id, resource_id=resource_id, cancel_event=cancel_event,
            )
        finally:
            await emit(callbacks.on_compaction_complete)
        return compacted, len(compacted) < len(messages)

    async def _persist(
        self,
        thread_id: Optional[str],
        resource_id: Optional[str],
        messages: List[ConversationMessage],
        session_messages: Optional[Sequence[ConversationMessage]],
        history_source: str,
    ) -> None:
        """Append this run's messages to the stored thread.

        The snapshot only carried the most recent history, so the full stored
        thread is re-read and new messages are appended by id.
        """
        if not (self._persistence_enabled() and thread_id):
            return
        try:
            base = await self.memory_store.get_conversation_messages(thread_id)
            if not base and history_source == HISTORY_FROM_SESSION:
                base = list(session_messages or [])
            known = {m.id for m in base}
            merged = list(base) + [m for m in messages if m.id not in known]
            await self.memory_store.save_messages(thread_id, resource_id, merged)
            logger.debug("Persisted %s messages for thread %s", len(merged), thread_id)
        except Exception as e:
            logger.warning("Failed to persist conversation for thread %s: %s", thread_id, e)

    async def _update_working_memory(self, thread_id, resource_id, response_text: str) -> None:
        if not (self.settings.enable_working_memory and self.memory_store is not None and thread_id):
            return
        try:
            await apply_memory_updates(self.memory_store, thread_id, resource_id, response_text)
        except Exception as e:
            logger.warning("Failed to update working memory for %s: %s", resource_id or thread_id, e)

    async def run_conversation(
        self,
        user_message: Union[str, ConversationMessage],
        *,
        thread_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        session_messages: Optional[Sequence[ConversationMessage]] = None,
        external_context: Optional[str] = None,
        callbacks: Optional[AgentCallbacks] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Run one request through the agent loop.

        Args:
            user_message: The message being sent.
            thread_id: Conversation thread for history and persistence.
            resource_id: Owner of the working memory; defaults to the thread.
            session_messages: Locally held history, used only when the store
                has none for this thread.
            external_context: Extra system prompt block supplied by the caller.
            callbacks: Streaming, confirmation and lifecycle hooks.
            cancel_event: Set it to stop the run at the next checkpoint.

        Returns:
            Dict: final_response, messages, turns, completed, interrupted,
            max_turns_reached, failed, error, tool_outcomes, compacted and
            history_source.
        """
        callbacks = callbacks or AgentCallbacks()
        cancel_event = cancel_event or asyncio.Event()
        self._active_cancel_events.add(cancel_event)
        # Status tracking is per run so overlapping requests never share it.
        coordinator = ToolCoordinator(self.catalog)

        if isinstance(user_message, ConversationMessage):
            current = user_message
        else:
            current = ConversationMessage.user(user_message)

        result: Dict[str, Any] = {
            "final_response": "",
            "messages": [],
            "turns": 0,
            "completed": False,
            "interrupted": False,
            "max_turns_reached": False,
            "failed": False,
            "error": None,
            "tool_outcomes": [],
            "compacted": False,
            "history_source": None,
        }
        messages: List[ConversationMessage] = []

        try:
            if self.provider is None:
                raise RuntimeError("No LLM provider configured")

            snapshot = await self.memory_assembler.assemble(thread_id, resource_id, session_messages, current)
            result["history_source"] = snapshot.history_source

            messages = [m for m in snapshot.conversation_history if m.has_content()]
            messages.append(current)

            language = detect_user_language(current.text)
            system_prompt = self.prompt_assembler.build(
                language=language,
                working_memory=snapshot.working_memory,
                external_context=external_context,
                tool_specs=coordinator.tool_specs(),
            )
            tool_schemas = coordinator.tool_schemas()

            messages, result["compacted"] = await self._maybe_compact(
                messages, system_prompt, tool_schemas, callbacks, thread_id, resource_id, cancel_event,
            )
            self._log_token_usage(messages, system_prompt, tool_schemas)

            turn_texts: List[str] = []
            final_turn_text = ""
            done = False
            max_turns = self.settings.max_turns

            while result["turns"] < max_turns:
                if cancel_event.is_set():
                    raise InterruptedError("Cancelled before turn start")
                result["turns"] += 1
                turn = result["turns"]
                logger.debug("Turn %s/%s with %s messages", turn, max_turns, len(messages))

                collector = ToolCallCollector()

                async def on_chunk(chunk, _collector=collector):
                    _collector.add_chunk(chunk)
                    if chunk.delta:
                        await emit(callbacks.on_stream, chunk.delta)

                await self.provider.send_streaming_message(
                    list(messages), on_chunk, cancel_event, tool_schemas or None, system_prompt,
                )
                if cancel_event.is_set():
                    raise InterruptedError("Cancelled after streaming")

                turn_text = collector.text
                requests = collector.requests()

                if not requests:
                    turn_texts.append(turn_text)
                    final_turn_text = turn_text
                    done = True
                    break

                if not turn_text.strip():
                    turn_text = explain_tool_calls([r.name for r in requests], language)
                    await emit(callbacks.on_stream, turn_text)
                turn_texts.append(turn_text)

                logger.info(
                    "Turn %s requested %s tool call(s): %s",
                    turn, len(requests), ", ".join(f"{r.name} ({r.source.value})" for r in requests),
                )
                await emit(callbacks.on_tool_suggested, list(requests))
                messages.append(ConversationMessage.assistant(
                    turn_text, metadata={"turn": turn, "tool_calls": [r.to_dict() for r in requests]},
                ))

                coordinator.mark_pending(requests)
                flow = ToolCallFlow(coordinator, callbacks, cancel_event)
                for request in requests:
                    run = await flow.run(request)
                    if run.state == ToolCallState.CANCELLED:
                        raise InterruptedError(f"Cancelled during tool call {request.name}")
                    result["tool_outcomes"].append({
                        "tool_name": request.name,
                        "source": request.source.value,
                        "state": run.state.value,
                        "attempts": run.attempts,
                        "outcome": run.outcome.to_dict() if run.outcome else None,
                    })
                    messages.append(build_outcome_message(run, language))

            raw_response = "".join(turn_texts)
            if done:
                if final_turn_text.strip():
                    messages.append(ConversationMessage.assistant(final_turn_text, metadata={"turn": result["turns"]}))
                result["completed"] = True
            else:
                result["max_turns_reached"] = True
                logger.warning("Reached maximum turns (%s), stopping the tool-calling loop", max_turns)
                raw_response += TURN_LIMIT_NOTICE.format(max_turns=max_turns)

            final_response = strip_memory_markers(raw_response) if MEMORY_OPEN in raw_response else raw_response
            result["final_response"] = final_response
            result["messages"] = messages

            await emit(callbacks.on_complete, final_response)
            await self._persist(thread_id, resource_id, messages, session_messages, snapshot.history_source)
            await self._update_working_memory(thread_id, resource_id, raw_response)

        except InterruptedError as e:
            logger.info("Run interrupted after %s turn(s): %s", result["turns"], e)
            result["interrupted"] = True
            result["messages"] = messages
        except Exception as e:
            logger.error("Agent run failed: %s", e, exc_info=True)
            result["failed"] = True
            result["error"] = str(e)
            result["messages"] = []
            await emit(callbacks.on_error, e)
        finally:
            self._active_cancel_events.discard(cancel_event)

        return result

    async def chat(self, message: Union[str, ConversationMessage], **kwargs) -> str:
        """Run one request and return only the final response text."""
        result = await self.run_conversation(message, **kwargs)
        return result["final_response"]
