"""Per-tool-call confirmation and execution state machine.

    SUGGESTED -> CONFIRMING -> EXECUTING -> SUCCEEDED
                     |             |
                     v             v
                 DECLINED       FAILED -> EXECUTING   (retry)
                                       -> SKIPPED
                                       -> REGENERATE

Any non-terminal state moves to CANCELLED once the cancel event is set, so a
cancelled run never confirms or executes another tool. Each transition is a
separate method; ``run()`` just loops over them until a terminal state.

Every terminal state except CANCELLED produces exactly one outcome message.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from agent.callbacks import AgentCallbacks, REGENERATE, RETRY, decide, emit, normalize_resolution
from agent.messages import ConversationMessage
from agent.prompt_builder import (
    RESULT_FORMAT_INSTRUCTION,
    failure_language_reminder,
    result_language_reminder,
)
from agent.tool_coordinator import (
    ToolCallRequest,
    ToolCoordinator,
    ToolExecutionOutcome,
    format_tool_result,
)

logger = logging.getLogger(__name__)


class ToolCallState(str, Enum):
    SUGGESTED = "suggested"
    CONFIRMING = "confirming"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DECLINED = "declined"
    SKIPPED = "skipped"
    REGENERATE = "regenerate"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    ToolCallState.SUCCEEDED,
    ToolCallState.DECLINED,
    ToolCallState.SKIPPED,
    ToolCallState.REGENERATE,
    ToolCallState.CANCELLED,
})


@dataclass
class ToolCallRun:
    request: ToolCallRequest
    state: ToolCallState = ToolCallState.SUGGESTED
    attempts: int = 0
    outcome: Optional[ToolExecutionOutcome] = None
    transitions: List[ToolCallState] = field(default_factory=lambda: [ToolCallState.SUGGESTED])

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def move(self, state: ToolCallState) -> None:
        logger.debug("Tool %s: %s -> %s", self.request.name, self.state.value, state.value)
        self.state = state
        self.transitions.append(state)


def build_outcome_message(run: ToolCallRun, language: str = "en") -> Optional[ConversationMessage]:
    """The user-role message reinjected for a finished tool call."""
    name = run.request.name
    metadata = {"tool_outcome": run.state.value, "tool_name": name, "source": run.request.source.value}

    if run.state == ToolCallState.SUCCEEDED:
        content = (
            f"Tool {name} executed successfully. Result:\n{format_tool_result(run.outcome.result)}"
            f"\n\n{result_language_reminder(language)}\n\n{RESULT_FORMAT_INSTRUCTION}"
        )
    elif run.state == ToolCallState.DECLINED:
        content = f"User declined to execute tool: {name}"
    elif run.state == ToolCallState.REGENERATE:
        content = (
            f"Tool {name} execution failed. Error: {run.outcome.error}. "
            f"Please try a different approach or tool.\n\n{failure_language_reminder(language)}"
        )
    elif run.state == ToolCallState.SKIPPED:
        content = f"Tool {name} execution failed. Error: {run.outcome.error}\n\n{failure_language_reminder(language)}"
    else:
        return None
    return ConversationMessage.user(content, metadata=metadata)


class ToolCallFlow:
    """Drives one tool-call request to a terminal state.

    Args:
        coordinator: Executes the call against the tool catalog.
        callbacks: ``confirm_tool`` gates execution (absent means confirmed),
            ``on_tool_error`` picks skip / retry / regenerate (absent means
            skip), ``on_tool_executed`` is notified of every attempt.
        cancel_event: Checked before every transition.
    """

    def __init__(self, coordinator: ToolCoordinator, callbacks: Optional[AgentCallbacks] = None, cancel_event=None):
        self.coordinator = coordinator
        self.callbacks = callbacks or AgentCallbacks()
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def suggest(self, run: ToolCallRun) -> None:
        run.move(ToolCallState.CONFIRMING)

    async def confirm(self, run: ToolCallRun) -> None:
        confirmed = True
        if self.callbacks.confirm_tool is not None:
            confirmed = bool(await decide(self.callbacks.confirm_tool, run.request))
        if confirmed:
            run.move(ToolCallState.EXECUTING)
        else:
            logger.info("User declined tool: %s", run.request.name)
            run.move(ToolCallState.DECLINED)

    async def execute(self, run: ToolCallRun) -> None:
        run.attempts += 1
        request = run.request
        run.outcome = await self.coordinator.execute(request.name, request.arguments, request.call_id)
        if run.outcome.success:
            await emit(self.callbacks.on_tool_executed, request.name, run.outcome.result)
            run.move(ToolCallState.SUCCEEDED)
        else:
            await emit(self.callbacks.on_tool_executed, request.name, {"success": False, "error": run.outcome.error})
            run.move(ToolCallState.FAILED)

    async def resolve_failure(self, run: ToolCallRun) -> None:
        action = "skip"
        if self.callbacks.on_tool_error is not None:
            action = normalize_resolution(
                await decide(self.callbacks.on_tool_error, run.request.name, run.outcome.error)
            )
        if action == RETRY:
            logger.info("Retrying tool %s (attempt %s)", run.request.name, run.attempts + 1)
            run.move(ToolCallState.EXECUTING)
        elif action == REGENERATE:
            run.move(ToolCallState.REGENERATE)
        else:
            run.move(ToolCallState.SKIPPED)

    async def step(self, run: ToolCallRun) -> None:
        if self._cancelled():
            run.move(ToolCallState.CANCELLED)
            return
        handlers = {
            ToolCallState.SUGGESTED: self.suggest,
            ToolCallState.CONFIRMING: self.confirm,
            ToolCallState.EXECUTING: self.execute,
            ToolCallState.FAILED: self.resolve_failure,
        }
        await handlers[run.state](run)

    async def run(self, request: ToolCallRequest) -> ToolCallRun:
        run = ToolCallRun(request=request)
        while not run.done:
            await self.step(run)
        return run
