"""Agent internals used by run_agent.py.

Module Overview
---------------

**messages.py**
    Conversation message and content-part types (text, image, file).

**providers.py**
    LLMProvider protocol, StreamChunk and the OpenAI-compatible streaming
    transport with retry before the first delta.

**tool_coordinator.py**
    Tool-call detection on the structured and embedded channels, result
    formatting and dispatch to the tool catalog.

**tool_flow.py**
    Per-call state machine: confirmation, execution, skip / retry /
    regenerate recovery and the outcome message fed back to the model.

**callbacks.py**
    Caller-supplied hooks for one run.

**prompt_builder.py** / **prompt_assembler.py**
    Stateless prompt fragments (mode prompts, language directives, tool
    listing, memory protocol) and their layered assembly.

**memory_context.py** / **memory_store.py** / **working_memory.py**
    Working memory and conversation history: snapshot assembly, the
    in-memory and JSON-file stores, and MEMORY_UPDATE marker handling.

**context_compactor.py**
    Summarizes the older part of a long conversation before the loop starts.

**model_metadata.py**
    Context-window limits and character-based token estimation.

**config.py**
    AgentSettings loaded from ~/.waypoint/config.yaml and .env.

Architecture
------------
Modules depend on external packages, waypoint_constants and each other's
plain functions, never on run_agent.py. GuidedAgent in run_agent.py
coordinates them.
"""
