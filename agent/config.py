"""Agent settings: defaults, config.yaml loading, and environment overrides.

Config file layout (every section optional, only given keys override defaults):

    model: anthropic/claude-sonnet-4
    agent:
      mode: guided
      max_turns: 5
    memory:
      enable_working_memory: true
      enable_conversation_history: true
      conversation_history_limit: 10
      persist_history: true
    compaction:
      enabled: true
      trigger_token_threshold: 65536
      target_token_count: 4000
      preserve_recent_count: 4
      summarizer_model: openai/gpt-4o-mini
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from agent.context_compactor import CompactionPolicy
from waypoint_constants import DEFAULT_MAX_TURNS, DEFAULT_MODEL, WAYPOINT_HOME

logger = logging.getLogger(__name__)

MODES = ("guided", "normal")


class ConfigError(Exception):
    """Raised when configuration is invalid."""
    pass


@dataclass
class AgentSettings:
    model: str = DEFAULT_MODEL
    mode: str = "guided"
    max_turns: int = DEFAULT_MAX_TURNS
    enable_working_memory: bool = True
    enable_conversation_history: bool = True
    conversation_history_limit: int = 10
    persist_history: bool = True
    enable_compaction: bool = True
    use_remote_model_metadata: bool = False
    compaction: CompactionPolicy = field(default_factory=CompactionPolicy)

    def validate(self) -> "AgentSettings":
        if self.mode not in MODES:
            raise ConfigError(f"Unknown mode '{self.mode}', expected one of {MODES}")
        if self.max_turns < 1:
            raise ConfigError("max_turns must be at least 1")
        if self.conversation_history_limit < 1:
            raise ConfigError("conversation_history_limit must be at least 1")
        policy = self.compaction
        if policy.preserve_recent_count < 0:
            raise ConfigError("compaction.preserve_recent_count must not be negative")
        if policy.target_token_count >= policy.trigger_token_threshold:
            logger.warning(
                "compaction.target_token_count (%s) should be well below trigger_token_threshold (%s)",
                policy.target_token_count, policy.trigger_token_threshold,
            )
        return self

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AgentSettings":
        settings = cls()
        if not data:
            return settings
        if not isinstance(data, dict):
            raise ConfigError("config root must be a mapping")

        if data.get("model"):
            settings.model = str(data["model"])

        agent_cfg = data.get("agent") or {}
        settings.mode = agent_cfg.get("mode", settings.mode)
        settings.max_turns = _as_int(agent_cfg.get("max_turns", settings.max_turns), "agent.max_turns")
        settings.use_remote_model_metadata = bool(
            agent_cfg.get("use_remote_model_metadata", settings.use_remote_model_metadata)
        )

        memory_cfg = data.get("memory") or {}
        settings.enable_working_memory = bool(
            memory_cfg.get("enable_working_memory", settings.enable_working_memory)
        )
        settings.enable_conversation_history = bool(
            memory_cfg.get("enable_conversation_history", settings.enable_conversation_history)
        )
        settings.conversation_history_limit = _as_int(
            memory_cfg.get("conversation_history_limit", settings.conversation_history_limit),
            "memory.conversation_history_limit",
        )
        settings.persist_history = bool(memory_cfg.get("persist_history", settings.persist_history))

        compaction_cfg = data.get("compaction") or {}
        settings.enable_compaction = bool(compaction_cfg.get("enabled", settings.enable_compaction))
        policy = settings.compaction
        policy.trigger_token_threshold = _as_int(
            compaction_cfg.get("trigger_token_threshold", policy.trigger_token_threshold),
            "compaction.trigger_token_threshold",
        )
        policy.target_token_count = _as_int(
            compaction_cfg.get("target_token_count", policy.target_token_count),
            "compaction.target_token_count",
        )
        policy.preserve_recent_count = _as_int(
            compaction_cfg.get("preserve_recent_count", policy.preserve_recent_count),
            "compaction.preserve_recent_count",
        )
        policy.summarizer_model = compaction_cfg.get("summarizer_model", policy.summarizer_model)

        return settings.validate()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AgentSettings":
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        return cls.from_dict(data)


def _as_int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def load_settings(home: Optional[Path] = None) -> AgentSettings:
    """Load settings from ``<home>/.env`` and ``<home>/config.yaml``.

    Environment overrides applied last:
        WAYPOINT_MODEL      -- model name
        WAYPOINT_MAX_TURNS  -- turn ceiling per request
    """
    home = Path(home) if home else WAYPOINT_HOME

    env_file = home / ".env"
    if env_file.exists():
        try:
            load_dotenv(dotenv_path=env_file, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=env_file, encoding="latin-1")
        logger.info("Loaded environment variables from %s", env_file)

    config_file = home / "config.yaml"
    if config_file.exists():
        settings = AgentSettings.from_yaml(config_file)
        logger.info("Loaded settings from %s", config_file)
    else:
        settings = AgentSettings()

    env_model = os.getenv("WAYPOINT_MODEL")
    if env_model:
        settings.model = env_model
    env_turns = os.getenv("WAYPOINT_MAX_TURNS")
    if env_turns:
        settings.max_turns = _as_int(env_turns, "WAYPOINT_MAX_TURNS")

    return settings.validate()
