"""Shared constants for Waypoint Agent.

Depends only on the standard library, so every module can import it
without creating an import cycle.
"""

import os
from pathlib import Path

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_MODELS_URL = f"{OPENROUTER_BASE_URL}/models"

WAYPOINT_HOME = Path(os.getenv("WAYPOINT_HOME", Path.home() / ".waypoint"))

DEFAULT_MODEL = "anthropic/claude-sonnet-4"
DEFAULT_MAX_TURNS = 5
