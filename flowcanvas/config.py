"""Shared flowcanvas configuration utilities.

Centralises reading of ~/.flowcanvas/configuration.json so that the CLI,
the HTTP runner and the scheduler share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWCANVAS_CONFIG_FILE = Path.home() / ".flowcanvas" / "configuration.json"

DEFAULT_API_BASE = "http://127.0.0.1:3001"
DEFAULT_TOKEN_ENV_VAR = "FLOWCANVAS_ACCESS_TOKEN"
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_UI_DELAY_SECONDS = 0.1
DEFAULT_REQUEST_TIMEOUT = 120.0

DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_TEXT_MODEL = "gemini-3-pro-preview"


def get_flowcanvas_config() -> dict[str, Any]:
    """Load configuration from ~/.flowcanvas/configuration.json."""
    if not FLOWCANVAS_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWCANVAS_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_api_base() -> str:
    """Return the generation service base URL."""
    api = get_flowcanvas_config().get("api", {})
    return api.get("base_url") or os.environ.get("FLOWCANVAS_API_URL") or DEFAULT_API_BASE


def get_access_token() -> str | None:
    """Return the bearer token from the environment variable named in configuration."""
    auth = get_flowcanvas_config().get("auth", {})
    return os.environ.get(auth.get("token_env_var", DEFAULT_TOKEN_ENV_VAR))


def get_history_limit() -> int:
    """Return the configured undo depth, falling back to DEFAULT_HISTORY_LIMIT."""
    return get_flowcanvas_config().get("history", {}).get("limit", DEFAULT_HISTORY_LIMIT)


def get_default_model(kind: str) -> str:
    """Return the model used when a node has none selected."""
    models = get_flowcanvas_config().get("models", {})
    if kind == "text":
        return models.get("text", DEFAULT_TEXT_MODEL)
    return models.get("image", DEFAULT_IMAGE_MODEL)


def _get_execution_setting(key: str, default: Any) -> Any:
    return get_flowcanvas_config().get("execution", {}).get(key, default)


# ---------------------------------------------------------------------------
# RuntimeConfig – shared across the CLI and embedding applications
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Engine configuration loaded from ~/.flowcanvas/configuration.json."""

    api_base: str = field(default_factory=get_api_base)
    access_token: str | None = field(default_factory=get_access_token)
    history_limit: int = field(default_factory=get_history_limit)
    ui_delay_seconds: float = field(
        default_factory=lambda: _get_execution_setting("ui_delay_seconds", DEFAULT_UI_DELAY_SECONDS)
    )
    root_output_policy: str = field(
        default_factory=lambda: _get_execution_setting("root_output_policy", "reuse")
    )
    request_timeout: float = field(
        default_factory=lambda: _get_execution_setting("request_timeout", DEFAULT_REQUEST_TIMEOUT)
    )
