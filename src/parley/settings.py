from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PARLEY_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/parley.json")

DEFAULT_STARTUP_MESSAGE = (
    "You are a concise assistant for experienced users. Be proactive, "
    "helpful and efficient. Do not say more than needed. If the user asks "
    "for software, provide only the code. You can read, write and edit "
    "files, search the web and run shell commands through your tools."
)


class ProviderSettings(BaseModel):
    model: str
    host: str
    endpoint: str = ""
    api_key_variable: str
    raw_stream: bool = False


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        "oai": ProviderSettings(
            model="gpt-4o-mini",
            host="api.openai.com",
            endpoint="/v1/chat/completions",
            api_key_variable="OPENAI_API_KEY",
        ),
        "gemini": ProviderSettings(
            model="gemini-1.5-flash-latest",
            host="generativelanguage.googleapis.com",
            api_key_variable="GEMINI_API_KEY",
        ),
    }


class Settings(BaseModel):
    """User configuration, read from ``~/.config/parley.json``.

    Only the fields present in the file override the defaults.
    """

    providers: dict[str, ProviderSettings] = Field(default_factory=_default_providers)
    provider: str = "oai"
    max_tokens: int = 2048
    temperature: float = 0.6
    vision_detail: str = "high"
    transcript_name: str = "parley_transcript-"
    startup_message: str = DEFAULT_STARTUP_MESSAGE
    request_timeout: float = 600.0
    tools_enabled: bool = True

    def active_provider(self) -> ProviderSettings:
        try:
            return self.providers[self.provider]
        except KeyError:
            raise ValueError(f"Invalid provider: {self.provider}") from None

    def api_key(self) -> str:
        variable = self.active_provider().api_key_variable
        key = os.getenv(variable, "")
        if not key:
            raise ValueError(
                f"Missing API key! Set the {variable} environment variable and try again."
            )
        return key


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from disk, falling back to defaults on any problem."""
    if path is None:
        path = os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    config_path = Path(path).expanduser()
    try:
        raw = json.loads(config_path.read_text())
        return Settings.model_validate(_expand_env(raw))
    except FileNotFoundError:
        logger.info(f"No config at {config_path}, using default settings")
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Using default settings. Could not load {config_path}: {e}")
    return Settings()


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value
