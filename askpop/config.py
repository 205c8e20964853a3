"""Runtime settings handed to askpop by the PopClip extension."""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_API_URL = "https://aihubmix.com/v1/chat/completions"
DEFAULT_MODEL = "gemini-2.0-flash-exp-search"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
BASE64_ARGUMENT_PREFIX = "base64:"

MODE_ASK = "ask"
MODE_MARKDOWN = "markdown"
MODE_MERMAID = "mermaid"
MODES = (MODE_ASK, MODE_MARKDOWN, MODE_MERMAID)

_ACTION_MODES = {
    "qa_action": MODE_ASK,
    "translate_action": MODE_ASK,
    "note_action": MODE_ASK,
    "markdown_action": MODE_MARKDOWN,
    "mermaid_action": MODE_MERMAID,
}

_ACTION_TITLES = {
    "qa_action": "AskPop - Q&A",
    "translate_action": "AskPop - Translate",
    "note_action": "AskPop - Note",
    "markdown_action": "AskPop - Markdown",
    "mermaid_action": "AskPop - Mermaid",
}

_FALSE_WORDS = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class AppConfig:
    """Completion endpoint settings passed explicitly to each component."""

    api_key: str = ""
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    enable_temperature: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    action: str = ""

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build settings from the `POPCLIP_OPTION_*` variables the extension exports."""
        env = os.environ if environ is None else environ

        api_url = (env.get("POPCLIP_OPTION_API_URL") or "").strip() or DEFAULT_API_URL
        model = (env.get("POPCLIP_OPTION_MODEL") or "").strip() or DEFAULT_MODEL

        temperature = DEFAULT_TEMPERATURE
        raw_temperature = (env.get("POPCLIP_OPTION_TEMPERATURE") or "").strip()
        if raw_temperature:
            try:
                temperature = float(raw_temperature)
            except ValueError:
                # Keep the default when PopClip hands over free-form text.
                temperature = DEFAULT_TEMPERATURE

        raw_enable = (env.get("POPCLIP_OPTION_ENABLE_TEMPERATURE") or "").strip().casefold()
        enable_temperature = raw_enable not in _FALSE_WORDS if raw_enable else True

        return cls(
            api_key=(env.get("POPCLIP_OPTION_APIKEY") or "").strip(),
            api_url=api_url,
            model=model,
            temperature=temperature,
            enable_temperature=enable_temperature,
            action=(env.get("POPCLIP_ACTION_IDENTIFIER") or "").strip(),
        )

    def request_temperature(self) -> float | None:
        return self.temperature if self.enable_temperature else None


def decode_argument_text(raw: str) -> str:
    """Decode the `base64:` wrapped selection text sent by the extension script."""
    if not raw.startswith(BASE64_ARGUMENT_PREFIX):
        return raw
    payload = raw[len(BASE64_ARGUMENT_PREFIX):].strip()
    try:
        return base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return raw


def mode_for_action(action: str | None) -> str:
    """Map a PopClip action identifier to the window mode it opens."""
    return _ACTION_MODES.get((action or "").strip(), MODE_ASK)


def window_title_for_action(action: str | None) -> str:
    return _ACTION_TITLES.get((action or "").strip(), "AskPop")
