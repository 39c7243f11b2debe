"""Cinematic Sketch configuration — provider credentials, model names, retry defaults."""

from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()

# ---------------------------------------------------------------------------
# Provider API keys / endpoints
# ---------------------------------------------------------------------------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_API_KEY", "")
GEMINI_ENDPOINT = os.getenv("GEMINI_ENDPOINT", "https://generativelanguage.googleapis.com/v1beta")

DOUBAO_API_KEY = os.getenv("DOUBAO_API_KEY", "")
DOUBAO_CHAT_ENDPOINT = os.getenv("DOUBAO_CHAT_ENDPOINT", "")
DOUBAO_CHAT_MODEL = os.getenv("DOUBAO_CHAT_MODEL", "doubao-seed-1-6-lite-251015")
DOUBAO_IMAGE_ENDPOINT = os.getenv("DOUBAO_IMAGE_ENDPOINT", "")
DOUBAO_IMAGE_MODEL = os.getenv("DOUBAO_IMAGE_MODEL", "doubao-seedream-4-0-250828")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")

# ---------------------------------------------------------------------------
# Model names (centralized so they're easy to update)
# ---------------------------------------------------------------------------
ANALYZE_MODEL = os.getenv("ANALYZE_MODEL", "gemini-2.5-flash")
IMAGE_MODEL_DEFAULT = os.getenv("IMAGE_MODEL_DEFAULT", "gemini-2.5-flash-preview-05-20")
IMAGE_MODEL_FALLBACK = os.getenv("IMAGE_MODEL_FALLBACK", "gemini-2.5-flash-image")
IMAGE_MODEL_PRO = "gemini-3-pro-image-preview"
SPEECH_MODEL = os.getenv("SPEECH_MODEL", "gemini-2.5-flash-preview-tts")

# ---------------------------------------------------------------------------
# Timeouts (seconds)
# ---------------------------------------------------------------------------
ANALYZE_TIMEOUT_SECONDS = float(os.getenv("ANALYZE_TIMEOUT_SECONDS", "60"))
IMAGE_TIMEOUT_SECONDS = float(os.getenv("IMAGE_TIMEOUT_SECONDS", "120"))
SPEECH_TIMEOUT_SECONDS = float(os.getenv("SPEECH_TIMEOUT_SECONDS", "90"))

# ---------------------------------------------------------------------------
# Retry defaults: applied to every single-candidate attempt
# ---------------------------------------------------------------------------
RETRY_MAX_RETRIES = int(os.getenv("RETRY_MAX_RETRIES", "3"))
RETRY_INITIAL_DELAY_SECONDS = float(os.getenv("RETRY_INITIAL_DELAY_SECONDS", "2"))
RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2"))
RETRY_MAX_DELAY_SECONDS = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def _is_real_key(value: str) -> bool:
    key = str(value or "").strip()
    return bool(key) and key != "your_api_key" and not key.startswith("your_")


class ProviderSettings(BaseModel):
    """Read-only provider configuration handed to the orchestrator.

    Built once per process (``from_config``) or directly in tests, so no
    orchestration code has to look at the environment.
    """

    model_config = ConfigDict(frozen=True)

    gemini_api_key: str = ""
    gemini_endpoint: str = "https://generativelanguage.googleapis.com/v1beta"

    doubao_api_key: str = ""
    doubao_chat_endpoint: str = ""
    doubao_chat_model: str = "doubao-seed-1-6-lite-251015"
    doubao_image_endpoint: str = ""
    doubao_image_model: str = "doubao-seedream-4-0-250828"

    openai_api_key: str = ""
    openai_vision_model: str = "gpt-4o-mini"

    analyze_model: str = "gemini-2.5-flash"
    image_model_default: str = "gemini-2.5-flash-preview-05-20"
    image_model_fallback: str = "gemini-2.5-flash-image"
    speech_model: str = "gemini-2.5-flash-preview-tts"

    analyze_timeout: float = 60.0
    image_timeout: float = 120.0
    speech_timeout: float = 90.0

    @classmethod
    def from_config(cls) -> "ProviderSettings":
        return cls(
            gemini_api_key=GEMINI_API_KEY,
            gemini_endpoint=GEMINI_ENDPOINT,
            doubao_api_key=DOUBAO_API_KEY,
            doubao_chat_endpoint=DOUBAO_CHAT_ENDPOINT,
            doubao_chat_model=DOUBAO_CHAT_MODEL,
            doubao_image_endpoint=DOUBAO_IMAGE_ENDPOINT,
            doubao_image_model=DOUBAO_IMAGE_MODEL,
            openai_api_key=OPENAI_API_KEY,
            openai_vision_model=OPENAI_VISION_MODEL,
            analyze_model=ANALYZE_MODEL,
            image_model_default=IMAGE_MODEL_DEFAULT,
            image_model_fallback=IMAGE_MODEL_FALLBACK,
            speech_model=SPEECH_MODEL,
            analyze_timeout=ANALYZE_TIMEOUT_SECONDS,
            image_timeout=IMAGE_TIMEOUT_SECONDS,
            speech_timeout=SPEECH_TIMEOUT_SECONDS,
        )

    @property
    def gemini_configured(self) -> bool:
        return _is_real_key(self.gemini_api_key)

    @property
    def doubao_chat_configured(self) -> bool:
        return (
            _is_real_key(self.doubao_api_key)
            and bool(self.doubao_chat_endpoint.strip())
            and bool(self.doubao_chat_model.strip())
        )

    @property
    def doubao_image_configured(self) -> bool:
        return _is_real_key(self.doubao_api_key) and bool(self.doubao_image_endpoint.strip())

    @property
    def openai_configured(self) -> bool:
        return _is_real_key(self.openai_api_key)
