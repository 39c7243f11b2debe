"""Cinematic Sketch schemas — operation results and the shared usage record.

Field names are snake_case in Python and serialize as camelCase
(``model_dump(by_alias=True)``) because that is what the browser client reads.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


ImageModel = Literal[
    "doubao",
    "gemini-3-pro-image-preview",
    "gemini-2.5-flash-image",
]

ImageSize = Literal["1K", "2K", "4K"]

VoiceName = Literal["Puck", "Charon", "Kore", "Fenrir", "Zephyr"]

VOICE_OPTIONS: dict[str, str] = {
    "Puck": "Male, witty",
    "Charon": "Male, deep",
    "Kore": "Female, soothing",
    "Fenrir": "Male, intense",
    "Zephyr": "Female, bright",
}

DEFAULT_VOICE = "Kore"
AMBIENCE_VOICE = "Charon"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UsageRecord(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: str = "$0.000000"


class PromptIdea(CamelModel):
    id: str
    title: str
    description: str = ""
    technical_prompt: str = ""


class AnalyzeSketchResult(CamelModel):
    ideas: list[PromptIdea]
    usage: UsageRecord
    provider: str = ""
    model: str = ""


class SceneImageResult(CamelModel):
    """Generated or edited scene. ``image_url`` is a remote URL or a data URL."""

    image_url: str
    usage: UsageRecord
    provider: str = ""
    model: str = ""


class EditProperty(CamelModel):
    id: str
    category: str = "General"
    name: str = "Property"
    value: str = ""
    is_active: bool = True


class EditPromptAnalysis(CamelModel):
    optimized_prompt: str
    properties: list[EditProperty] = Field(default_factory=list)
    usage: UsageRecord


class VoiceRecommendation(CamelModel):
    voice_name: str = DEFAULT_VOICE
    reason: str = "Default"
    usage: UsageRecord


class SpeechResult(CamelModel):
    """Raw PCM (24 kHz, mono, 16-bit) as base64."""

    audio_data: str
    usage: UsageRecord


class AmbienceDescription(CamelModel):
    description: str
    usage: UsageRecord
