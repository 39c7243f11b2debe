"""Cinematic orchestrator — one method per high-level operation.

Every operation is a fixed recipe:
  build candidates → FallbackChain (each attempt wrapped in BackoffRetrier)
  → ResponseExtractor / UsageAccountant shape the winning reply.

Single-provider operations (casting, speech, ambience, edit-prompt analysis)
skip the chain but still go through the retrier.

The orchestrator holds only read-only configuration and adapters, so one
instance can serve any number of concurrent requests.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

import config
from config import ProviderSettings
from pipeline.errors import (
    ConfigurationError,
    ContentRejectionError,
    ParseError,
)
from pipeline.extract import extract_json, find_first_list
from pipeline.fallback import (
    Candidate,
    FallbackChain,
    Failure,
    FatalFailure,
    RetryableFailure,
    Success,
    UnsupportedCandidate,
    advance_on_unsupported,
)
from pipeline.providers import (
    AdapterSet,
    ImageGenAdapter,
    ImageRequest,
    SpeechRequest,
    VisionChatAdapter,
    VisionRequest,
)
from pipeline.retry import BackoffRetrier, RetryPolicy
from pipeline.usage import normalize
from prompts.cinematic import (
    AMBIENCE_AUDIO_PROMPT,
    AMBIENCE_DESCRIPTION_PROMPT,
    ANALYZE_SKETCH_PROMPT,
    EDIT_PROMPT_ANALYZER,
    VOICE_CASTING_PROMPT,
    edit_prompt,
    text_only_edit_prompt,
)
from schemas.cinematic import (
    AMBIENCE_VOICE,
    DEFAULT_VOICE,
    VOICE_OPTIONS,
    AmbienceDescription,
    AnalyzeSketchResult,
    EditPromptAnalysis,
    EditProperty,
    PromptIdea,
    SceneImageResult,
    SpeechResult,
    VoiceRecommendation,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

DOUBAO_MODEL_ALIAS = "doubao"
DEFAULT_EDIT_MODEL = "gemini-2.5-flash-image"
MAX_IDEAS = 3

_VOICE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "voiceName": {"type": "STRING", "enum": list(VOICE_OPTIONS)},
        "reason": {"type": "STRING"},
    },
    "required": ["voiceName", "reason"],
}


def _pick(item: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value)
    return ""


def ideas_from_payload(payload: Any, *, provider: str = "", model: str = "") -> list[PromptIdea]:
    """Turn a parsed model payload into at most three PromptIdeas.

    Accepts a bare array or an object wrapping one, and tolerates
    Title/technical_prompt style key variants. Entries that are not objects
    or have no title are dropped.
    """
    items = find_first_list(payload) or []
    ideas: list[PromptIdea] = []
    for item in items:
        if len(ideas) == MAX_IDEAS:
            break
        if not isinstance(item, dict):
            continue
        title = _pick(item, "title", "Title").strip()
        if not title:
            continue
        ideas.append(
            PromptIdea(
                id=f"idea-{len(ideas)}",
                title=title,
                description=_pick(item, "description", "Description"),
                technical_prompt=_pick(item, "technicalPrompt", "technical_prompt", "TechnicalPrompt"),
            )
        )
    if not ideas:
        raise ParseError(
            "Model did not return valid scene ideas", preview=str(payload), provider=provider, model=model,
        )
    return ideas


def analysis_should_advance(outcome: Failure) -> bool:
    """Sketch analysis keeps going past availability and output-quality failures.

    A definitive provider rejection (bad key, bad request) still aborts: the
    next provider sits behind a different credential and must not hide it.
    """
    if isinstance(outcome, (UnsupportedCandidate, RetryableFailure)):
        return True
    if isinstance(outcome, FatalFailure):
        return isinstance(outcome.error, (ParseError, ContentRejectionError))
    return False


class CinematicOrchestrator:
    """Composition root for every provider-backed operation."""

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        *,
        adapters: AdapterSet | None = None,
        retrier: BackoffRetrier | None = None,
    ):
        self.settings = settings or ProviderSettings.from_config()
        self.adapters = adapters or AdapterSet.from_settings(
            self.settings, sized_image_models=(config.IMAGE_MODEL_PRO,),
        )
        self.retrier = retrier or BackoffRetrier(RetryPolicy.from_config())

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _chain(self, operation: str, should_advance: Callable[[Failure], bool] | None = None) -> FallbackChain:
        return FallbackChain(
            retrier=self.retrier,
            should_advance=should_advance or advance_on_unsupported,
            operation=operation,
        )

    async def _single(self, operation: str, provider: str, model: str, call: Callable[[], Awaitable[R]]) -> R:
        logger.info("%s: calling %s/%s", operation, provider, model)
        return await self.retrier.execute(call, label=f"{operation} via {provider}/{model}")

    def _gemini_vision(self) -> VisionChatAdapter:
        if self.adapters.gemini_vision is None:
            raise ConfigurationError("Gemini API key not configured", provider="gemini")
        return self.adapters.gemini_vision

    # ------------------------------------------------------------------
    # Sketch analysis
    # ------------------------------------------------------------------

    def sketch_candidates(self) -> list[Candidate[VisionChatAdapter]]:
        """Doubao first when configured, then Gemini, then OpenAI (never first)."""
        candidates: list[Candidate[VisionChatAdapter]] = []
        if self.adapters.doubao_vision is not None:
            candidates.append(Candidate("doubao", self.settings.doubao_chat_model, self.adapters.doubao_vision))
        else:
            logger.info("Doubao vision not configured, skipping")
        if self.adapters.gemini_vision is not None:
            candidates.append(Candidate("gemini", self.settings.analyze_model, self.adapters.gemini_vision))
        if self.adapters.openai_vision is not None and candidates:
            candidates.append(Candidate("openai", self.settings.openai_vision_model, self.adapters.openai_vision))
        elif self.adapters.openai_vision is not None:
            logger.warning("OpenAI vision is fallback-only; configure Doubao or Gemini for sketch analysis")
        return candidates

    async def analyze_sketch(self, image_base64: str) -> AnalyzeSketchResult:
        candidates = self.sketch_candidates()
        if not candidates:
            raise ConfigurationError("No vision provider configured for sketch analysis (Doubao or Gemini).")

        async def attempt(candidate: Candidate[VisionChatAdapter]) -> Success:
            request = VisionRequest(
                prompt=ANALYZE_SKETCH_PROMPT,
                images=(image_base64,),
                temperature=0.7,
                max_tokens=2048,
                json_mode=candidate.provider == "openai",
            )
            reply = await candidate.adapter.call(request, candidate.model)
            try:
                payload = extract_json(reply.text)
            except ParseError as exc:
                exc.provider, exc.model = candidate.provider, candidate.model
                raise
            ideas = ideas_from_payload(payload, provider=candidate.provider, model=candidate.model)
            logger.info("analyze_sketch: %s returned %d idea(s)", candidate.label, len(ideas))
            return Success(candidate, ideas, reply.usage)

        chain = self._chain("analyze_sketch", analysis_should_advance)
        outcome = await chain.run(candidates, attempt)
        winner = outcome.candidate
        return AnalyzeSketchResult(
            ideas=outcome.payload,
            usage=normalize(winner.provider, outcome.usage, winner.model),
            provider=winner.provider,
            model=winner.model,
        )

    # ------------------------------------------------------------------
    # Scene generation / editing
    # ------------------------------------------------------------------

    def image_candidates(self, model: str) -> list[Candidate[ImageGenAdapter]]:
        """Doubao is its own single-candidate branch; Gemini falls back across models."""
        if model == DOUBAO_MODEL_ALIAS:
            if self.adapters.doubao_image is None:
                raise ConfigurationError(
                    "Doubao API key or image endpoint not configured. Set DOUBAO_API_KEY and DOUBAO_IMAGE_ENDPOINT.",
                    provider="doubao",
                )
            return [Candidate("doubao", self.settings.doubao_image_model, self.adapters.doubao_image)]

        if self.adapters.gemini_image is None:
            raise ConfigurationError("Gemini API key not configured", provider="gemini")
        models: list[str] = []
        for candidate_model in (model, self.settings.image_model_default, self.settings.image_model_fallback):
            if candidate_model and candidate_model != DOUBAO_MODEL_ALIAS and candidate_model not in models:
                models.append(candidate_model)
        return [Candidate("gemini", m, self.adapters.gemini_image) for m in models]

    async def _render(
        self,
        operation: str,
        candidates: list[Candidate[ImageGenAdapter]],
        build_request: Callable[[ImageGenAdapter], ImageRequest],
    ) -> SceneImageResult:
        async def attempt(candidate: Candidate[ImageGenAdapter]) -> Success:
            reply = await candidate.adapter.call(build_request(candidate.adapter), candidate.model)
            return Success(candidate, reply.image_url, reply.usage)

        outcome = await self._chain(operation).run(candidates, attempt)
        winner = outcome.candidate
        return SceneImageResult(
            image_url=outcome.payload,
            usage=normalize(winner.provider, outcome.usage, winner.model),
            provider=winner.provider,
            model=winner.model,
        )

    async def generate_scene(
        self,
        prompt: str,
        model: str = DEFAULT_EDIT_MODEL,
        size: str = "2K",
        reference_image: str | None = None,
        temperature: float | None = 0.5,
    ) -> SceneImageResult:
        candidates = self.image_candidates(model)

        def build(adapter: ImageGenAdapter) -> ImageRequest:
            images: tuple[str, ...] = ()
            if reference_image and adapter.supports_reference_images:
                images = (reference_image,)
            return ImageRequest(prompt=prompt, images=images, size=size, temperature=temperature)

        return await self._render("generate_scene", candidates, build)

    async def edit_scene(
        self,
        image_base64: str,
        instruction: str,
        blend_image: str | None = None,
        model: str | None = None,
        size: str | None = None,
    ) -> SceneImageResult:
        model = model or DEFAULT_EDIT_MODEL
        size = size or "2K"
        candidates = self.image_candidates(model)
        has_blend = bool(blend_image)

        def build(adapter: ImageGenAdapter) -> ImageRequest:
            if not adapter.supports_reference_images:
                return ImageRequest(prompt=text_only_edit_prompt(instruction, has_blend=has_blend), size=size)
            images = (image_base64, blend_image) if has_blend else (image_base64,)
            return ImageRequest(
                prompt=edit_prompt(instruction, has_blend=has_blend),
                images=images,
                size=size,
                images_first=True,
            )

        return await self._render("edit_scene", candidates, build)

    async def analyze_edit_prompt(
        self,
        user_input: str,
        original_image: str,
        blend_image: str | None = None,
    ) -> EditPromptAnalysis:
        adapter = self._gemini_vision()
        model = self.settings.analyze_model
        images = (original_image, blend_image) if blend_image else (original_image,)
        request = VisionRequest(
            prompt=EDIT_PROMPT_ANALYZER.format(user_input=user_input),
            images=images,
            temperature=0.7,
            max_tokens=None,
            json_mode=True,
            images_first=True,
        )
        reply = await self._single("analyze_edit_prompt", "gemini", model, lambda: adapter.call(request, model))

        data = extract_json(reply.text or "{}")
        if not isinstance(data, dict) or not data.get("optimizedPrompt") or not isinstance(data.get("properties"), list):
            raise ParseError(
                "Invalid response from AI prompt analyzer", provider="gemini", model=model, preview=reply.text,
            )

        stamp = int(time.time() * 1000)
        properties = []
        for index, prop in enumerate(data["properties"]):
            prop = prop if isinstance(prop, dict) else {}
            properties.append(
                EditProperty(
                    id=f"prop-{index}-{stamp}",
                    category=str(prop.get("category") or "General"),
                    name=str(prop.get("name") or "Property"),
                    value=str(prop.get("value") or ""),
                    is_active=True,
                )
            )
        return EditPromptAnalysis(
            optimized_prompt=str(data["optimizedPrompt"]),
            properties=properties,
            usage=normalize("gemini", reply.usage, model),
        )

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------

    async def recommend_voice(self, image_base64: str, text: str) -> VoiceRecommendation:
        adapter = self._gemini_vision()
        model = self.settings.analyze_model
        voices = ", ".join(f"{name} ({traits})" for name, traits in VOICE_OPTIONS.items())
        request = VisionRequest(
            prompt=f"Dialogue: {text}",
            images=(image_base64,),
            system_instruction=VOICE_CASTING_PROMPT.format(text=text, voices=voices),
            temperature=None,
            max_tokens=None,
            json_mode=True,
            response_schema=_VOICE_SCHEMA,
            images_first=True,
        )
        reply = await self._single("recommend_voice", "gemini", model, lambda: adapter.call(request, model))

        data = extract_json(reply.text or "{}")
        if not isinstance(data, dict):
            data = {}
        voice_name = str(data.get("voiceName") or "")
        if voice_name not in VOICE_OPTIONS:
            if voice_name:
                logger.warning("recommend_voice: unknown voice '%s', using %s", voice_name, DEFAULT_VOICE)
            voice_name = DEFAULT_VOICE
        return VoiceRecommendation(
            voice_name=voice_name,
            reason=str(data.get("reason") or "Default"),
            usage=normalize("gemini", reply.usage, model),
        )

    async def _speak(self, operation: str, text: str, voice_name: str) -> SpeechResult:
        adapter = self.adapters.gemini_speech
        if adapter is None:
            raise ConfigurationError("Gemini API key not configured", provider="gemini")
        model = self.settings.speech_model
        request = SpeechRequest(text=text, voice_name=voice_name)
        reply = await self._single(operation, "gemini", model, lambda: adapter.call(request, model))
        return SpeechResult(audio_data=reply.audio_base64, usage=normalize("gemini", reply.usage, model))

    async def synthesize_speech(self, text: str, voice_name: str) -> SpeechResult:
        return await self._speak("synthesize_speech", text, voice_name)

    # ------------------------------------------------------------------
    # Ambience
    # ------------------------------------------------------------------

    async def describe_ambience(self, image_base64: str) -> AmbienceDescription:
        adapter = self._gemini_vision()
        model = self.settings.analyze_model
        request = VisionRequest(
            prompt=AMBIENCE_DESCRIPTION_PROMPT,
            images=(image_base64,),
            temperature=None,
            max_tokens=None,
            images_first=True,
        )
        reply = await self._single("describe_ambience", "gemini", model, lambda: adapter.call(request, model))
        return AmbienceDescription(
            description=reply.text.strip() or "Silence.",
            usage=normalize("gemini", reply.usage, model),
        )

    async def synthesize_ambience_audio(self, description: str) -> SpeechResult:
        return await self._speak(
            "synthesize_ambience_audio",
            AMBIENCE_AUDIO_PROMPT.format(description=description),
            AMBIENCE_VOICE,
        )
