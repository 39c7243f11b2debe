"""Provider adapters — one class per backend, one ``call`` per capability.

Three capabilities, each a Protocol:
  - VisionChatAdapter: instruction (+ images) in, free text out.
  - ImageGenAdapter:   prompt (+ reference images) in, image URL / data URL out.
  - SpeechAdapter:     text + voice in, raw PCM (base64) out.

Adapters hide the wire format of their backend and translate every failure
into the taxonomy in ``pipeline.errors`` at their boundary:
  - HTTP 404 / "not found"        → UnsupportedCandidateError
  - timeouts, 429, 5xx gateway    → TransientProviderError
  - empty image / audio payload   → ContentRejectionError
  - anything else (401/403, 400)  → ProviderError
Retry and fallback live elsewhere; adapters make exactly one request per call.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from google import genai
from google.genai import types
from openai import AsyncOpenAI

from config import ProviderSettings
from pipeline.errors import (
    CinematicError,
    ContentRejectionError,
    ProviderError,
    TransientProviderError,
    UnsupportedCandidateError,
    truncate,
)
from pipeline.retry import error_status, is_transient_error

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta"
DOUBAO_IMAGE_PATH = "/api/v3/images/generations"

# Width at or above which Doubao is asked for its larger size tier.
DOUBAO_LARGE_WIDTH = 1920


# ---------------------------------------------------------------------------
# Requests / replies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VisionRequest:
    """Instruction plus zero or more base64 images (no data-URL prefix)."""

    prompt: str
    images: tuple[str, ...] = ()
    mime_type: str = "image/png"
    system_instruction: str | None = None
    temperature: float | None = 0.7
    max_tokens: int | None = 2048
    json_mode: bool = False
    response_schema: dict[str, Any] | None = None
    images_first: bool = False


@dataclass(frozen=True)
class ImageRequest:
    """Prompt plus optional reference images.

    ``images_first`` puts the images before the prompt (edit/composite);
    otherwise the prompt leads (text-to-image with an optional reference).
    """

    prompt: str
    images: tuple[str, ...] = ()
    size: str = "2K"
    aspect_ratio: str = "16:9"
    temperature: float | None = None
    images_first: bool = False


@dataclass(frozen=True)
class SpeechRequest:
    text: str
    voice_name: str


@dataclass(frozen=True)
class TextReply:
    text: str
    usage: Any = None


@dataclass(frozen=True)
class ImageReply:
    image_url: str
    usage: Any = None


@dataclass(frozen=True)
class AudioReply:
    audio_base64: str
    usage: Any = None


class VisionChatAdapter(Protocol):
    provider: str

    async def call(self, request: VisionRequest, model: str) -> TextReply:
        ...


class ImageGenAdapter(Protocol):
    provider: str
    supports_reference_images: bool

    async def call(self, request: ImageRequest, model: str) -> ImageReply:
        ...


class SpeechAdapter(Protocol):
    provider: str

    async def call(self, request: SpeechRequest, model: str) -> AudioReply:
        ...


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

def _error_body(exc: BaseException) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, httpx.Response):
        try:
            return response.text
        except httpx.ResponseNotRead:
            return ""
    body = getattr(exc, "body", None) or getattr(exc, "details", None)
    if body is None:
        return ""
    return body if isinstance(body, str) else json.dumps(body, default=str)


def _error_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or type(exc).__name__


def translate_error(exc: BaseException, *, provider: str, model: str) -> CinematicError:
    """Map any SDK / HTTP / network exception onto the error taxonomy."""
    if isinstance(exc, CinematicError):
        return exc

    status = error_status(exc)
    message = _error_message(exc)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        message = f"request timed out ({message})" if message != type(exc).__name__ else "request timed out"

    text = f"[{provider}/{model}] {truncate(message, 300)}"
    body = _error_body(exc)

    if status in (401, 403):
        return ProviderError(
            f"[{provider}] Authentication failed ({status}). Check the {provider} API key.",
            provider=provider, model=model, status_code=status, body=body, cause=exc,
        )
    if status == 404 or (status is None and "not found" in message.lower()):
        return UnsupportedCandidateError(
            text, provider=provider, model=model, status_code=status, body=body, cause=exc,
        )
    if is_transient_error(exc):
        return TransientProviderError(
            text, provider=provider, model=model, status_code=status, body=body, cause=exc,
        )
    return ProviderError(text, provider=provider, model=model, status_code=status, body=body, cause=exc)


def _raise_for_status(response: httpx.Response, *, provider: str, model: str) -> None:
    if response.is_success:
        return
    body = response.text
    logger.error(
        "%s API error: status=%d body=%s", provider, response.status_code, truncate(body, 200),
    )
    message = body
    try:
        data = response.json()
        if isinstance(data, dict):
            inner = data.get("error")
            if isinstance(inner, dict) and inner.get("message"):
                message = str(inner["message"])
    except ValueError:
        pass
    exc = httpx.HTTPStatusError(
        f"{provider} API error ({response.status_code} {response.reason_phrase}): {truncate(message, 300)}",
        request=response.request,
        response=response,
    )
    raise translate_error(exc, provider=provider, model=model) from exc


def data_url(image_base64: str, mime_type: str = "image/png") -> str:
    if image_base64.startswith("data:"):
        return image_base64
    return f"data:{mime_type};base64,{image_base64}"


# ---------------------------------------------------------------------------
# Doubao (OpenAI-compatible chat + Seedream image endpoint, raw httpx)
# ---------------------------------------------------------------------------

class _DoubaoHttp:
    provider = "doubao"

    def __init__(self, *, api_key: str, timeout: float, http_client: httpx.AsyncClient | None = None):
        self._api_key = api_key
        self._timeout = timeout
        self._http_client = http_client

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def _post(self, url: str, payload: dict[str, Any], *, model: str) -> dict[str, Any]:
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, headers=self._headers(), json=payload, timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise translate_error(exc, provider=self.provider, model=model) from exc

        _raise_for_status(response, provider=self.provider, model=model)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"[{self.provider}/{model}] Invalid JSON response",
                provider=self.provider,
                model=model,
                status_code=response.status_code,
                body=response.text,
                cause=exc,
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                f"[{self.provider}/{model}] Unexpected response shape",
                provider=self.provider,
                model=model,
                body=response.text,
            )
        return data


class DoubaoVisionAdapter(_DoubaoHttp):
    """Doubao vision chat: image_url (data URL) + text in one user message."""

    def __init__(self, *, api_key: str, endpoint: str, timeout: float = 60.0,
                 http_client: httpx.AsyncClient | None = None):
        super().__init__(api_key=api_key, timeout=timeout, http_client=http_client)
        self.endpoint = endpoint

    async def call(self, request: VisionRequest, model: str) -> TextReply:
        content: list[dict[str, Any]] = []
        if request.images:
            content.append({"type": "image_url", "image_url": {"url": data_url(request.images[0], "image/jpeg")}})
        content.append({"type": "text", "text": request.prompt})
        messages: list[dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append({"role": "user", "content": content})

        payload: dict[str, Any] = {
            "model": model,
            "max_completion_tokens": request.max_tokens or 4096,
            "reasoning_effort": "medium",
            "messages": messages,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature

        logger.info("Doubao vision request: model=%s prompt=%d chars", model, len(request.prompt))
        data = await self._post(self.endpoint, payload, model=model)

        choices = data.get("choices") or []
        message = (choices[0] or {}).get("message") if choices else None
        text = str((message or {}).get("content") or "").strip()
        if not text:
            raise ContentRejectionError(
                f"[doubao/{model}] Empty response from Doubao", provider=self.provider, model=model,
            )
        logger.info("Doubao vision success: %d chars, usage=%s", len(text), data.get("usage"))
        return TextReply(text=text, usage=data.get("usage"))


def doubao_image_size(size: str) -> str:
    """Map a 1K/2K/4K tier onto Doubao's two accepted sizes via a 16:9 width."""
    width = 1920 if size in ("2K", "4K") else 1024
    return "2K" if width >= DOUBAO_LARGE_WIDTH else "1K"


class DoubaoImageAdapter(_DoubaoHttp):
    """Doubao Seedream text-to-image. Reference images are not supported."""

    supports_reference_images = False

    def __init__(self, *, api_key: str, endpoint: str, timeout: float = 120.0,
                 http_client: httpx.AsyncClient | None = None):
        super().__init__(api_key=api_key, timeout=timeout, http_client=http_client)
        base = endpoint.rstrip("/")
        self.url = base if DOUBAO_IMAGE_PATH in base else f"{base}{DOUBAO_IMAGE_PATH}"

    async def call(self, request: ImageRequest, model: str) -> ImageReply:
        if request.images:
            logger.info("Doubao image: ignoring %d reference image(s), text-to-image only", len(request.images))
        payload = {
            "model": model,
            "prompt": request.prompt,
            "response_format": "url",
            "size": doubao_image_size(request.size),
            "stream": False,
            "watermark": True,
        }
        logger.info("Doubao image request: model=%s size=%s prompt=%d chars", model, payload["size"], len(request.prompt))
        data = await self._post(self.url, payload, model=model)

        urls = [item.get("url") for item in data.get("data") or [] if isinstance(item, dict) and item.get("url")]
        if not urls:
            raise ContentRejectionError(
                f"[doubao/{model}] No image URLs from Doubao. Response: {truncate(json.dumps(data), 200)}",
                provider=self.provider,
                model=model,
            )
        return ImageReply(image_url=urls[0], usage=data.get("usage"))


# ---------------------------------------------------------------------------
# Gemini (google-genai SDK)
# ---------------------------------------------------------------------------

def build_gemini_client(settings: ProviderSettings) -> genai.Client:
    endpoint = settings.gemini_endpoint.rstrip("/")
    if not endpoint or endpoint == DEFAULT_GEMINI_ENDPOINT:
        return genai.Client(api_key=settings.gemini_api_key)
    base_url, _, api_version = endpoint.rpartition("/")
    if not api_version.startswith("v"):
        base_url, api_version = endpoint, "v1beta"
    return genai.Client(
        api_key=settings.gemini_api_key,
        http_options=types.HttpOptions(base_url=base_url + "/", api_version=api_version),
    )


def _response_parts(response: Any) -> list[Any]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    return list(getattr(content, "parts", None) or [])


def _finish_reason(response: Any) -> str:
    candidates = getattr(response, "candidates", None) or []
    reason = getattr(candidates[0], "finish_reason", None) if candidates else None
    return str(getattr(reason, "name", reason) or "Unknown")


def _inline_bytes(part: Any) -> tuple[bytes, str] | None:
    inline = getattr(part, "inline_data", None)
    data = getattr(inline, "data", None) if inline is not None else None
    if not data:
        return None
    if isinstance(data, str):
        data = base64.b64decode(data)
    return bytes(data), str(getattr(inline, "mime_type", "") or "")


def _response_text(response: Any) -> str:
    try:
        text = str(getattr(response, "text", "") or "").strip()
    except ValueError:
        text = ""
    if text:
        return text
    chunks = [str(getattr(part, "text", "") or "") for part in _response_parts(response)]
    return "".join(chunks).strip()


class _GeminiBase:
    provider = "gemini"

    def __init__(self, client: genai.Client, *, timeout: float):
        self._client = client
        self._timeout = timeout

    async def _generate(self, *, model: str, contents: list[Any], config: types.GenerateContentConfig) -> Any:
        try:
            return await asyncio.wait_for(
                self._client.aio.models.generate_content(model=model, contents=contents, config=config),
                timeout=self._timeout,
            )
        except Exception as exc:
            raise translate_error(exc, provider=self.provider, model=model) from exc


def _image_parts(images: tuple[str, ...], *, model: str, mime_type: str = "image/png") -> list[Any]:
    parts = []
    for image in images:
        try:
            data = base64.b64decode("".join(image.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProviderError(
                f"[gemini/{model}] Invalid base64 image data", provider="gemini", model=model, cause=exc,
            ) from exc
        parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))
    return parts


class GeminiVisionAdapter(_GeminiBase):
    """Gemini multimodal text generation (analysis, casting, ambience, prompt analysis)."""

    def __init__(self, client: genai.Client, *, timeout: float = 60.0):
        super().__init__(client, timeout=timeout)

    async def call(self, request: VisionRequest, model: str) -> TextReply:
        text_part = types.Part.from_text(text=request.prompt)
        images = _image_parts(request.images, model=model, mime_type=request.mime_type)
        contents = images + [text_part] if request.images_first else [text_part] + images

        options: dict[str, Any] = {
            "system_instruction": request.system_instruction,
            "temperature": request.temperature,
            "max_output_tokens": request.max_tokens,
        }
        if request.json_mode:
            options["response_mime_type"] = "application/json"
        if request.response_schema is not None:
            options["response_schema"] = request.response_schema
        config = types.GenerateContentConfig(**options)

        logger.info("Gemini [%s]: json_mode=%s images=%d", model, request.json_mode, len(request.images))
        response = await self._generate(model=model, contents=contents, config=config)
        text = _response_text(response)
        logger.info("Gemini [%s]: %d chars, usage_meta=%s", model, len(text), getattr(response, "usage_metadata", None))
        return TextReply(text=text, usage=getattr(response, "usage_metadata", None))


class GeminiImageAdapter(_GeminiBase):
    """Gemini image generation / editing through generateContent with IMAGE modality."""

    supports_reference_images = True

    def __init__(self, client: genai.Client, *, timeout: float = 120.0, sized_models: tuple[str, ...] = ()):
        super().__init__(client, timeout=timeout)
        self._sized_models = sized_models

    async def call(self, request: ImageRequest, model: str) -> ImageReply:
        text_part = types.Part.from_text(text=request.prompt)
        images = _image_parts(request.images, model=model)
        contents = images + [text_part] if request.images_first else [text_part] + images

        image_options: dict[str, Any] = {"aspect_ratio": request.aspect_ratio}
        if model in self._sized_models:
            image_options["image_size"] = request.size
        config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            temperature=request.temperature,
            image_config=types.ImageConfig(**image_options),
        )

        logger.info("Gemini image [%s]: size=%s refs=%d", model, request.size, len(request.images))
        response = await self._generate(model=model, contents=contents, config=config)

        text_chunks: list[str] = []
        for part in _response_parts(response):
            inline = _inline_bytes(part)
            if inline is not None:
                data, mime_type = inline
                image_url = data_url(base64.b64encode(data).decode("ascii"), mime_type or "image/png")
                return ImageReply(image_url=image_url, usage=getattr(response, "usage_metadata", None))
            if getattr(part, "text", None):
                text_chunks.append(str(part.text))

        reason = "".join(text_chunks) or f"Failed to generate image (Reason: {_finish_reason(response)})"
        raise ContentRejectionError(truncate(reason), provider=self.provider, model=model)


class GeminiSpeechAdapter(_GeminiBase):
    """Gemini TTS. Returns 24 kHz mono 16-bit PCM as base64."""

    def __init__(self, client: genai.Client, *, timeout: float = 90.0):
        super().__init__(client, timeout=timeout)

    async def call(self, request: SpeechRequest, model: str) -> AudioReply:
        config = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=request.voice_name),
                ),
            ),
        )
        logger.info("Gemini speech [%s]: voice=%s text=%d chars", model, request.voice_name, len(request.text))
        response = await self._generate(
            model=model,
            contents=[types.Part.from_text(text=request.text)],
            config=config,
        )
        for part in _response_parts(response):
            inline = _inline_bytes(part)
            if inline is not None:
                audio = base64.b64encode(inline[0]).decode("ascii")
                return AudioReply(audio_base64=audio, usage=getattr(response, "usage_metadata", None))

        raise ContentRejectionError(
            f"[gemini/{model}] No audio generated (Reason: {_finish_reason(response)})",
            provider=self.provider,
            model=model,
        )


# ---------------------------------------------------------------------------
# OpenAI (vision fallback only)
# ---------------------------------------------------------------------------

class OpenAIVisionAdapter:
    """OpenAI chat completions with an inline image. JSON-object mode only."""

    provider = "openai"

    def __init__(self, *, api_key: str = "", timeout: float = 60.0, client: AsyncOpenAI | None = None):
        # SDK-level retries are disabled: BackoffRetrier owns retry policy.
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def call(self, request: VisionRequest, model: str) -> TextReply:
        content: list[dict[str, Any]] = [{"type": "text", "text": request.prompt}]
        for image in request.images[:1]:
            content.append({"type": "image_url", "image_url": {"url": data_url(image, request.mime_type)}})
        messages: list[dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append({"role": "user", "content": content})

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens

        logger.info("OpenAI vision [%s]: prompt=%d chars", model, len(request.prompt))
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise translate_error(exc, provider=self.provider, model=model) from exc

        text = ""
        if response.choices:
            text = str(response.choices[0].message.content or "").strip()
        if not text:
            raise ContentRejectionError(
                f"[openai/{model}] Empty response from OpenAI", provider=self.provider, model=model,
            )
        logger.info("OpenAI vision [%s]: %d chars, usage=%s", model, len(text), response.usage)
        return TextReply(text=text, usage=response.usage)


@dataclass
class AdapterSet:
    """Adapters built from one ProviderSettings; ``None`` where unconfigured."""

    gemini_vision: GeminiVisionAdapter | None = None
    gemini_image: GeminiImageAdapter | None = None
    gemini_speech: GeminiSpeechAdapter | None = None
    doubao_vision: DoubaoVisionAdapter | None = None
    doubao_image: DoubaoImageAdapter | None = None
    openai_vision: OpenAIVisionAdapter | None = None

    @classmethod
    def from_settings(cls, settings: ProviderSettings, *, sized_image_models: tuple[str, ...] = ()) -> "AdapterSet":
        adapters = cls()
        if settings.gemini_configured:
            client = build_gemini_client(settings)
            adapters.gemini_vision = GeminiVisionAdapter(client, timeout=settings.analyze_timeout)
            adapters.gemini_image = GeminiImageAdapter(
                client, timeout=settings.image_timeout, sized_models=sized_image_models,
            )
            adapters.gemini_speech = GeminiSpeechAdapter(client, timeout=settings.speech_timeout)
        if settings.doubao_chat_configured:
            adapters.doubao_vision = DoubaoVisionAdapter(
                api_key=settings.doubao_api_key,
                endpoint=settings.doubao_chat_endpoint,
                timeout=settings.analyze_timeout,
            )
        if settings.doubao_image_configured:
            adapters.doubao_image = DoubaoImageAdapter(
                api_key=settings.doubao_api_key,
                endpoint=settings.doubao_image_endpoint,
                timeout=settings.image_timeout,
            )
        if settings.openai_configured:
            adapters.openai_vision = OpenAIVisionAdapter(
                api_key=settings.openai_api_key, timeout=settings.analyze_timeout,
            )
        return adapters
