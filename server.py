"""Cinematic Sketch — Web Server.

FastAPI backend exposing the cinematic routes the browser client calls:
sketch analysis, scene generation and editing, voice casting and speech,
ambience description and audio. Each route validates its body with a
pydantic request model, strips data-URL prefixes and awaits exactly one
orchestrator operation.

Usage:
    python server.py
    # Then POST to http://localhost:8000/api/cinematic/...
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field, StrictStr

import config
from config import ProviderSettings
from pipeline.audio import pcm_base64_to_wav_base64, strip_data_url
from pipeline.errors import CinematicError, ConfigurationError
from pipeline.orchestrator import DEFAULT_EDIT_MODEL, CinematicOrchestrator
from pipeline.retry import is_transient_error
from schemas.cinematic import CamelModel

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = (
    "Network or AI service unavailable. Check your connection and API key, then try again."
)

_orchestrator: CinematicOrchestrator | None = None


def _get_orchestrator() -> CinematicOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CinematicOrchestrator(ProviderSettings.from_config())
    return _orchestrator


def _check_api_keys(settings: ProviderSettings) -> list[str]:
    """Check which provider credentials are configured. Returns list of warnings."""
    warnings = []
    if not settings.gemini_configured:
        warnings.append("GEMINI_API_KEY is not set: image, voice and ambience routes will fail")
    if not settings.doubao_chat_configured:
        warnings.append("Doubao chat (DOUBAO_API_KEY / DOUBAO_CHAT_ENDPOINT) not configured: analysis skips Doubao")
    if not settings.doubao_image_configured:
        warnings.append("Doubao image (DOUBAO_API_KEY / DOUBAO_IMAGE_ENDPOINT) not configured: model 'doubao' unavailable")
    if not settings.openai_configured:
        warnings.append("OPENAI_API_KEY is not set: no OpenAI fallback for sketch analysis")
    return warnings


@asynccontextmanager
async def lifespan(app: FastAPI):
    key_warnings = _check_api_keys(_get_orchestrator().settings)
    if key_warnings:
        logger.warning("=" * 60)
        logger.warning("PROVIDER WARNINGS:")
        for w in key_warnings:
            logger.warning("  • %s", w)
        logger.warning("=" * 60)
    else:
        logger.info("Providers: all configured")
    yield


app = FastAPI(title="Cinematic Sketch", version="1.0.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

RequiredStr = Annotated[StrictStr, Field(min_length=1)]


class AnalyzeRequest(CamelModel):
    image_base64: RequiredStr


class GenerateRequest(CamelModel):
    prompt: RequiredStr
    model: Optional[StrictStr] = None
    size: Optional[StrictStr] = None
    reference_image_base64: Optional[StrictStr] = None
    temperature: float = 0.5


class EditRequest(CamelModel):
    image_base64: RequiredStr
    instruction: RequiredStr
    blend_image_base64: Optional[StrictStr] = None
    model: Optional[StrictStr] = None
    size: Optional[StrictStr] = None


class AnalyzePromptRequest(CamelModel):
    user_input: RequiredStr
    original_image_base64: RequiredStr
    blend_image_base64: Optional[StrictStr] = None


class VoiceRecommendRequest(CamelModel):
    image_base64: RequiredStr
    text: RequiredStr


class SpeechRequestBody(CamelModel):
    text: RequiredStr
    voice_name: RequiredStr


class AmbienceDescriptionRequest(CamelModel):
    image_base64: RequiredStr


class AmbienceAudioRequest(CamelModel):
    description: RequiredStr


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def validation_message(exc: RequestValidationError) -> str:
    """First failing body field as ``Missing or invalid <field>``."""
    for error in exc.errors():
        loc = error.get("loc") or ()
        if error.get("type") == "json_invalid" or len(loc) < 2 or loc[0] != "body":
            return "Invalid JSON body"
        return f"Missing or invalid {loc[-1]}"
    return "Invalid request"


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = validation_message(exc)
    logger.warning("[%s] %s", request.url.path, message)
    return JSONResponse({"error": message}, status_code=400)


def _optional_image(value: str | None) -> str | None:
    return strip_data_url(value) if value else None


def error_response(exc: Exception, route: str) -> JSONResponse:
    """Map an orchestration error onto an HTTP status; the body always carries ``kind``."""
    if isinstance(exc, CinematicError):
        payload = exc.to_payload()
        retryable = exc.retryable
    else:
        retryable = is_transient_error(exc)
        payload = {"error": str(exc) or "Request failed", "kind": "error", "retryable": retryable}

    if isinstance(exc, ConfigurationError):
        status = 500
    elif retryable:
        status = 503
        payload["detail"] = payload["error"]
        payload["error"] = NETWORK_ERROR_MESSAGE
    else:
        status = 500

    logger.error("[%s] %s: %s", route, type(exc).__name__, payload.get("detail") or payload["error"])
    return JSONResponse(payload, status_code=status)


async def _handle(route: str, operation: Callable[[], Awaitable[Any]]) -> Any:
    start = time.time()
    try:
        result = await operation()
    except Exception as exc:
        logger.error("[%s] failed after %.0fms", route, (time.time() - start) * 1000)
        return error_response(exc, route)
    logger.info("[%s] success in %.0fms", route, (time.time() - start) * 1000)
    return result


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/cinematic/analyze")
async def api_analyze(req: AnalyzeRequest):
    async def run():
        return _dump(await _get_orchestrator().analyze_sketch(strip_data_url(req.image_base64)))

    return await _handle("cinematic/analyze", run)


@app.post("/api/cinematic/generate")
async def api_generate(req: GenerateRequest):
    async def run():
        result = await _get_orchestrator().generate_scene(
            req.prompt,
            model=req.model or DEFAULT_EDIT_MODEL,
            size=req.size or "2K",
            reference_image=_optional_image(req.reference_image_base64),
            temperature=req.temperature,
        )
        return _dump(result)

    return await _handle("cinematic/generate", run)


@app.post("/api/cinematic/edit")
async def api_edit(req: EditRequest):
    async def run():
        result = await _get_orchestrator().edit_scene(
            strip_data_url(req.image_base64),
            req.instruction,
            blend_image=_optional_image(req.blend_image_base64),
            model=req.model or None,
            size=req.size or None,
        )
        return _dump(result)

    return await _handle("cinematic/edit", run)


@app.post("/api/cinematic/edit/analyze-prompt")
async def api_edit_analyze_prompt(req: AnalyzePromptRequest):
    async def run():
        result = await _get_orchestrator().analyze_edit_prompt(
            req.user_input,
            strip_data_url(req.original_image_base64),
            _optional_image(req.blend_image_base64),
        )
        return _dump(result)

    return await _handle("cinematic/edit/analyze-prompt", run)


@app.post("/api/cinematic/voice/recommend")
async def api_voice_recommend(req: VoiceRecommendRequest):
    async def run():
        return _dump(await _get_orchestrator().recommend_voice(strip_data_url(req.image_base64), req.text))

    return await _handle("cinematic/voice/recommend", run)


@app.post("/api/cinematic/voice/speech")
async def api_voice_speech(req: SpeechRequestBody):
    async def run():
        return _dump(await _get_orchestrator().synthesize_speech(req.text, req.voice_name))

    return await _handle("cinematic/voice/speech", run)


@app.post("/api/cinematic/ambience/description")
async def api_ambience_description(req: AmbienceDescriptionRequest):
    async def run():
        return _dump(await _get_orchestrator().describe_ambience(strip_data_url(req.image_base64)))

    return await _handle("cinematic/ambience/description", run)


@app.post("/api/cinematic/ambience/audio")
async def api_ambience_audio(req: AmbienceAudioRequest):
    async def run():
        result = await _get_orchestrator().synthesize_ambience_audio(req.description)
        return {
            "audioDataBase64Wav": pcm_base64_to_wav_base64(result.audio_data),
            "usage": _dump(result.usage),
        }

    return await _handle("cinematic/ambience/audio", run)


@app.get("/api/health")
async def api_health():
    """Which providers are configured."""
    settings = _get_orchestrator().settings
    providers = {
        "gemini": settings.gemini_configured,
        "doubao_chat": settings.doubao_chat_configured,
        "doubao_image": settings.doubao_image_configured,
        "openai": settings.openai_configured,
    }
    return {
        "ok": settings.gemini_configured,
        "providers": providers,
        "any_provider_configured": any(providers.values()),
        "warnings": _check_api_keys(settings),
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    print("\n  Cinematic Sketch API")
    print("  http://localhost:8000\n")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
