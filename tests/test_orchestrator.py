from __future__ import annotations

import asyncio
import json
import unittest

from config import ProviderSettings
from pipeline.errors import (
    AggregateExhaustionError,
    ConfigurationError,
    ContentRejectionError,
    ParseError,
    ProviderError,
    TransientProviderError,
    UnsupportedCandidateError,
)
from pipeline.orchestrator import CinematicOrchestrator, ideas_from_payload
from pipeline.providers import AdapterSet, AudioReply, ImageReply, TextReply
from pipeline.retry import BackoffRetrier, RetryPolicy

IDEAS = [
    {"title": "Lantern Night", "description": "A glowing festival", "technicalPrompt": "Ghibli style, watercolor"},
    {"title": "Toy Town", "description": "Tiny heroes", "technicalPrompt": "Pixar style, octane render"},
    {"title": "Castle Dawn", "description": "A royal sunrise", "technicalPrompt": "Disney style, storybook"},
]

SETTINGS = ProviderSettings(
    gemini_api_key="test-gemini-key",
    doubao_api_key="test-doubao-key",
    doubao_chat_endpoint="https://ark.test/api/v3/chat/completions",
    doubao_image_endpoint="https://ark.test",
    openai_api_key="test-openai-key",
)


class _RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeAdapter:
    """Replays scripted replies; the last one repeats. Exceptions are raised."""

    def __init__(self, provider: str, *replies, supports_reference_images: bool = True):
        self.provider = provider
        self.supports_reference_images = supports_reference_images
        self.replies = list(replies)
        self.calls: list[tuple[object, str]] = []

    async def call(self, request, model):
        self.calls.append((request, model))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


def _text(value, usage=None) -> TextReply:
    return TextReply(text=value if isinstance(value, str) else json.dumps(value), usage=usage)


def _orchestrator(**adapters) -> tuple[CinematicOrchestrator, _RecordingSleep]:
    sleep = _RecordingSleep()
    orchestrator = CinematicOrchestrator(
        SETTINGS,
        adapters=AdapterSet(**adapters),
        retrier=BackoffRetrier(RetryPolicy(), sleep=sleep),
    )
    return orchestrator, sleep


class AnalyzeSketchTests(unittest.TestCase):
    def test_primary_success_with_fenced_json(self):
        doubao = FakeAdapter("doubao", _text("```json\n" + json.dumps(IDEAS) + "\n```", {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150}))
        gemini = FakeAdapter("gemini", _text(IDEAS))
        orchestrator, sleep = _orchestrator(doubao_vision=doubao, gemini_vision=gemini)

        result = asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(result.provider, "doubao")
        self.assertEqual([idea.id for idea in result.ideas], ["idea-0", "idea-1", "idea-2"])
        self.assertEqual(result.ideas[1].technical_prompt, "Pixar style, octane render")
        self.assertEqual(result.usage.total_tokens, 150)
        self.assertEqual(result.usage.estimated_cost, "$0.000000")
        self.assertEqual(gemini.calls, [])
        self.assertEqual(sleep.delays, [])
        request, model = doubao.calls[0]
        self.assertEqual(request.images, ("c2tldGNo",))
        self.assertFalse(request.json_mode)
        self.assertEqual(model, SETTINGS.doubao_chat_model)

    def test_gemini_only_with_prose_wrapped_array(self):
        gemini = FakeAdapter("gemini", _text("Here are three ideas for your sketch:\n" + json.dumps(IDEAS) + "\nHope you like them!"))
        orchestrator, _ = _orchestrator(gemini_vision=gemini)

        result = asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(result.provider, "gemini")
        self.assertEqual(len(result.ideas), 3)
        self.assertTrue(all(idea.title for idea in result.ideas))

    def test_transient_primary_is_retried_then_falls_back(self):
        doubao = FakeAdapter("doubao", TransientProviderError("503 overloaded", status_code=503))
        gemini = FakeAdapter("gemini", _text(IDEAS, {"prompt_token_count": 10, "candidates_token_count": 20, "total_token_count": 30}))
        orchestrator, sleep = _orchestrator(doubao_vision=doubao, gemini_vision=gemini)

        result = asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(len(doubao.calls), 4)
        self.assertEqual(sleep.delays, [2.0, 4.0, 8.0])
        self.assertEqual(result.provider, "gemini")
        self.assertEqual(result.model, SETTINGS.analyze_model)
        self.assertEqual(result.usage.total_tokens, 30)

    def test_unparseable_primary_falls_back(self):
        doubao = FakeAdapter("doubao", _text("What a lovely sketch! I see a dragon."))
        gemini = FakeAdapter("gemini", _text({"ideas": IDEAS}))
        orchestrator, _ = _orchestrator(doubao_vision=doubao, gemini_vision=gemini)

        result = asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(len(doubao.calls), 1)
        self.assertEqual(result.provider, "gemini")
        self.assertEqual(len(result.ideas), 3)

    def test_auth_failure_aborts_without_fallback(self):
        doubao = FakeAdapter("doubao", ProviderError("[doubao] Authentication failed (401).", status_code=401))
        gemini = FakeAdapter("gemini", _text(IDEAS))
        orchestrator, sleep = _orchestrator(doubao_vision=doubao, gemini_vision=gemini)

        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(len(doubao.calls), 1)
        self.assertEqual(gemini.calls, [])
        self.assertEqual(sleep.delays, [])

    def test_openai_is_last_and_uses_json_mode(self):
        gemini = FakeAdapter("gemini", UnsupportedCandidateError("model not found", status_code=404))
        openai = FakeAdapter("openai", _text({"ideas": IDEAS[:2]}, {"prompt_tokens": 1000, "completion_tokens": 0, "total_tokens": 1000}))
        orchestrator, _ = _orchestrator(gemini_vision=gemini, openai_vision=openai)

        result = asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(result.provider, "openai")
        self.assertEqual(len(result.ideas), 2)
        self.assertTrue(openai.calls[0][0].json_mode)
        self.assertEqual(result.usage.estimated_cost, "$0.000150")

    def test_openai_alone_is_not_enough(self):
        orchestrator, _ = _orchestrator(openai_vision=FakeAdapter("openai", _text(IDEAS)))
        with self.assertRaises(ConfigurationError):
            asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

    def test_every_candidate_failing_is_aggregated(self):
        orchestrator, _ = _orchestrator(
            doubao_vision=FakeAdapter("doubao", _text("no json")),
            gemini_vision=FakeAdapter("gemini", ContentRejectionError("empty")),
        )
        with self.assertRaises(AggregateExhaustionError) as ctx:
            asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))
        self.assertEqual(len(ctx.exception.attempted), 2)
        self.assertFalse(ctx.exception.retryable)

    def test_ideas_payload_shapes(self):
        ideas = ideas_from_payload([{"Title": "T", "technical_prompt": "P"}] + IDEAS)
        self.assertEqual(len(ideas), 3)
        self.assertEqual((ideas[0].title, ideas[0].technical_prompt, ideas[0].description), ("T", "P", ""))
        with self.assertRaises(ParseError):
            ideas_from_payload({"title": "lonely"})
        with self.assertRaises(ParseError):
            ideas_from_payload([])

    def test_malformed_idea_entries_are_skipped(self):
        ideas = ideas_from_payload(["oops", {"title": "  ", "technicalPrompt": "P"}, None] + IDEAS)
        self.assertEqual([idea.title for idea in ideas], ["Lantern Night", "Toy Town", "Castle Dawn"])
        self.assertEqual([idea.id for idea in ideas], ["idea-0", "idea-1", "idea-2"])

    def test_payload_without_usable_ideas_carries_provider(self):
        with self.assertRaises(ParseError) as ctx:
            ideas_from_payload({"ideas": ["a", 1, {"description": "no title"}]}, provider="doubao", model="doubao-seed")
        self.assertEqual((ctx.exception.provider, ctx.exception.model), ("doubao", "doubao-seed"))

    def test_untitled_ideas_from_primary_fall_back(self):
        doubao = FakeAdapter("doubao", _text([{"description": "no title"}, "junk"]))
        gemini = FakeAdapter("gemini", _text(IDEAS))
        orchestrator, _ = _orchestrator(doubao_vision=doubao, gemini_vision=gemini)

        result = asyncio.run(orchestrator.analyze_sketch("c2tldGNo"))

        self.assertEqual(len(doubao.calls), 1)
        self.assertEqual(result.provider, "gemini")
        self.assertEqual(len(result.ideas), 3)


class SceneImageTests(unittest.TestCase):
    def test_gemini_model_fallback_on_unsupported(self):
        gemini = FakeAdapter(
            "gemini",
            UnsupportedCandidateError("models/gemini-x is not found", status_code=404),
            ImageReply("data:image/png;base64,QUJD", {"prompt_token_count": 10, "candidates_token_count": 0, "total_token_count": 10}),
        )
        orchestrator, _ = _orchestrator(gemini_image=gemini)

        result = asyncio.run(orchestrator.generate_scene("A fox", model="gemini-x", reference_image="UkVG"))

        self.assertEqual([model for _, model in gemini.calls], ["gemini-x", SETTINGS.image_model_default])
        self.assertEqual(result.image_url, "data:image/png;base64,QUJD")
        self.assertEqual(result.model, SETTINGS.image_model_default)
        request = gemini.calls[0][0]
        self.assertEqual(request.prompt, "A fox")
        self.assertEqual(request.images, ("UkVG",))
        self.assertEqual(request.temperature, 0.5)

    def test_cost_uses_the_model_that_answered(self):
        usage = {"prompt_token_count": 1_000_000, "candidates_token_count": 0, "total_token_count": 1_000_000}
        gemini = FakeAdapter(
            "gemini",
            UnsupportedCandidateError("models/gemini-3-pro-image-preview is not found", status_code=404),
            ImageReply("data:image/png;base64,QUJD", usage),
        )
        orchestrator, _ = _orchestrator(gemini_image=gemini)

        result = asyncio.run(orchestrator.edit_scene("QkFTRQ==", "Add rain", model="gemini-3-pro-image-preview"))

        self.assertEqual(result.model, SETTINGS.image_model_default)
        self.assertEqual(result.usage.estimated_cost, "$0.075000")

    def test_gemini_candidates_are_deduplicated(self):
        orchestrator, _ = _orchestrator(gemini_image=FakeAdapter("gemini", ImageReply("x")))
        models = [c.model for c in orchestrator.image_candidates(SETTINGS.image_model_fallback)]
        self.assertEqual(models, [SETTINGS.image_model_fallback, SETTINGS.image_model_default])

    def test_content_rejection_does_not_fall_back(self):
        gemini = FakeAdapter("gemini", ContentRejectionError("Failed to generate image (Reason: SAFETY)"))
        orchestrator, _ = _orchestrator(gemini_image=gemini)
        with self.assertRaises(ContentRejectionError):
            asyncio.run(orchestrator.generate_scene("A fox"))
        self.assertEqual(len(gemini.calls), 1)

    def test_doubao_ignores_reference_image(self):
        doubao = FakeAdapter("doubao", ImageReply("https://cdn.test/a.png", {}), supports_reference_images=False)
        orchestrator, _ = _orchestrator(doubao_image=doubao)

        result = asyncio.run(orchestrator.generate_scene("A fox", model="doubao", size="4K", reference_image="UkVG"))

        self.assertEqual(result.provider, "doubao")
        self.assertEqual(result.image_url, "https://cdn.test/a.png")
        self.assertEqual(result.usage.estimated_cost, "$0.000000")
        request, model = doubao.calls[0]
        self.assertEqual(request.prompt, "A fox")
        self.assertEqual(request.images, ())
        self.assertEqual(request.size, "4K")
        self.assertEqual(model, SETTINGS.doubao_image_model)

    def test_doubao_not_configured(self):
        orchestrator, _ = _orchestrator(gemini_image=FakeAdapter("gemini", ImageReply("x")))
        with self.assertRaises(ConfigurationError):
            asyncio.run(orchestrator.generate_scene("A fox", model="doubao"))

    def test_gemini_not_configured(self):
        orchestrator, _ = _orchestrator()
        with self.assertRaises(ConfigurationError):
            asyncio.run(orchestrator.generate_scene("A fox"))

    def test_edit_with_blend_uses_compositor_prompt(self):
        gemini = FakeAdapter("gemini", ImageReply("data:image/png;base64,QUJD"))
        orchestrator, _ = _orchestrator(gemini_image=gemini)

        asyncio.run(orchestrator.edit_scene("QkFTRQ==", "Add the dragon", blend_image="QkxFTkQ="))

        request, model = gemini.calls[0]
        self.assertEqual(model, "gemini-2.5-flash-image")
        self.assertEqual(request.images, ("QkFTRQ==", "QkxFTkQ="))
        self.assertTrue(request.images_first)
        self.assertIn("CINEMATIC COMPOSITOR", request.prompt)
        self.assertIn("USER INSTRUCTION: Add the dragon", request.prompt)
        self.assertEqual(request.size, "2K")

    def test_edit_without_instruction_uses_default(self):
        gemini = FakeAdapter("gemini", ImageReply("x"))
        orchestrator, _ = _orchestrator(gemini_image=gemini)
        asyncio.run(orchestrator.edit_scene("QkFTRQ==", ""))
        request = gemini.calls[0][0]
        self.assertEqual(request.prompt, "Enhance this image")
        self.assertEqual(request.images, ("QkFTRQ==",))

    def test_edit_on_doubao_is_text_only(self):
        doubao = FakeAdapter("doubao", ImageReply("https://cdn.test/e.png"), supports_reference_images=False)
        orchestrator, _ = _orchestrator(doubao_image=doubao)
        asyncio.run(orchestrator.edit_scene("QkFTRQ==", "", blend_image="QkxFTkQ=", model="doubao"))
        request = doubao.calls[0][0]
        self.assertEqual(request.images, ())
        self.assertTrue(request.prompt.startswith("ACT AS A CINEMATIC COMPOSITOR."))
        self.assertIn("Seamlessly blend the element into the scene.", request.prompt)


class EditPromptAnalysisTests(unittest.TestCase):
    def test_properties_get_ids_and_defaults(self):
        payload = {
            "optimizedPrompt": "Golden hour, photoreal",
            "properties": [{"category": "Atmosphere", "name": "Lighting", "value": "Warm"}, {"value": "Vintage car"}],
        }
        gemini = FakeAdapter("gemini", _text(payload))
        orchestrator, _ = _orchestrator(gemini_vision=gemini)

        result = asyncio.run(orchestrator.analyze_edit_prompt("make it warm", "T1JJRw==", "QkxFTkQ="))

        self.assertEqual(result.optimized_prompt, "Golden hour, photoreal")
        self.assertTrue(result.properties[0].id.startswith("prop-0-"))
        self.assertTrue(result.properties[1].id.startswith("prop-1-"))
        self.assertEqual((result.properties[1].category, result.properties[1].name), ("General", "Property"))
        self.assertTrue(all(prop.is_active for prop in result.properties))
        request = gemini.calls[0][0]
        self.assertTrue(request.json_mode)
        self.assertEqual(request.images, ("T1JJRw==", "QkxFTkQ="))
        self.assertIn('"make it warm"', request.prompt)
        dumped = result.model_dump(by_alias=True)
        self.assertIn("optimizedPrompt", dumped)
        self.assertIn("isActive", dumped["properties"][0])

    def test_invalid_shape_is_parse_error(self):
        orchestrator, _ = _orchestrator(gemini_vision=FakeAdapter("gemini", _text({"optimizedPrompt": "x"})))
        with self.assertRaises(ParseError) as ctx:
            asyncio.run(orchestrator.analyze_edit_prompt("x", "T1JJRw=="))
        self.assertEqual(ctx.exception.message, "Invalid response from AI prompt analyzer")


class VoiceAndAmbienceTests(unittest.TestCase):
    def test_recommend_voice(self):
        gemini = FakeAdapter("gemini", _text({"voiceName": "Fenrir", "reason": "Intense warrior"}))
        orchestrator, _ = _orchestrator(gemini_vision=gemini)
        result = asyncio.run(orchestrator.recommend_voice("SU1H", "Charge!"))
        self.assertEqual((result.voice_name, result.reason), ("Fenrir", "Intense warrior"))
        request = gemini.calls[0][0]
        self.assertIn('"Charge!"', request.system_instruction)
        self.assertIsNotNone(request.response_schema)

    def test_unknown_voice_falls_back_to_default(self):
        orchestrator, _ = _orchestrator(gemini_vision=FakeAdapter("gemini", _text({"voiceName": "Bob"})))
        result = asyncio.run(orchestrator.recommend_voice("SU1H", "Hi"))
        self.assertEqual((result.voice_name, result.reason), ("Kore", "Default"))

    def test_voice_requires_gemini(self):
        orchestrator, _ = _orchestrator(doubao_vision=FakeAdapter("doubao", _text({})))
        with self.assertRaises(ConfigurationError):
            asyncio.run(orchestrator.recommend_voice("SU1H", "Hi"))

    def test_synthesize_speech(self):
        speech = FakeAdapter("gemini", AudioReply("AAEC", {"total_token_count": 4}))
        orchestrator, _ = _orchestrator(gemini_speech=speech)
        result = asyncio.run(orchestrator.synthesize_speech("Hello there", "Puck"))
        self.assertEqual(result.audio_data, "AAEC")
        request, model = speech.calls[0]
        self.assertEqual((request.text, request.voice_name, model), ("Hello there", "Puck", SETTINGS.speech_model))

    def test_speech_rejection_propagates(self):
        speech = FakeAdapter("gemini", ContentRejectionError("No audio generated"))
        orchestrator, sleep = _orchestrator(gemini_speech=speech)
        with self.assertRaises(ContentRejectionError):
            asyncio.run(orchestrator.synthesize_speech("Hello", "Kore"))
        self.assertEqual(sleep.delays, [])

    def test_describe_ambience_defaults_to_silence(self):
        orchestrator, _ = _orchestrator(gemini_vision=FakeAdapter("gemini", TextReply("   ")))
        result = asyncio.run(orchestrator.describe_ambience("SU1H"))
        self.assertEqual(result.description, "Silence.")

    def test_ambience_audio_uses_charon(self):
        speech = FakeAdapter("gemini", AudioReply("AAEC"))
        orchestrator, _ = _orchestrator(gemini_speech=speech)
        asyncio.run(orchestrator.synthesize_ambience_audio("Wind through pines."))
        request = speech.calls[0][0]
        self.assertEqual(request.voice_name, "Charon")
        self.assertEqual(request.text, "(Atmospheric soundscape description): Wind through pines.")


class ConcurrencyTests(unittest.TestCase):
    def test_concurrent_operations_share_one_orchestrator(self):
        gemini = FakeAdapter("gemini", _text(IDEAS))
        speech = FakeAdapter("gemini", AudioReply("AAEC"))
        orchestrator, _ = _orchestrator(gemini_vision=gemini, gemini_speech=speech)

        async def run_all():
            return await asyncio.gather(
                orchestrator.analyze_sketch("c2tldGNo"),
                orchestrator.synthesize_speech("Hi", "Puck"),
                orchestrator.analyze_sketch("c2tldGNo"),
            )

        first, audio, second = asyncio.run(run_all())
        self.assertEqual(len(first.ideas), 3)
        self.assertEqual(len(second.ideas), 3)
        self.assertEqual(audio.audio_data, "AAEC")


if __name__ == "__main__":
    unittest.main()
