"""
ChildGuard - Classifier Gateway Tests

Tests the verdict decoder, score mapping and both gateway implementations.
These tests verify:
- Fenced and bare JSON verdicts decode identically
- Malformed verdicts map to MalformedResponseError
- Threshold flags are strict (score > cut point)
- Gemini transport failures map to named errors (no network; MockTransport)
- Empty input never reaches the remote classifier

Run with: pytest tests/test_classifier.py -v
"""

import json

import httpx
import pytest

from childguard.core.exceptions import (
    ClassifierTimeoutError,
    ClassifierUnreachableError,
    EmptyInputError,
    MalformedResponseError,
)
from childguard.core.types import ChildId, ContentFlags, Emotion, Transcript
from childguard.services.classifier import (
    DEFAULT_CONFIDENCE,
    DummyClassifier,
    GeminiClassifier,
    parse_verdict,
    strip_code_fence,
    verdict_to_result,
)


CHILD = ChildId("child-classifier")


def gemini_body(answer: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": answer}]}}]}


def make_gemini(handler) -> GeminiClassifier:
    return GeminiClassifier(
        api_key="test-key",
        model="gemini-test",
        base_url="https://gemini.test/v1beta",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestVerdictDecoding:
    """Tests for strip_code_fence() and parse_verdict()."""

    def test_strip_json_fence(self):
        raw = '```json\n{"mood": "sad"}\n```'
        assert strip_code_fence(raw) == '{"mood": "sad"}'

    def test_strip_bare_fence(self):
        raw = '```\n{"mood": "sad"}\n```'
        assert strip_code_fence(raw) == '{"mood": "sad"}'

    def test_unfenced_text_unchanged(self):
        assert strip_code_fence('  {"mood": "sad"}  ') == '{"mood": "sad"}'

    def test_fenced_and_bare_decode_identically(self):
        payload = '{"mood": "scared", "threatLevel": {"score": 55, "reason": "fear of bullies"}}'
        fenced = parse_verdict(f"```json\n{payload}\n```")
        bare = parse_verdict(payload)
        assert fenced == bare
        assert fenced.mood == Emotion.SCARED
        assert fenced.threat_level.score == 55

    def test_mood_is_normalized(self):
        verdict = parse_verdict('{"mood": " Happy ", "threatLevel": {"score": 0, "reason": "ok"}}')
        assert verdict.mood == Emotion.HAPPY

    @pytest.mark.parametrize("raw", [
        "not json at all",
        '{"mood": "happy"}',
        '{"mood": "bored", "threatLevel": {"score": 10, "reason": "x"}}',
        '{"mood": "happy", "threatLevel": {"score": 101, "reason": "x"}}',
        '{"mood": "happy", "threatLevel": {"score": -1, "reason": "x"}}',
        '{"mood": "happy", "threatLevel": {"score": "high", "reason": "x"}}',
        '{"mood": "happy", "threatLevel": {"score": 10}}',
    ])
    def test_malformed_verdicts_rejected(self, raw: str):
        with pytest.raises(MalformedResponseError):
            parse_verdict(raw)


class TestScoreMapping:
    """Tests for verdict_to_result() and ContentFlags.from_score()."""

    @pytest.mark.parametrize("score,expected", [
        (0, (False, False, False)),
        (40, (False, False, False)),
        (41, (True, False, False)),
        (60, (True, False, False)),
        (61, (True, True, False)),
        (80, (True, True, False)),
        (81, (True, True, True)),
        (100, (True, True, True)),
    ])
    def test_flag_thresholds_are_strict(self, score: int, expected: tuple):
        flags = ContentFlags.from_score(score)
        assert (flags.profanity, flags.harmful, flags.threatening) == expected

    def test_result_fields(self):
        verdict = parse_verdict('{"mood": "angry", "threatLevel": {"score": 86, "reason": "violent language"}}')
        result = verdict_to_result(verdict)

        assert result.emotion == Emotion.ANGRY
        assert result.intensity == pytest.approx(0.86)
        assert result.confidence == DEFAULT_CONFIDENCE
        assert result.summary == "violent language"
        assert result.score == 86
        assert result.flags == ContentFlags(profanity=True, harmful=True, threatening=True)


class TestDummyClassifier:
    """Tests for the keyword heuristic."""

    @pytest.mark.asyncio
    async def test_threatening_utterance(self, dummy_classifier: DummyClassifier):
        result = await dummy_classifier.classify(
            Transcript(child_id=CHILD, text="I hate you, I'm going to hurt someone")
        )
        assert result.emotion == Emotion.ANGRY
        assert result.intensity > 0.8
        assert result.flags.threatening

    @pytest.mark.asyncio
    async def test_calm_utterances(self, dummy_classifier: DummyClassifier, calm_messages):
        for message in calm_messages:
            result = await dummy_classifier.classify(Transcript(child_id=CHILD, text=message))
            assert not result.flags.any
            assert result.emotion == Emotion.HAPPY

    @pytest.mark.asyncio
    async def test_empty_input_rejected(self, dummy_classifier: DummyClassifier):
        with pytest.raises(EmptyInputError):
            await dummy_classifier.classify(Transcript(child_id=CHILD, text="   "))
        assert dummy_classifier._call_count == 0


class TestGeminiClassifier:
    """Tests for the Gemini REST gateway (MockTransport, no network)."""

    @pytest.mark.asyncio
    async def test_successful_classification(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            answer = '```json\n{"mood": "sad", "threatLevel": {"score": 45, "reason": "feels left out"}}\n```'
            return httpx.Response(200, json=gemini_body(answer))

        classifier = make_gemini(handler)
        result = await classifier.classify(Transcript(child_id=CHILD, text="nobody played with me"))

        assert result.emotion == Emotion.SAD
        assert result.score == 45
        assert result.flags.profanity and not result.flags.harmful
        assert "models/gemini-test:generateContent" in seen["url"]
        assert "key=test-key" in seen["url"]
        prompt = seen["body"]["contents"][0]["parts"][0]["text"]
        assert "nobody played with me" in prompt
        assert classifier.model_id == "gemini:gemini-test"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_classifier_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ClassifierTimeoutError):
            await make_gemini(handler).classify(Transcript(child_id=CHILD, text="hello"))

    @pytest.mark.asyncio
    async def test_connect_error_maps_to_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ClassifierUnreachableError):
            await make_gemini(handler).classify(Transcript(child_id=CHILD, text="hello"))

    @pytest.mark.asyncio
    async def test_error_status_maps_to_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "overloaded"})

        with pytest.raises(ClassifierUnreachableError) as exc_info:
            await make_gemini(handler).classify(Transcript(child_id=CHILD, text="hello"))
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_bad_envelope_is_malformed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"candidates": []})

        with pytest.raises(MalformedResponseError):
            await make_gemini(handler).classify(Transcript(child_id=CHILD, text="hello"))

    @pytest.mark.asyncio
    async def test_bad_verdict_is_malformed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=gemini_body("I think the child is fine."))

        with pytest.raises(MalformedResponseError):
            await make_gemini(handler).classify(Transcript(child_id=CHILD, text="hello"))

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_call(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=gemini_body("{}"))

        with pytest.raises(EmptyInputError):
            await make_gemini(handler).classify(Transcript(child_id=CHILD, text="  \n "))
        assert calls == []
