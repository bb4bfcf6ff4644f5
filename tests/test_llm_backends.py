import json

import pytest
import respx
from httpx import Response

from autoresearch.llm import GeminiClient, GroqClient, parse_json_object


GROQ_URL = "https://groq.test/v1/chat/completions"
GEMINI_HOST = "gemini.test"
GEMINI_PATH = "/v1beta/models/gemini-test:generateContent"


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_groq(sleep=None, **kwargs):
    params = {"min_interval_s": 0.0, "backoff_base_s": 2.0, "max_retries": 3}
    params.update(kwargs)
    return GroqClient("groq-key", "llama-test", "https://groq.test/v1", sleep=sleep or RecordingSleep(), **params)


def make_gemini(sleep=None, **kwargs):
    params = {"min_interval_s": 0.0, "backoff_base_s": 3.0, "max_retries": 3}
    params.update(kwargs)
    return GeminiClient(
        "gemini-key", "gemini-test", "https://gemini.test/v1beta", sleep=sleep or RecordingSleep(), **params
    )


def groq_reply(content: str) -> Response:
    return Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def gemini_reply(text: str) -> Response:
    return Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def test_parse_json_object_strips_fences():
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(ValueError):
        parse_json_object("[1, 2]")
    with pytest.raises(ValueError):
        parse_json_object("   ")


@pytest.mark.asyncio
async def test_groq_structured_payload_and_headers():
    client = make_groq()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return groq_reply('{"steps": []}')

            respx_mock.post(GROQ_URL).mock(side_effect=handler)
            result = await client.generate_structured("plan this")
        assert result.ok
        assert result.backend == "groq"
        assert result.data == {"steps": []}
        assert captured["json"]["model"] == "llama-test"
        assert captured["json"]["response_format"] == {"type": "json_object"}
        assert captured["json"]["messages"] == [{"role": "user", "content": "plan this"}]
        assert captured["headers"]["Authorization"] == "Bearer groq-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_groq_text_has_no_response_format():
    client = make_groq()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return groq_reply("plain answer")

            respx_mock.post(GROQ_URL).mock(side_effect=handler)
            result = await client.generate_text("explain")
        assert result.ok
        assert result.text == "plain answer"
        assert "response_format" not in captured["json"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_retries_with_exponential_backoff():
    sleep = RecordingSleep()
    client = make_groq(sleep=sleep)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(GROQ_URL).mock(
                side_effect=[Response(429, text="slow down"), Response(429, text="slow down"), groq_reply("ok")]
            )
            result = await client.generate_text("hi")
        assert result.ok
        assert result.text == "ok"
        assert route.call_count == 3
        assert sleep.calls == [4.0, 8.0]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_returns_typed_error():
    sleep = RecordingSleep()
    client = make_groq(sleep=sleep)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(GROQ_URL).mock(return_value=Response(429, text="slow down"))
            result = await client.generate_structured("hi")
        assert not result.ok
        assert result.error_kind == "rate_limited"
        assert result.error == "Max retries exceeded"
        assert route.call_count == 3
        assert sleep.calls == [4.0, 8.0]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_non_rate_limit_error_fails_fast():
    sleep = RecordingSleep()
    client = make_groq(sleep=sleep)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(GROQ_URL).mock(return_value=Response(401, json={"error": "bad key"}))
            result = await client.generate_text("hi")
        assert not result.ok
        assert result.error_kind == "provider"
        assert "HTTP 401" in result.error
        assert route.call_count == 1
        assert sleep.calls == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_malformed_structured_output_is_parse_error():
    client = make_groq()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(GROQ_URL).mock(return_value=groq_reply("not json at all"))
            result = await client.generate_structured("hi")
        assert not result.ok
        assert result.error_kind == "parse"
        assert route.call_count == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unconfigured_backend_makes_no_request():
    client = GroqClient(None, "llama-test", "https://groq.test/v1", min_interval_s=0.0, backoff_base_s=2.0)
    try:
        assert client.enabled is False
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post(GROQ_URL).mock(return_value=groq_reply("{}"))
            result = await client.generate_structured("hi")
        assert result.error_kind == "unconfigured"
        assert not route.called
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_gemini_structured_call_parses_fenced_json():
    client = make_gemini()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["key"] = request.url.params.get("key")
                return gemini_reply('```json\n{"status": "pass", "quality_score": 90}\n```')

            respx_mock.post(host=GEMINI_HOST, path=GEMINI_PATH).mock(side_effect=handler)
            result = await client.generate_structured("verify this")
        assert result.ok
        assert result.backend == "gemini"
        assert result.data == {"status": "pass", "quality_score": 90}
        assert captured["key"] == "gemini-key"
        prompt = captured["json"]["contents"][0]["parts"][0]["text"]
        assert prompt.startswith("verify this")
        assert prompt.endswith("Respond ONLY with valid JSON.")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_gemini_resource_exhausted_is_retried():
    sleep = RecordingSleep()
    client = make_gemini(sleep=sleep)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(host=GEMINI_HOST, path=GEMINI_PATH).mock(
                side_effect=[
                    Response(503, json={"error": {"status": "RESOURCE_EXHAUSTED"}}),
                    gemini_reply("final words"),
                ]
            )
            result = await client.generate_text("write")
        assert result.ok
        assert result.text == "final words"
        assert sleep.calls == [6.0]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_gemini_without_candidates_is_provider_error():
    client = make_gemini()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(host=GEMINI_HOST, path=GEMINI_PATH).mock(
                return_value=Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})
            )
            result = await client.generate_text("write")
        assert result.error_kind == "provider"
        assert "SAFETY" in result.error
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_throttle_enforces_minimum_spacing():
    now = [100.0]
    sleeps = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    client = GroqClient(
        "groq-key",
        "llama-test",
        "https://groq.test/v1",
        min_interval_s=1.5,
        backoff_base_s=2.0,
        sleep=fake_sleep,
        clock=lambda: now[0],
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GROQ_URL).mock(return_value=groq_reply("ok"))
            await client.generate_text("one")
            now[0] += 0.5
            await client.generate_text("two")
            now[0] += 5.0
            await client.generate_text("three")
        assert sleeps == [1.0]
    finally:
        await client.close()
