import json

import httpx
import pytest

from consensus_backend.services.ai_client import (
    OpenAICompatibleClient,
    chat_json,
    extract_first_float,
    extract_json_from_text,
    parse_json_object,
)
from consensus_backend.services.errors import AiUpstreamError
from consensus_backend.services.llm_config import AiCredentials


def _client(handler, provider="openai", endpoint=None):
    credentials = AiCredentials(provider=provider, api_key=" sk-test ", endpoint=endpoint, model="chat-model")
    return OpenAICompatibleClient(credentials, transport=httpx.MockTransport(handler))


def test_extract_json_from_text_handles_think_prefix_and_fence():
    payload = "<think>reasoning...</think>\n```json\n{\"consensus\": []}\n```"
    assert extract_json_from_text(payload) == {"consensus": []}


def test_extract_json_from_text_handles_trailing_text():
    parsed = extract_json_from_text("Here you go: {\"a\": 1} thanks")
    assert parsed == {"a": 1}


def test_extract_json_from_text_raises_on_missing_json():
    with pytest.raises(Exception):
        extract_json_from_text("<think>only reasoning without payload</think>")


def test_parse_json_object_success():
    result = parse_json_object("{\"consensus\": [1]}")

    assert result.ok is True
    assert result.data == {"consensus": [1]}
    assert result.error is None


def test_parse_json_object_rejects_non_object():
    result = parse_json_object("[1, 2, 3]")

    assert result.ok is False
    assert result.data is None
    assert result.raw == "[1, 2, 3]"
    assert "list" in result.error


def test_parse_json_object_keeps_raw_text_when_malformed():
    result = parse_json_object("not json at all")

    assert result.ok is False
    assert result.raw == "not json at all"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("0.85", 0.85),
        ("Similarity: .7", 0.7),
        ("score is 1", 1.0),
        ("-0.2 maybe", -0.2),
        ("no number", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_first_float(text, expected):
    assert extract_first_float(text) == expected


@pytest.mark.asyncio
async def test_chat_posts_openai_compatible_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "0.9"}}]})

    reply = await _client(handler).chat([{"role": "user", "content": "hi"}], max_tokens=10)

    assert reply == "0.9"
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"]["model"] == "chat-model"
    assert captured["body"]["max_tokens"] == 10
    assert captured["body"]["temperature"] == 0.3


@pytest.mark.asyncio
async def test_embeddings_use_provider_model_and_custom_endpoint():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"embedding": [1, 0]}, {"embedding": [0, 1]}]})

    client = _client(handler, provider="siliconflow", endpoint="https://proxy.example.com/")
    vectors = await client.embeddings(["a", "b"])

    assert vectors == [[1, 0], [0, 1]]
    assert captured["url"] == "https://proxy.example.com/v1/embeddings"
    assert captured["body"] == {"model": "BAAI/bge-large-zh-v1.5", "input": ["a", "b"]}


@pytest.mark.asyncio
async def test_non_2xx_raises_upstream_error_with_status():
    client = _client(lambda request: httpx.Response(429, text="rate limited"))

    with pytest.raises(AiUpstreamError) as exc_info:
        await client.chat([{"role": "user", "content": "hi"}])

    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_missing_choices_raises_upstream_error():
    client = _client(lambda request: httpx.Response(200, json={"choices": []}))

    with pytest.raises(AiUpstreamError):
        await client.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_embedding_count_mismatch_raises_upstream_error():
    client = _client(lambda request: httpx.Response(200, json={"data": [{"embedding": [1.0]}]}))

    with pytest.raises(AiUpstreamError):
        await client.embeddings(["a", "b"])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "vector",
    [
        '["a", "b"]',
        "[1.0, null]",
        "[1.0, NaN]",
        "[true, false]",
        "[]",
        '"1.0,0.0"',
    ],
)
async def test_malformed_embedding_vector_raises_upstream_error(vector):
    body = '{"data": [{"embedding": %s}, {"embedding": [0.0, 1.0]}]}' % vector
    client = _client(
        lambda request: httpx.Response(200, content=body, headers={"Content-Type": "application/json"})
    )

    with pytest.raises(AiUpstreamError):
        await client.embeddings(["a", "b"])


@pytest.mark.asyncio
async def test_non_text_chat_content_raises_upstream_error():
    payload = {"choices": [{"message": {"content": [{"type": "text", "text": "0.8"}]}}]}
    client = _client(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(AiUpstreamError):
        await client.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_network_error_raises_upstream_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(AiUpstreamError):
        await _client(handler).chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_chat_json_returns_malformed_result_for_prose():
    client = _client(
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "I cannot do that"}}]})
    )

    result = await chat_json(client, "prompt")

    assert result.ok is False
    assert result.raw == "I cannot do that"
