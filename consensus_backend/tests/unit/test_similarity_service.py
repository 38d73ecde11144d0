import asyncio

import pytest

from consensus_backend.services.errors import AiUpstreamError
from consensus_backend.services.similarity_cache import (
    InMemoryTTLCache,
    NullCache,
    similarity_cache_key,
)
from consensus_backend.services.similarity_service import (
    NEUTRAL_SIMILARITY,
    SimilarityService,
    cosine_similarity,
)


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_key_is_order_independent_and_bounded():
    assert similarity_cache_key("甲", "乙") == similarity_cache_key("乙", "甲")
    assert len(similarity_cache_key("x" * 500, "y" * 500)) == 64


def test_cache_key_covers_whole_text():
    shared = "Remote work improves focus for most engineers on the team, according to surveys. "
    assert similarity_cache_key(shared, "zzz相同") != similarity_cache_key(shared, "zzz完全无关")
    assert similarity_cache_key(shared + "A", "b") != similarity_cache_key(shared + "B", "b")


def test_ttl_cache_evicts_expired_entries_on_read():
    clock = _Clock()
    cache = InMemoryTTLCache(ttl_seconds=10, clock=clock)
    cache.set("k", 0.4)

    clock.now += 9
    assert cache.get("k") == 0.4

    clock.now += 1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_ttl_cache_drops_least_recently_used_over_capacity():
    cache = InMemoryTTLCache(ttl_seconds=100, max_entries=2)
    cache.set("a", 0.1)
    cache.set("b", 0.2)
    cache.get("a")
    cache.set("c", 0.3)

    assert cache.get("b") is None
    assert cache.get("a") == 0.1
    assert cache.get("c") == 0.3


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])
    with pytest.raises(ValueError):
        cosine_similarity([float("nan"), 1], [1, 0])


@pytest.mark.asyncio
async def test_cache_symmetry_makes_one_upstream_call(similarity_service, fake_ai):
    first = await similarity_service.similarity_with_source("AI改善教育", "AI提升效率")
    second = await similarity_service.similarity_with_source("AI提升效率", "AI改善教育")

    assert first.strategy == "embedding"
    assert second.strategy == "cache"
    assert first.score == second.score
    assert fake_ai.total_calls == 1


@pytest.mark.asyncio
async def test_embedding_failure_falls_back_to_ai_score(similarity_service, fake_ai):
    fake_ai.embedding_error = AiUpstreamError("embeddings unavailable", status_code=404)
    fake_ai.chat_reply = "相似度 0.72"

    result = await similarity_service.similarity_with_source("a", "b")

    assert result.strategy == "ai_score"
    assert result.score == pytest.approx(0.72)
    assert len(fake_ai.embedding_calls) == 1
    assert len(fake_ai.chat_calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "vectors",
    [
        [list("abc"), list("abd")],
        [[1.0, None], [0.0, 1.0]],
        [[float("nan"), 1.0], [0.0, 1.0]],
    ],
)
async def test_unusable_embedding_vectors_fall_back_to_ai_score(similarity_service, fake_ai, vectors):
    fake_ai.embedding = vectors
    fake_ai.chat_reply = "0.3"

    result = await similarity_service.similarity_with_source("x", "y")

    assert result.strategy == "ai_score"
    assert result.score == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_texts_sharing_a_long_prefix_are_cached_separately(similarity_service, fake_ai):
    shared = "Remote work improves focus for most engineers on the team, according to surveys. "

    await similarity_service.similarity_with_source(shared, "zzz相同")
    second = await similarity_service.similarity_with_source(shared, "zzz完全无关")

    assert second.strategy == "embedding"
    assert len(fake_ai.embedding_calls) == 2


@pytest.mark.asyncio
async def test_ai_score_without_number_is_neutral_but_measured(similarity_service, fake_ai):
    fake_ai.embedding_error = AiUpstreamError("down")
    fake_ai.chat_reply = "无法判断"

    result = await similarity_service.similarity_with_source("a", "b")

    assert result.score == NEUTRAL_SIMILARITY
    assert result.strategy == "ai_score"


@pytest.mark.asyncio
async def test_ai_score_is_clamped(similarity_service, fake_ai):
    fake_ai.embedding_error = AiUpstreamError("down")
    fake_ai.chat_reply = "1.7"

    assert await similarity_service.similarity("a", "b") == 1.0


@pytest.mark.asyncio
async def test_all_strategies_failing_returns_uncached_neutral(fake_ai, credentials_loader):
    async def failing_chat(*args, **kwargs):
        raise AiUpstreamError("chat down")

    fake_ai.embedding_error = AiUpstreamError("embeddings down")
    fake_ai.chat = failing_chat
    cache = InMemoryTTLCache()
    service = SimilarityService(
        cache=cache,
        credentials_loader=credentials_loader,
        client_factory=lambda credentials: fake_ai,
    )

    result = await service.similarity_with_source("a", "b")

    assert result.score == NEUTRAL_SIMILARITY
    assert result.strategy == "neutral"
    assert result.measured is False
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_no_credentials_returns_neutral_without_calls(fake_ai):
    async def no_credentials():
        return None

    factory_calls = []

    def factory(credentials):
        factory_calls.append(credentials)
        return fake_ai

    service = SimilarityService(cache=NullCache(), credentials_loader=no_credentials, client_factory=factory)

    result = await service.similarity_with_source("a", "b")

    assert result.strategy == "neutral"
    assert factory_calls == []
    assert fake_ai.total_calls == 0


@pytest.mark.asyncio
async def test_explicit_credentials_skip_loader(fake_ai):
    async def loader():
        raise AssertionError("loader should not be used")

    seen = []

    def factory(credentials):
        seen.append(credentials)
        return fake_ai

    service = SimilarityService(cache=NullCache(), credentials_loader=loader, client_factory=factory)
    await service.similarity("a", "b", provider="qwen", api_key="k", endpoint="https://q.example.com")

    assert seen[0].provider == "qwen"
    assert seen[0].base_url == "https://q.example.com/v1"


@pytest.mark.asyncio
async def test_batch_preserves_order_and_limits_concurrency(fake_ai, credentials_loader):
    in_flight = 0
    peak = 0

    async def embeddings(inputs, model=None):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        value = float(inputs[0].split("-")[1])
        return [[1.0, 0.0], [value, 1.0 - value]]

    fake_ai.embeddings = embeddings
    service = SimilarityService(
        cache=NullCache(),
        credentials_loader=credentials_loader,
        client_factory=lambda credentials: fake_ai,
        batch_size=5,
    )
    pairs = [(f"t-{i / 10}", f"u-{i}") for i in range(11)]

    scores = await service.similarity_batch(pairs)

    assert len(scores) == 11
    assert scores[0] == pytest.approx(0.0)
    assert scores[10] == pytest.approx(1.0)
    assert scores == sorted(scores)
    assert peak <= 5


@pytest.mark.asyncio
async def test_credentials_loaded_once_per_service(fake_ai, fake_credentials):
    loads = []

    async def loader():
        loads.append(1)
        return fake_credentials

    service = SimilarityService(cache=NullCache(), credentials_loader=loader, client_factory=lambda c: fake_ai)
    await service.similarity_batch([("a", "b"), ("c", "d"), ("e", "f")])

    assert len(loads) == 1
