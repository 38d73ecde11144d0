"""
Semantic similarity between two texts, scored 0-1.

Strategies are tried in order until one produces a score:
1. Embedding cosine similarity (one batched /embeddings call)
2. AI-scored similarity (chat completion returning a bare float)
If neither can run, a neutral 0.5 is returned and nothing is cached.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import numpy as np

from consensus_backend.config import DEFAULT_CHAT_MODEL, SIMILARITY_BATCH_SIZE
from consensus_backend.services.ai_client import OpenAICompatibleClient, extract_first_float
from consensus_backend.services.errors import AiNotConfiguredError, AiUpstreamError
from consensus_backend.services.llm_config import AiCredentials, load_ai_credentials
from consensus_backend.services.similarity_cache import (
    InMemoryTTLCache,
    SimilarityCache,
    similarity_cache_key,
)

logger = logging.getLogger(__name__)

NEUTRAL_SIMILARITY = 0.5

AI_SCORE_PROMPT = """请评估以下两个观点的语义相似度，返回0-1之间的分数（1表示完全相同，0表示完全不同）：

观点1：{text1}

观点2：{text2}

请只返回一个0-1之间的数字，不要包含任何其他文字。例如：0.85"""


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero norm. Raises ``ValueError`` for
    mismatched lengths, non-numeric components or a non-finite result.
    """
    v1 = np.asarray(vec1, dtype=float)
    v2 = np.asarray(vec2, dtype=float)
    if v1.shape != v2.shape:
        raise ValueError("Vectors must have the same length")

    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    value = float(np.dot(v1, v2) / (norm1 * norm2))
    if not np.isfinite(value):
        raise ValueError("Cosine similarity is not finite")
    return value


@dataclass(frozen=True)
class SimilarityResult:
    score: float
    strategy: str  # 'cache', 'embedding', 'ai_score' or 'neutral'

    @property
    def measured(self) -> bool:
        return self.strategy != "neutral"

    @property
    def cached(self) -> bool:
        return self.strategy == "cache"


class EmbeddingSimilarity:
    name = "embedding"

    async def score(self, text1: str, text2: str, client: Optional[OpenAICompatibleClient]) -> float:
        if client is None:
            raise AiNotConfiguredError("No AI credentials for embeddings")
        vectors = await client.embeddings([text1, text2])
        if len(vectors) != 2:
            raise AiUpstreamError("Expected two embedding vectors")
        try:
            return _clamp(cosine_similarity(vectors[0], vectors[1]))
        except (TypeError, ValueError) as exc:
            raise AiUpstreamError(f"Unusable embedding vectors: {exc}") from exc


class AiScoredSimilarity:
    name = "ai_score"

    async def score(self, text1: str, text2: str, client: Optional[OpenAICompatibleClient]) -> float:
        if client is None:
            raise AiNotConfiguredError("No AI credentials for similarity scoring")
        reply = await client.chat(
            [{"role": "user", "content": AI_SCORE_PROMPT.format(text1=text1, text2=text2)}],
            max_tokens=10,
            temperature=0.3,
        )
        value = extract_first_float(reply)
        if value is None:
            return NEUTRAL_SIMILARITY
        return _clamp(value)


_similarity_cache: Optional[InMemoryTTLCache] = None


def get_similarity_cache() -> InMemoryTTLCache:
    """Get or create the process-wide similarity cache."""
    global _similarity_cache

    if _similarity_cache is None:
        _similarity_cache = InMemoryTTLCache()

    return _similarity_cache


class SimilarityService:
    """Cached, strategy-chained semantic similarity."""

    def __init__(
        self,
        db=None,
        cache: Optional[SimilarityCache] = None,
        credentials_loader: Optional[Callable[[], Awaitable[Optional[AiCredentials]]]] = None,
        client_factory: Callable[[AiCredentials], OpenAICompatibleClient] = OpenAICompatibleClient,
        strategies: Optional[List] = None,
        batch_size: int = SIMILARITY_BATCH_SIZE,
    ):
        self.db = db
        self.cache = cache if cache is not None else get_similarity_cache()
        self._credentials_loader = credentials_loader
        self._client_factory = client_factory
        self.strategies = strategies if strategies is not None else [EmbeddingSimilarity(), AiScoredSimilarity()]
        self.batch_size = max(1, batch_size)
        # Loaded once per service; an AsyncSession must not be used concurrently.
        self._credentials_lock = asyncio.Lock()
        self._credentials_loaded = False
        self._credentials: Optional[AiCredentials] = None

    async def _resolve_credentials(
        self,
        provider: Optional[str],
        api_key: Optional[str],
        endpoint: Optional[str],
    ) -> Optional[AiCredentials]:
        if provider and api_key:
            return AiCredentials(provider=provider, api_key=api_key, endpoint=endpoint, model=DEFAULT_CHAT_MODEL)

        async with self._credentials_lock:
            if not self._credentials_loaded:
                if self._credentials_loader is not None:
                    self._credentials = await self._credentials_loader()
                else:
                    self._credentials = await load_ai_credentials(self.db)
                self._credentials_loaded = True
        return self._credentials

    async def similarity_with_source(
        self,
        text1: str,
        text2: str,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> SimilarityResult:
        key = similarity_cache_key(text1, text2)
        cached = self.cache.get(key)
        if cached is not None:
            return SimilarityResult(score=cached, strategy="cache")

        credentials = await self._resolve_credentials(provider, api_key, endpoint)
        if credentials is None:
            logger.info("[Similarity] No AI configuration found; skipping embedding strategy")
            strategies = [s for s in self.strategies if s.name != "embedding"]
            client = None
        else:
            strategies = self.strategies
            client = self._client_factory(credentials)

        for strategy in strategies:
            try:
                score = await strategy.score(text1, text2, client)
            except AiUpstreamError as exc:
                logger.warning("[Similarity] %s strategy failed: %s", strategy.name, exc)
                continue
            logger.debug("[Similarity] served by %s strategy: %.3f", strategy.name, score)
            self.cache.set(key, score)
            return SimilarityResult(score=score, strategy=strategy.name)

        return SimilarityResult(score=NEUTRAL_SIMILARITY, strategy="neutral")

    async def similarity(
        self,
        text1: str,
        text2: str,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> float:
        result = await self.similarity_with_source(text1, text2, provider, api_key, endpoint)
        return result.score

    async def similarity_batch_with_source(
        self,
        pairs: Sequence[Tuple[str, str]],
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> List[SimilarityResult]:
        """Results for many pairs, at most ``batch_size`` requests in flight; input order preserved."""
        results: List[SimilarityResult] = []
        for start in range(0, len(pairs), self.batch_size):
            chunk = pairs[start:start + self.batch_size]
            chunk_results = await asyncio.gather(
                *(self.similarity_with_source(t1, t2, provider, api_key, endpoint) for t1, t2 in chunk)
            )
            results.extend(chunk_results)
        return results

    async def similarity_batch(
        self,
        pairs: Sequence[Tuple[str, str]],
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> List[float]:
        results = await self.similarity_batch_with_source(pairs, provider, api_key, endpoint)
        return [result.score for result in results]
