"""
Pairwise consensus analysis between two users of a topic.

Combines the quality gate, the user pair identifier, each user's claims, one
structured-extraction AI call and semantic similarity into consensus and
disagreement items plus two scores that always sum to 1.0.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from consensus_backend.services.ai_client import OpenAICompatibleClient, ParseResult, chat_json
from consensus_backend.services.errors import AiUpstreamError, StaleConsensusWriteError
from consensus_backend.services.llm_config import AiCredentials, load_ai_credentials
from consensus_backend.services.quality_gate import QualityThresholds, is_quality_document
from consensus_backend.services.similarity_service import SimilarityService
from consensus_backend.services.topic_reader import (
    DocumentNode,
    TopicDocument,
    fetch_topic,
    load_document_nodes,
    load_topic_documents,
)
from consensus_backend.services.user_pairs import (
    build_user_pairs,
    canonical_pair,
    find_pair,
    get_user_pair_documents,
)

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
DEFAULT_CONSENSUS_SIMILARITY = 0.8
DEFAULT_DISAGREEMENT_SIMILARITY = 0.2
COUNT_WEIGHT = 0.7
SIMILARITY_WEIGHT = 0.3
MIN_QUALITY_DOCUMENTS = 2

PAIR_ANALYSIS_PROMPT = """请分析以下两个用户在该话题中的观点，识别共识和分歧。每条观点前的方括号内是其来源文档ID。

用户1的观点：
{user1_claims}

用户2的观点：
{user2_claims}

请识别：
1. **共识点**：两个用户都支持或表达相似的观点（至少2个观点支持）
   - 每个共识点应包含：观点描述、支持该观点的文档ID
2. **分歧点**：两个用户观点冲突或对立的地方
   - 每个分歧点应包含：用户1的观点、用户2的观点、对应的文档ID、冲突描述

请用JSON格式返回，格式如下：
{{
  "consensus": [
    {{"text": "共识观点描述", "supportCount": 2, "docIds": ["docId1", "docId2"]}}
  ],
  "disagreements": [
    {{"claim1": "用户1的观点", "claim2": "用户2的观点", "doc1Id": "用户1的文档ID", "doc2Id": "用户2的文档ID", "description": "简要说明冲突的具体内容"}}
  ]
}}

请仔细分析观点的语义，不要只看关键词，要理解观点的实际含义。"""


@dataclass
class PairConsensusResult:
    consensus: List[Dict[str, Any]] = field(default_factory=list)
    disagreements: List[Dict[str, Any]] = field(default_factory=list)
    consensus_score: float = NEUTRAL_SCORE
    divergence_score: float = NEUTRAL_SCORE
    measured: bool = False

    @classmethod
    def insufficient(cls) -> "PairConsensusResult":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consensus": self.consensus,
            "disagreements": self.disagreements,
            "consensus_score": self.consensus_score,
            "divergence_score": self.divergence_score,
            "measured": self.measured,
        }


def compute_pair_scores(consensus: Sequence[Dict[str, Any]],
                        disagreements: Sequence[Dict[str, Any]]) -> Tuple[float, float]:
    """
    consensus_score = 0.7 * |C| / (|C| + |D|) + 0.3 * mean(C similarity)

    Both lists empty gives 0.5. With no consensus items the similarity term
    uses 0.5.
    """
    total = len(consensus) + len(disagreements)
    if total == 0:
        return NEUTRAL_SCORE, NEUTRAL_SCORE

    base = len(consensus) / total
    if consensus:
        similarities = [
            item.get("similarity") if isinstance(item.get("similarity"), (int, float)) else DEFAULT_CONSENSUS_SIMILARITY
            for item in consensus
        ]
        avg_similarity = sum(similarities) / len(similarities)
    else:
        avg_similarity = NEUTRAL_SCORE

    score = max(0.0, min(1.0, base * COUNT_WEIGHT + avg_similarity * SIMILARITY_WEIGHT))
    return score, 1.0 - score


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_consensus_items(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        text = _as_str(entry.get("text"))
        if not text:
            continue
        doc_ids = [str(doc_id) for doc_id in entry.get("docIds") or [] if doc_id]
        support = entry.get("supportCount")
        items.append({
            "text": text,
            "supportCount": support if isinstance(support, int) and not isinstance(support, bool) else len(doc_ids),
            "docIds": doc_ids,
        })
    return items


def normalize_disagreement_items(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        claim1 = _as_str(entry.get("claim1"))
        claim2 = _as_str(entry.get("claim2"))
        if not claim1 and not claim2:
            continue
        items.append({
            "claim1": claim1,
            "claim2": claim2,
            "doc1Id": str(entry.get("doc1Id") or ""),
            "doc2Id": str(entry.get("doc2Id") or ""),
            "description": _as_str(entry.get("description")),
        })
    return items


def _claims_for(docs: Sequence[TopicDocument], author_id: str) -> List[Tuple[str, str]]:
    return [(claim, doc.id) for doc in docs if doc.author_id == author_id for claim in doc.claims]


def _format_claims(claims: Sequence[Tuple[str, str]]) -> str:
    return "\n".join(f"- [{doc_id}] {claim}" for claim, doc_id in claims)


class PairConsensusAnalyzer:
    """Analyzes consensus and disagreement between two users of one topic."""

    def __init__(
        self,
        db,
        similarity_service: Optional[SimilarityService] = None,
        credentials_loader: Optional[Callable[[], Awaitable[Optional[AiCredentials]]]] = None,
        client_factory: Callable[[AiCredentials], OpenAICompatibleClient] = OpenAICompatibleClient,
        thresholds: Optional[QualityThresholds] = None,
    ):
        self.db = db
        self.similarity_service = similarity_service or SimilarityService(db=db)
        self._credentials_loader = credentials_loader
        self._client_factory = client_factory
        self.thresholds = thresholds

    async def analyze_pair(
        self,
        topic_id: str,
        user_a: str,
        user_b: str,
        nodes: Optional[Sequence[DocumentNode]] = None,
    ) -> PairConsensusResult:
        """
        Analyze consensus between two users.

        Args:
            topic_id: Topic id
            user_a: One participant
            user_b: The other participant
            nodes: Preloaded document tree (loaded when omitted)

        Returns:
            PairConsensusResult; the insufficient-data default has
            ``measured=False`` and 0.5/0.5 scores
        """
        logger.info("[PairConsensus] Analyzing users %s and %s in topic %s", user_a, user_b, topic_id)

        if nodes is None:
            nodes = await load_document_nodes(self.db, topic_id)
        relevant = get_user_pair_documents(nodes, user_a, user_b)
        if len(relevant) < MIN_QUALITY_DOCUMENTS:
            logger.info("[PairConsensus] Not enough documents for analysis (%d < 2)", len(relevant))
            return PairConsensusResult.insufficient()

        topic = await fetch_topic(self.db, topic_id)
        discipline = getattr(topic, "discipline", None)
        docs = await load_topic_documents(self.db, topic_id, [doc.id for doc in relevant])

        quality_docs = [doc for doc in docs if is_quality_document(doc, discipline, self.thresholds)]
        if len(quality_docs) < MIN_QUALITY_DOCUMENTS:
            logger.info("[PairConsensus] Not enough quality documents (%d < 2)", len(quality_docs))
            return PairConsensusResult.insufficient()

        user_a_claims = _claims_for(quality_docs, user_a)
        user_b_claims = _claims_for(quality_docs, user_b)
        if not user_a_claims or not user_b_claims:
            logger.info(
                "[PairConsensus] Not enough claims (user1: %d, user2: %d)",
                len(user_a_claims),
                len(user_b_claims),
            )
            return PairConsensusResult.insufficient()

        parsed = await self._extract(user_a_claims, user_b_claims)
        if parsed.ok:
            consensus = normalize_consensus_items(parsed.data.get("consensus"))
            disagreements = normalize_disagreement_items(parsed.data.get("disagreements"))
        else:
            logger.warning("[PairConsensus] Malformed AI response (%s); using empty result", parsed.error)
            consensus, disagreements = [], []

        docs_by_id = {doc.id: doc for doc in docs}
        await self._attach_similarities(consensus, disagreements, docs_by_id)

        consensus_score, divergence_score = compute_pair_scores(consensus, disagreements)
        return PairConsensusResult(
            consensus=consensus,
            disagreements=disagreements,
            consensus_score=consensus_score,
            divergence_score=divergence_score,
            measured=bool(consensus or disagreements),
        )

    async def _extract(self, user_a_claims, user_b_claims) -> ParseResult:
        prompt = PAIR_ANALYSIS_PROMPT.format(
            user1_claims=_format_claims(user_a_claims),
            user2_claims=_format_claims(user_b_claims),
        )
        if self._credentials_loader is not None:
            credentials = await self._credentials_loader()
        else:
            credentials = await load_ai_credentials(self.db)
        if credentials is None:
            return ParseResult.malformed("", "No AI configuration available")

        try:
            return await chat_json(self._client_factory(credentials), prompt)
        except AiUpstreamError as exc:
            logger.error("[PairConsensus] AI analysis failed: %s", exc)
            return ParseResult.malformed("", str(exc))

    async def _attach_similarities(self, consensus, disagreements, docs_by_id: Dict[str, TopicDocument]) -> None:
        requests: List[Tuple[Dict[str, Any], float, Tuple[str, str]]] = []

        for item in consensus:
            item["similarity"] = DEFAULT_CONSENSUS_SIMILARITY
            if len(item["docIds"]) < 2:
                continue
            doc1 = docs_by_id.get(item["docIds"][0])
            doc2 = docs_by_id.get(item["docIds"][1])
            if doc1 is None or doc2 is None:
                continue
            text1 = " ".join(doc1.claims)
            text2 = " ".join(doc2.claims)
            if text1 and text2:
                requests.append((item, DEFAULT_CONSENSUS_SIMILARITY, (text1, text2)))

        for item in disagreements:
            item["similarity"] = DEFAULT_DISAGREEMENT_SIMILARITY
            if item["claim1"] and item["claim2"]:
                requests.append((item, DEFAULT_DISAGREEMENT_SIMILARITY, (item["claim1"], item["claim2"])))

        if not requests:
            return

        results = await self.similarity_service.similarity_batch_with_source([pair for _, _, pair in requests])
        for (item, default, _), result in zip(requests, results):
            item["similarity"] = result.score if result.measured else default

    async def analyze_and_save_pair(self, topic_id: str, user_a: str, user_b: str):
        """Analyze one pair and persist it; returns None when the users never replied to each other."""
        nodes = await load_document_nodes(self.db, topic_id)
        pair = find_pair(build_user_pairs(nodes), user_a, user_b)
        if pair is None:
            logger.info("[PairConsensus] Users %s and %s share no reply edge in %s", user_a, user_b, topic_id)
            return None

        result = await self.analyze_pair(topic_id, user_a, user_b, nodes=nodes)
        return await save_pair_consensus(
            self.db,
            topic_id,
            user_a,
            user_b,
            result,
            pair.doc_ids,
            [path.to_dict() for path in pair.discussion_paths],
        )


async def get_pair_consensus(db, topic_id: str, user_a: str, user_b: str):
    from consensus_backend.models import UserConsensus

    user_id1, user_id2 = canonical_pair(user_a, user_b)
    result = await db.execute(
        select(UserConsensus).where(
            UserConsensus.topic_id == topic_id,
            UserConsensus.user_id1 == user_id1,
            UserConsensus.user_id2 == user_id2,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def save_pair_consensus(
    db,
    topic_id: str,
    user_a: str,
    user_b: str,
    result: PairConsensusResult,
    doc_ids: Sequence[str],
    discussion_paths: Sequence[Dict[str, Any]],
    max_attempts: int = 2,
):
    """
    Upsert the pair record keyed by (topic, canonical pair).

    The update only applies when the stored ``version`` is still the one that
    was read; a lost race is retried by re-reading.
    """
    from consensus_backend.models import UserConsensus

    user_id1, user_id2 = canonical_pair(user_a, user_b)
    values = {
        "consensus": result.consensus,
        "disagreements": result.disagreements,
        "consensus_score": result.consensus_score,
        "divergence_score": result.divergence_score,
        "measured": result.measured,
        "doc_ids": list(doc_ids),
        "discussion_paths": list(discussion_paths),
        "last_analyzed_at": datetime.now(timezone.utc),
    }

    for attempt in range(max_attempts):
        existing = await get_pair_consensus(db, topic_id, user_id1, user_id2)

        if existing is None:
            record = UserConsensus(topic_id=topic_id, user_id1=user_id1, user_id2=user_id2, version=1, **values)
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning("[PairConsensus] Concurrent insert for %s/%s:%s, retrying", topic_id, user_id1, user_id2)
                continue
            return record

        outcome = await db.execute(
            update(UserConsensus)
            .where(UserConsensus.id == existing.id, UserConsensus.version == existing.version)
            .values(version=existing.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 1:
            await db.commit()
            await db.refresh(existing)
            return existing

        await db.rollback()
        logger.warning("[PairConsensus] Stale write for %s/%s:%s (attempt %d)", topic_id, user_id1, user_id2, attempt + 1)

    raise StaleConsensusWriteError(f"Could not save consensus for {topic_id}/{user_id1}:{user_id2}")


def serialize_user_consensus(record) -> Dict[str, Any]:
    return {
        "topic_id": record.topic_id,
        "user_id1": record.user_id1,
        "user_id2": record.user_id2,
        "consensus": record.consensus or [],
        "disagreements": record.disagreements or [],
        "consensus_score": record.consensus_score,
        "divergence_score": record.divergence_score,
        "measured": bool(record.measured),
        "doc_ids": record.doc_ids or [],
        "discussion_paths": record.discussion_paths or [],
        "last_analyzed_at": record.last_analyzed_at.isoformat() if record.last_analyzed_at else None,
        "version": record.version,
    }
