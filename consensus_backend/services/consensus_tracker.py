"""
Topic-level consensus tracking.

Each run measures claim overlap across a topic's quality documents, derives
key points, the most important recorded disagreements and a trend against
recent history, and stores a retention-bounded snapshot.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from consensus_backend.config import SNAPSHOT_RETENTION, TREND_THRESHOLD, TREND_WINDOW
from consensus_backend.services.quality_gate import QualityThresholds, is_quality_document
from consensus_backend.services.topic_reader import TopicDocument, fetch_topic, load_topic_documents

logger = logging.getLogger(__name__)

TREND_CONVERGING = "converging"
TREND_DIVERGING = "diverging"
TREND_STABLE = "stable"

KEY_POINT_LIMIT = 5
DISAGREEMENT_LIMIT = 10

SEVERITY_RANK = {"high": 3, "medium": 2, "low": 1}
SEVERITY_LABELS = {"high": "严重", "medium": "中等"}
DEFAULT_SEVERITY_LABEL = "轻微"

_TOKEN_PATTERN = re.compile(r"[一-龥]+|[a-zA-Z]+")


@dataclass
class SnapshotResult:
    topic_id: str
    consensus_score: float = 0.5
    divergence_score: float = 0.5
    trend: str = TREND_STABLE
    key_points: List[str] = field(default_factory=list)
    disagreements: List[str] = field(default_factory=list)
    measured: bool = False
    id: Optional[str] = None
    snapshot_at: Optional[datetime] = None

    def consensus_data(self) -> Dict[str, Any]:
        return {
            "consensusScore": self.consensus_score,
            "divergenceScore": self.divergence_score,
            "trend": self.trend,
            "keyPoints": list(self.key_points),
            "disagreements": list(self.disagreements),
            "measured": self.measured,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic_id": self.topic_id,
            "snapshot_at": self.snapshot_at.isoformat() if self.snapshot_at else None,
            "consensus_score": self.consensus_score,
            "divergence_score": self.divergence_score,
            "consensus_data": self.consensus_data(),
        }

    @classmethod
    def from_record(cls, record) -> "SnapshotResult":
        data = record.consensus_data or {}
        consensus_score = record.consensus_score
        if consensus_score is None:
            consensus_score = data.get("consensusScore", 0.5)
        return cls(
            topic_id=record.topic_id,
            consensus_score=consensus_score,
            divergence_score=1.0 - consensus_score,
            trend=data.get("trend", TREND_STABLE),
            key_points=list(data.get("keyPoints") or []),
            disagreements=list(data.get("disagreements") or []),
            measured=bool(data.get("measured", True)),
            id=record.id,
            snapshot_at=record.snapshot_at,
        )


def tokenize(claim: str) -> set:
    """Lower-cased set of CJK runs and Latin words."""
    return {token.lower() for token in _TOKEN_PATTERN.findall(claim or "")}


def calculate_consensus_score(claims: Sequence[str]) -> float:
    """
    Mean pairwise Jaccard similarity of claim token sets.

    No claims gives 0.5, a single claim gives 1.0.
    """
    if not claims:
        return 0.5
    if len(claims) == 1:
        return 1.0

    token_sets = [tokenize(claim) for claim in claims]
    total = 0.0
    pair_count = 0
    for i in range(len(token_sets)):
        for j in range(i + 1, len(token_sets)):
            union = token_sets[i] | token_sets[j]
            if union:
                total += len(token_sets[i] & token_sets[j]) / len(union)
            pair_count += 1

    return total / pair_count if pair_count else 0.5


def extract_key_points(docs: Sequence[TopicDocument], limit: int = KEY_POINT_LIMIT) -> List[str]:
    """Claims found in at least two distinct documents, most frequent first."""
    counts: Counter = Counter()
    for doc in docs:
        counts.update(list(dict.fromkeys(doc.claims)))

    # Counter.most_common keeps first-seen order among equal counts
    return [claim for claim, count in counts.most_common() if count >= 2][:limit]


def format_disagreement(title: str, severity: Optional[str], description: Optional[str]) -> str:
    label = SEVERITY_LABELS.get(severity, DEFAULT_SEVERITY_LABEL)
    return f"{title}（{label}）：{description or ''}"


def calculate_trend(
    prior_scores: Sequence[Optional[float]],
    current_score: float,
    threshold: float = TREND_THRESHOLD,
) -> str:
    """Compare the current score with the mean of recent snapshot scores."""
    scores = [score for score in prior_scores if score is not None]
    if not scores:
        return TREND_STABLE

    diff = current_score - sum(scores) / len(scores)
    if diff > threshold:
        return TREND_CONVERGING
    if diff < -threshold:
        return TREND_DIVERGING
    return TREND_STABLE


class ConsensusTracker:
    """Creates topic consensus snapshots."""

    def __init__(self, db, thresholds: Optional[QualityThresholds] = None,
                 retention: int = SNAPSHOT_RETENTION, trend_window: int = TREND_WINDOW):
        self.db = db
        self.thresholds = thresholds
        self.retention = max(1, retention)
        self.trend_window = trend_window

    async def track_consensus(self, topic_id: str) -> SnapshotResult:
        logger.info("[ConsensusTracker] Tracking consensus for topic %s", topic_id)

        topic = await fetch_topic(self.db, topic_id)
        discipline = getattr(topic, "discipline", None)
        docs = await load_topic_documents(self.db, topic_id)
        quality_docs = [doc for doc in docs if is_quality_document(doc, discipline, self.thresholds)]

        logger.info("[ConsensusTracker] Total docs: %d, quality docs: %d", len(docs), len(quality_docs))

        if len(quality_docs) < 2:
            return SnapshotResult(topic_id=topic_id, snapshot_at=datetime.now(timezone.utc))

        claims = [claim for doc in quality_docs for claim in doc.claims]
        if not claims:
            logger.info("[ConsensusTracker] No claims on quality documents of topic %s", topic_id)
            return SnapshotResult(topic_id=topic_id, snapshot_at=datetime.now(timezone.utc))
        consensus_score = calculate_consensus_score(claims)

        result = SnapshotResult(
            topic_id=topic_id,
            consensus_score=consensus_score,
            divergence_score=1.0 - consensus_score,
            trend=calculate_trend(await self.recent_scores(topic_id), consensus_score),
            key_points=extract_key_points(quality_docs),
            disagreements=await self.extract_disagreements(topic_id),
            measured=True,
        )
        return await self.create_consensus_snapshot(result)

    async def recent_scores(self, topic_id: str) -> List[Optional[float]]:
        from consensus_backend.models import ConsensusSnapshot

        result = await self.db.execute(
            select(ConsensusSnapshot.consensus_score)
            .where(ConsensusSnapshot.topic_id == topic_id)
            .order_by(ConsensusSnapshot.snapshot_at.desc())
            .limit(self.trend_window)
        )
        return list(result.scalars().all())

    async def extract_disagreements(self, topic_id: str, limit: int = DISAGREEMENT_LIMIT) -> List[str]:
        from consensus_backend.models import Disagreement

        try:
            result = await self.db.execute(
                select(Disagreement.title, Disagreement.description, Disagreement.severity)
                .where(Disagreement.topic_id == topic_id, Disagreement.false_positive.is_(False))
                .order_by(Disagreement.confidence.desc(), Disagreement.created_at.desc())
                .limit(limit)
            )
            rows = result.all()
        except SQLAlchemyError as exc:
            logger.error("[ConsensusTracker] Failed to extract disagreements for topic %s: %s", topic_id, exc)
            return []

        rows = sorted(rows, key=lambda row: SEVERITY_RANK.get(row.severity, 0), reverse=True)
        return [format_disagreement(row.title, row.severity, row.description) for row in rows]

    async def create_consensus_snapshot(self, result: SnapshotResult) -> SnapshotResult:
        """Prune old snapshots and insert the new one in a single transaction."""
        from consensus_backend.models import ConsensusSnapshot

        keep = select(ConsensusSnapshot.id).where(
            ConsensusSnapshot.topic_id == result.topic_id
        ).order_by(ConsensusSnapshot.snapshot_at.desc()).limit(self.retention - 1)

        try:
            kept_ids = list((await self.db.execute(keep)).scalars().all())
            prune = delete(ConsensusSnapshot).where(ConsensusSnapshot.topic_id == result.topic_id)
            if kept_ids:
                prune = prune.where(ConsensusSnapshot.id.notin_(kept_ids))
            await self.db.execute(prune.execution_options(synchronize_session=False))

            snapshot = ConsensusSnapshot(
                topic_id=result.topic_id,
                consensus_score=result.consensus_score,
                divergence_score=result.divergence_score,
                consensus_data=result.consensus_data(),
            )
            self.db.add(snapshot)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        await self.db.refresh(snapshot)
        return SnapshotResult.from_record(snapshot)


async def get_latest_snapshot(db, topic_id: str) -> Optional[SnapshotResult]:
    from consensus_backend.models import ConsensusSnapshot

    result = await db.execute(
        select(ConsensusSnapshot)
        .where(ConsensusSnapshot.topic_id == topic_id)
        .order_by(ConsensusSnapshot.snapshot_at.desc())
        .limit(1)
    )
    record = result.scalars().first()
    return SnapshotResult.from_record(record) if record else None


async def list_snapshots(db, topic_id: str, limit: int = 20) -> List[SnapshotResult]:
    """Most recent snapshots, newest first."""
    from consensus_backend.models import ConsensusSnapshot

    result = await db.execute(
        select(ConsensusSnapshot)
        .where(ConsensusSnapshot.topic_id == topic_id)
        .order_by(ConsensusSnapshot.snapshot_at.desc())
        .limit(limit)
    )
    return [SnapshotResult.from_record(record) for record in result.scalars().all()]
