"""
Topic consensus from stored user-pair records, and the full per-topic run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from consensus_backend.services.consensus_tracker import ConsensusTracker, SnapshotResult
from consensus_backend.services.pair_consensus import PairConsensusAnalyzer
from consensus_backend.services.quality_gate import QualityThresholds
from consensus_backend.services.similarity_service import SimilarityService
from consensus_backend.services.user_pairs import identify_pairs

logger = logging.getLogger(__name__)


@dataclass
class PairWeight:
    user_id1: str
    user_id2: str
    consensus_score: float
    divergence_score: float
    doc_count: int
    discussion_rounds: int
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id1": self.user_id1,
            "user_id2": self.user_id2,
            "consensus_score": self.consensus_score,
            "divergence_score": self.divergence_score,
            "doc_count": self.doc_count,
            "discussion_rounds": self.discussion_rounds,
            "weight": self.weight,
        }


@dataclass
class TopicConsensusResult:
    consensus_score: float = 0.5
    divergence_score: float = 0.5
    user_pair_count: int = 0
    analyzed_pairs: int = 0
    user_pairs: List[PairWeight] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consensus_score": self.consensus_score,
            "divergence_score": self.divergence_score,
            "user_pair_count": self.user_pair_count,
            "analyzed_pairs": self.analyzed_pairs,
            "user_pairs": [pair.to_dict() for pair in self.user_pairs],
        }


def pair_weight(doc_count: int, discussion_paths: List[Dict[str, Any]]) -> float:
    """docCount * (1 + avgDepth * 0.1) * (1 + rounds * 0.2); avgDepth is 1 without paths."""
    rounds = len(discussion_paths)
    if rounds:
        avg_depth = sum((path.get("depth") or 0) for path in discussion_paths) / rounds
    else:
        avg_depth = 1
    return doc_count * (1 + avg_depth * 0.1) * (1 + rounds * 0.2)


async def calculate_topic_consensus(db, topic_id: str) -> TopicConsensusResult:
    """
    Weighted mean of the measured pair consensus scores of a topic.

    Pairs that were stored with an insufficient-data default are counted in
    ``user_pair_count`` but carry no weight.
    """
    from consensus_backend.models import UserConsensus

    logger.info("[TopicConsensusAggregator] Calculating topic consensus for %s", topic_id)

    result = await db.execute(
        select(UserConsensus)
        .where(UserConsensus.topic_id == topic_id)
        .order_by(UserConsensus.user_id1, UserConsensus.user_id2)
    )
    records = list(result.scalars().all())
    if not records:
        logger.info("[TopicConsensusAggregator] No user consensus records found")
        return TopicConsensusResult()

    total_weight = 0.0
    weighted = 0.0
    pairs: List[PairWeight] = []

    for record in records:
        if record.consensus_score is None or not record.measured:
            continue
        paths = [path for path in (record.discussion_paths or []) if isinstance(path, dict)]
        doc_count = len(record.doc_ids or [])
        weight = pair_weight(doc_count, paths)

        weighted += record.consensus_score * weight
        total_weight += weight
        pairs.append(
            PairWeight(
                user_id1=record.user_id1,
                user_id2=record.user_id2,
                consensus_score=record.consensus_score,
                divergence_score=1.0 - record.consensus_score,
                doc_count=doc_count,
                discussion_rounds=len(paths),
                weight=weight,
            )
        )

    consensus_score = weighted / total_weight if total_weight > 0 else 0.5
    return TopicConsensusResult(
        consensus_score=consensus_score,
        divergence_score=1.0 - consensus_score,
        user_pair_count=len(records),
        analyzed_pairs=len(pairs),
        user_pairs=pairs,
    )


@dataclass
class TopicAnalysisReport:
    topic_id: str
    pairs_found: int = 0
    pairs_saved: int = 0
    pairs_measured: int = 0
    snapshot: Optional[SnapshotResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic_id": self.topic_id,
            "pairs_found": self.pairs_found,
            "pairs_saved": self.pairs_saved,
            "pairs_measured": self.pairs_measured,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


async def analyze_topic(
    db,
    topic_id: str,
    similarity_service: Optional[SimilarityService] = None,
    analyzer: Optional[PairConsensusAnalyzer] = None,
    tracker: Optional[ConsensusTracker] = None,
    thresholds: Optional[QualityThresholds] = None,
) -> TopicAnalysisReport:
    """
    Analyze every user pair of a topic, then record a topic snapshot.

    Pairs run one after another on the same session.
    """
    analyzer = analyzer or PairConsensusAnalyzer(db, similarity_service=similarity_service, thresholds=thresholds)
    tracker = tracker or ConsensusTracker(db, thresholds=thresholds)

    pairs = await identify_pairs(db, topic_id)
    logger.info("[TopicConsensusAggregator] Found %d user pairs in topic %s", len(pairs), topic_id)

    report = TopicAnalysisReport(topic_id=topic_id, pairs_found=len(pairs))
    for pair in pairs:
        record = await analyzer.analyze_and_save_pair(topic_id, pair.user_id1, pair.user_id2)
        if record is None:
            continue
        report.pairs_saved += 1
        if record.measured:
            report.pairs_measured += 1

    report.snapshot = await tracker.track_consensus(topic_id)
    logger.info(
        "[TopicConsensusAggregator] Topic %s analyzed: %d/%d pairs measured",
        topic_id,
        report.pairs_measured,
        report.pairs_found,
    )
    return report
