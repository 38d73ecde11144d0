"""
API endpoints for topic consensus analysis.

Provides endpoints for:
- Reading the latest topic snapshot and its history
- Pair-weighted topic overview and identified user pairs
- Stored consensus between two users
- Triggering a full topic analysis
- Per-document quality decisions
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from consensus_backend.db_session import get_async_session
from consensus_backend.services.consensus_tracker import (
    SnapshotResult,
    get_latest_snapshot,
    list_snapshots,
)
from consensus_backend.services.pair_consensus import get_pair_consensus, serialize_user_consensus
from consensus_backend.services.quality_gate import evaluate_document
from consensus_backend.services.topic_consensus_aggregator import analyze_topic, calculate_topic_consensus
from consensus_backend.services.topic_reader import fetch_topic, load_topic_documents
from consensus_backend.services.user_pairs import identify_pairs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/topics", tags=["consensus"])


class ConsensusData(BaseModel):
    consensusScore: float
    divergenceScore: float
    trend: str
    keyPoints: List[str]
    disagreements: List[str]
    measured: bool


class SnapshotResponse(BaseModel):
    """Response model for one topic consensus snapshot"""
    id: Optional[str] = None
    topic_id: str
    snapshot_at: Optional[str] = None
    consensus_score: float
    divergence_score: float
    consensus_data: ConsensusData


class SnapshotListResponse(BaseModel):
    snapshots: List[SnapshotResponse]
    count: int


class PairSummaryResponse(BaseModel):
    user_id1: str
    user_id2: str
    consensus_score: float
    divergence_score: float
    doc_count: int
    discussion_rounds: int
    weight: float


class OverviewResponse(BaseModel):
    """Response model for the pair-weighted topic consensus"""
    consensus_score: float
    divergence_score: float
    user_pair_count: int
    analyzed_pairs: int
    user_pairs: List[PairSummaryResponse]


class UserPairResponse(BaseModel):
    user_id1: str
    user_id2: str
    doc_ids: List[str]
    discussion_paths: List[Dict[str, Any]]


class UserPairListResponse(BaseModel):
    pairs: List[UserPairResponse]
    count: int


class UserConsensusResponse(BaseModel):
    """Response model for a stored user-pair consensus record"""
    topic_id: str
    user_id1: str
    user_id2: str
    consensus: List[Dict[str, Any]]
    disagreements: List[Dict[str, Any]]
    consensus_score: Optional[float]
    divergence_score: Optional[float]
    measured: bool
    doc_ids: List[str]
    discussion_paths: List[Dict[str, Any]]
    last_analyzed_at: Optional[str]
    version: int


class TriggerResponse(BaseModel):
    topic_id: str
    pairs_found: int
    pairs_saved: int
    pairs_measured: int
    snapshot: Optional[SnapshotResponse]


class DocumentQualityResponse(BaseModel):
    document_id: str
    author_id: str
    evaluated: bool
    is_sufficient: bool
    overall_score: Optional[float] = None
    critical_score: Optional[float] = None
    reasons: List[str] = []
    suggestions: List[str] = []


class QualityListResponse(BaseModel):
    topic_id: str
    documents: List[DocumentQualityResponse]
    sufficient_count: int


async def _require_topic(db: AsyncSession, topic_id: str):
    topic = await fetch_topic(db, topic_id)
    if topic is None:
        raise HTTPException(status_code=404, detail=f"Topic {topic_id} not found")
    return topic


@router.get("/{topic_id}/consensus", response_model=SnapshotResponse)
async def get_topic_consensus(topic_id: str, db: AsyncSession = Depends(get_async_session)):
    """
    Latest consensus snapshot of a topic.

    Returns the insufficient-data default (``measured`` false) when no
    snapshot has been recorded yet.
    """
    try:
        snapshot = await get_latest_snapshot(db, topic_id)
        if snapshot is None:
            snapshot = SnapshotResult(topic_id=topic_id)
        return snapshot.to_dict()
    except Exception as e:
        logger.error("Failed to load consensus for topic %s: %s", topic_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to load consensus: {str(e)}")


@router.get("/{topic_id}/consensus/snapshots", response_model=SnapshotListResponse)
async def get_topic_snapshots(
    topic_id: str,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_async_session),
):
    """Snapshot history for charting, newest first."""
    try:
        snapshots = await list_snapshots(db, topic_id, limit=limit)
        return {"snapshots": [s.to_dict() for s in snapshots], "count": len(snapshots)}
    except Exception as e:
        logger.error("Failed to list snapshots for topic %s: %s", topic_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to list snapshots: {str(e)}")


@router.get("/{topic_id}/consensus/overview", response_model=OverviewResponse)
async def get_topic_overview(topic_id: str, db: AsyncSession = Depends(get_async_session)):
    try:
        result = await calculate_topic_consensus(db, topic_id)
        return result.to_dict()
    except Exception as e:
        logger.error("Failed to aggregate consensus for topic %s: %s", topic_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to aggregate consensus: {str(e)}")


@router.get("/{topic_id}/consensus/pairs", response_model=UserPairListResponse)
async def get_topic_pairs(topic_id: str, db: AsyncSession = Depends(get_async_session)):
    """User pairs connected by at least one direct reply."""
    try:
        await _require_topic(db, topic_id)
        pairs = await identify_pairs(db, topic_id)
        return {"pairs": [pair.to_dict() for pair in pairs], "count": len(pairs)}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to identify pairs for topic %s: %s", topic_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to identify pairs: {str(e)}")


@router.get("/{topic_id}/consensus/users/{user_a}/{user_b}", response_model=UserConsensusResponse)
async def get_user_consensus(
    topic_id: str,
    user_a: str,
    user_b: str,
    db: AsyncSession = Depends(get_async_session),
):
    """Stored consensus between two users; the order of the two ids does not matter."""
    try:
        record = await get_pair_consensus(db, topic_id, user_a, user_b)
        if record is None:
            raise HTTPException(
                status_code=404,
                detail=f"No consensus record for users {user_a} and {user_b} in topic {topic_id}",
            )
        return serialize_user_consensus(record)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to load user consensus for topic %s: %s", topic_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to load user consensus: {str(e)}")


@router.post("/{topic_id}/consensus/trigger", response_model=TriggerResponse)
async def trigger_topic_analysis(topic_id: str, db: AsyncSession = Depends(get_async_session)):
    """
    Run a full analysis of the topic.

    Every user pair is analyzed and stored, then a topic snapshot is taken.
    """
    logger.info("=== Triggering consensus analysis for topic %s ===", topic_id)
    try:
        await _require_topic(db, topic_id)
        report = await analyze_topic(db, topic_id)
        return report.to_dict()
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Consensus analysis failed for topic %s: %s", topic_id, e)
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Consensus analysis failed: {str(e)}")


@router.get("/{topic_id}/quality", response_model=QualityListResponse)
async def get_topic_quality(topic_id: str, db: AsyncSession = Depends(get_async_session)):
    try:
        topic = await _require_topic(db, topic_id)
        documents = await load_topic_documents(db, topic_id)

        items = []
        for doc in documents:
            decision = evaluate_document(doc, topic.discipline)
            if decision is None:
                items.append({
                    "document_id": doc.id,
                    "author_id": doc.author_id,
                    "evaluated": False,
                    "is_sufficient": False,
                })
                continue
            items.append({"document_id": doc.id, "author_id": doc.author_id, "evaluated": True, **decision.to_dict()})

        return {
            "topic_id": topic_id,
            "documents": items,
            "sufficient_count": sum(1 for item in items if item["is_sufficient"]),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to evaluate quality for topic %s: %s", topic_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to evaluate quality: {str(e)}")
