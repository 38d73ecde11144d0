"""Topic document tree read helpers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select


@dataclass
class DocumentNode:
    """Minimal tree view of a document: enough to walk reply edges."""
    id: str
    parent_id: Optional[str]
    author_id: str
    created_at: datetime


@dataclass
class LatestEvaluation:
    scores: Dict[str, Any]
    discipline: Optional[str] = None


@dataclass
class TopicDocument(DocumentNode):
    """Document with its latest evaluation and latest summary claims."""
    latest_evaluation: Optional[LatestEvaluation] = None
    claims: List[str] = field(default_factory=list)


def claims_from_summary(raw_claims: Any) -> List[str]:
    """Keep only string claims; upstream summaries occasionally carry objects."""
    if not isinstance(raw_claims, list):
        return []
    return [claim for claim in raw_claims if isinstance(claim, str)]


async def fetch_topic(db, topic_id: str):
    from consensus_backend.models import Topic

    result = await db.execute(select(Topic).where(Topic.id == topic_id))
    return result.scalar_one_or_none()


async def load_document_nodes(db, topic_id: str) -> List[DocumentNode]:
    """All documents of a topic as tree nodes, oldest first."""
    from consensus_backend.models import Document

    result = await db.execute(
        select(Document.id, Document.parent_id, Document.author_id, Document.created_at)
        .where(Document.topic_id == topic_id)
        .order_by(Document.created_at)
    )
    return [
        DocumentNode(id=row.id, parent_id=row.parent_id, author_id=row.author_id, created_at=row.created_at)
        for row in result.all()
    ]


async def _latest_evaluations(db, doc_ids: Sequence[str]) -> Dict[str, LatestEvaluation]:
    from consensus_backend.models import Evaluation

    result = await db.execute(
        select(Evaluation)
        .where(Evaluation.document_id.in_(list(doc_ids)))
        .order_by(Evaluation.created_at.desc())
    )
    latest: Dict[str, LatestEvaluation] = {}
    for evaluation in result.scalars().all():
        if evaluation.document_id not in latest:
            latest[evaluation.document_id] = LatestEvaluation(
                scores=dict(evaluation.scores or {}),
                discipline=evaluation.discipline,
            )
    return latest


async def _latest_claims(db, doc_ids: Sequence[str]) -> Dict[str, List[str]]:
    from consensus_backend.models import Summary

    result = await db.execute(
        select(Summary)
        .where(Summary.document_id.in_(list(doc_ids)))
        .order_by(Summary.created_at.desc(), Summary.id.desc())
    )
    latest: Dict[str, List[str]] = {}
    for summary in result.scalars().all():
        if summary.document_id not in latest:
            latest[summary.document_id] = claims_from_summary(summary.claims)
    return latest


async def load_topic_documents(
    db,
    topic_id: str,
    doc_ids: Optional[Iterable[str]] = None,
) -> List[TopicDocument]:
    """
    Load documents of a topic with their latest evaluation and summary claims.

    Args:
        db: Async database session
        topic_id: Topic id
        doc_ids: Optional restriction to these document ids

    Returns:
        TopicDocument list ordered by creation time
    """
    from consensus_backend.models import Document

    query = select(Document).where(Document.topic_id == topic_id).order_by(Document.created_at)
    if doc_ids is not None:
        wanted = list(doc_ids)
        if not wanted:
            return []
        query = query.where(Document.id.in_(wanted))

    result = await db.execute(query)
    documents = list(result.scalars().all())
    if not documents:
        return []

    ids = [doc.id for doc in documents]
    evaluations = await _latest_evaluations(db, ids)
    claims = await _latest_claims(db, ids)

    return [
        TopicDocument(
            id=doc.id,
            parent_id=doc.parent_id,
            author_id=doc.author_id,
            created_at=doc.created_at,
            latest_evaluation=evaluations.get(doc.id),
            claims=claims.get(doc.id, []),
        )
        for doc in documents
    ]
