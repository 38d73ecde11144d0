"""
SQLAlchemy models for the topic consensus backend.

Topic, Document, Evaluation, Summary, Disagreement and SystemAiConfig are
written by upstream flows and only read here. UserConsensus and
ConsensusSnapshot are owned by the consensus engine.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text, DateTime, JSON,
    ForeignKey, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Topic(Base):
    """Discussion topic container"""
    __tablename__ = "topics"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(Text, nullable=False)
    discipline = Column(Text)  # '哲学', '文学', '历史', '科学' or NULL for default rubric

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    documents = relationship("Document", back_populates="topic")


class Document(Base):
    """User-authored document; parent_id forms the reply tree of a topic"""
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_new_id)
    topic_id = Column(String(36), ForeignKey('topics.id', ondelete='CASCADE'), nullable=False)
    parent_id = Column(String(36), ForeignKey('documents.id', ondelete='SET NULL'))
    author_id = Column(String(64), nullable=False)
    title = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    topic = relationship("Topic", back_populates="documents")
    evaluations = relationship("Evaluation", back_populates="document")
    summaries = relationship("Summary", back_populates="document")

    __table_args__ = (
        Index('idx_documents_topic', 'topic_id', 'created_at'),
        Index('idx_documents_parent', 'parent_id'),
        Index('idx_documents_author', 'topic_id', 'author_id'),
    )


class Evaluation(Base):
    """Rubric scores for a document (dimension -> 0-10)"""
    __tablename__ = "evaluations"

    id = Column(String(36), primary_key=True, default=_new_id)
    document_id = Column(String(36), ForeignKey('documents.id', ondelete='CASCADE'), nullable=False)

    scores = Column(JSONType, nullable=False, default=dict)
    discipline = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    document = relationship("Document", back_populates="evaluations")

    __table_args__ = (
        Index('idx_evaluations_document', 'document_id', 'created_at'),
    )


class Summary(Base):
    """Upstream AI summary of a document; only the claims list is consumed"""
    __tablename__ = "summaries"

    id = Column(String(36), primary_key=True, default=_new_id)
    document_id = Column(String(36), ForeignKey('documents.id', ondelete='CASCADE'), nullable=False)

    claims = Column(JSONType, nullable=False, default=list)  # Array of claim strings

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    document = relationship("Document", back_populates="summaries")

    __table_args__ = (
        Index('idx_summaries_document', 'document_id', 'created_at'),
    )


class Disagreement(Base):
    """Topic-level disagreement found by the (external) disagreement analysis"""
    __tablename__ = "disagreements"

    id = Column(String(36), primary_key=True, default=_new_id)
    topic_id = Column(String(36), ForeignKey('topics.id', ondelete='CASCADE'), nullable=False)

    title = Column(Text, nullable=False)
    description = Column(Text)
    severity = Column(Text, nullable=False, default='medium')  # 'high', 'medium', 'low'
    confidence = Column(Float, nullable=False, default=0.5)
    false_positive = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_disagreements_topic', 'topic_id', 'false_positive'),
        CheckConstraint("severity IN ('high', 'medium', 'low')", name='check_disagreement_severity'),
    )


class SystemAiConfig(Base):
    """System-wide AI provider configuration (latest updated_at wins)"""
    __tablename__ = "system_ai_config"

    id = Column(String(36), primary_key=True, default=_new_id)
    provider = Column(Text, nullable=False)  # 'openai', 'qwen', 'siliconflow'
    model = Column(Text)
    enc_api_key = Column(Text, nullable=False)
    api_endpoint = Column(Text)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class UserConsensus(Base):
    """Consensus/disagreement between two users who replied to each other in a topic"""
    __tablename__ = "user_consensus"

    id = Column(String(36), primary_key=True, default=_new_id)
    topic_id = Column(String(36), ForeignKey('topics.id', ondelete='CASCADE'), nullable=False)

    # Canonical order: user_id1 < user_id2
    user_id1 = Column(String(64), nullable=False)
    user_id2 = Column(String(64), nullable=False)

    consensus = Column(JSONType, nullable=False, default=list)
    disagreements = Column(JSONType, nullable=False, default=list)
    consensus_score = Column(Float)
    divergence_score = Column(Float)
    measured = Column(Boolean, nullable=False, default=False)

    doc_ids = Column(JSONType, nullable=False, default=list)
    discussion_paths = Column(JSONType, nullable=False, default=list)

    last_analyzed_at = Column(DateTime(timezone=True), default=_utcnow)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint('topic_id', 'user_id1', 'user_id2', name='uq_user_consensus_pair'),
        Index('idx_user_consensus_topic', 'topic_id'),
        CheckConstraint('user_id1 < user_id2', name='check_user_consensus_canonical'),
    )


class ConsensusSnapshot(Base):
    """Point-in-time topic consensus measurement (retention-bounded per topic)"""
    __tablename__ = "consensus_snapshots"

    id = Column(String(36), primary_key=True, default=_new_id)
    topic_id = Column(String(36), ForeignKey('topics.id', ondelete='CASCADE'), nullable=False)

    snapshot_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    consensus_score = Column(Float)
    divergence_score = Column(Float)
    consensus_data = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_consensus_snapshots_topic', 'topic_id', 'snapshot_at'),
    )
