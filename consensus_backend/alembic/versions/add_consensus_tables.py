"""Add topic consensus tables

Revision ID: add_consensus_tables
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'add_consensus_tables'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if 'topics' not in existing_tables:
        op.create_table(
            'topics',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('title', sa.Text, nullable=False),
            sa.Column('discipline', sa.Text),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    if 'documents' not in existing_tables:
        op.create_table(
            'documents',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('topic_id', sa.String(36), sa.ForeignKey('topics.id', ondelete='CASCADE'), nullable=False),
            sa.Column('parent_id', sa.String(36), sa.ForeignKey('documents.id', ondelete='SET NULL')),
            sa.Column('author_id', sa.String(64), nullable=False),
            sa.Column('title', sa.Text),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_documents_topic', 'documents', ['topic_id', 'created_at'])
        op.create_index('idx_documents_parent', 'documents', ['parent_id'])
        op.create_index('idx_documents_author', 'documents', ['topic_id', 'author_id'])

    if 'evaluations' not in existing_tables:
        op.create_table(
            'evaluations',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('document_id', sa.String(36), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
            sa.Column('scores', JSON_TYPE, nullable=False),
            sa.Column('discipline', sa.Text),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_evaluations_document', 'evaluations', ['document_id', 'created_at'])

    if 'summaries' not in existing_tables:
        op.create_table(
            'summaries',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('document_id', sa.String(36), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
            sa.Column('claims', JSON_TYPE, nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_summaries_document', 'summaries', ['document_id', 'created_at'])

    if 'disagreements' not in existing_tables:
        op.create_table(
            'disagreements',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('topic_id', sa.String(36), sa.ForeignKey('topics.id', ondelete='CASCADE'), nullable=False),
            sa.Column('title', sa.Text, nullable=False),
            sa.Column('description', sa.Text),
            sa.Column('severity', sa.Text, nullable=False, server_default='medium'),
            sa.Column('confidence', sa.Float, nullable=False, server_default='0.5'),
            sa.Column('false_positive', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("severity IN ('high', 'medium', 'low')", name='check_disagreement_severity'),
        )
        op.create_index('idx_disagreements_topic', 'disagreements', ['topic_id', 'false_positive'])

    if 'system_ai_config' not in existing_tables:
        op.create_table(
            'system_ai_config',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('provider', sa.Text, nullable=False),
            sa.Column('model', sa.Text),
            sa.Column('enc_api_key', sa.Text, nullable=False),
            sa.Column('api_endpoint', sa.Text),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )

    if 'user_consensus' not in existing_tables:
        op.create_table(
            'user_consensus',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('topic_id', sa.String(36), sa.ForeignKey('topics.id', ondelete='CASCADE'), nullable=False),
            sa.Column('user_id1', sa.String(64), nullable=False),
            sa.Column('user_id2', sa.String(64), nullable=False),
            sa.Column('consensus', JSON_TYPE, nullable=False),
            sa.Column('disagreements', JSON_TYPE, nullable=False),
            sa.Column('consensus_score', sa.Float),
            sa.Column('divergence_score', sa.Float),
            sa.Column('measured', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('doc_ids', JSON_TYPE, nullable=False),
            sa.Column('discussion_paths', JSON_TYPE, nullable=False),
            sa.Column('last_analyzed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('version', sa.Integer, nullable=False, server_default='1'),
            sa.UniqueConstraint('topic_id', 'user_id1', 'user_id2', name='uq_user_consensus_pair'),
            sa.CheckConstraint('user_id1 < user_id2', name='check_user_consensus_canonical'),
        )
        op.create_index('idx_user_consensus_topic', 'user_consensus', ['topic_id'])

    if 'consensus_snapshots' not in existing_tables:
        op.create_table(
            'consensus_snapshots',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('topic_id', sa.String(36), sa.ForeignKey('topics.id', ondelete='CASCADE'), nullable=False),
            sa.Column('snapshot_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('consensus_score', sa.Float),
            sa.Column('divergence_score', sa.Float),
            sa.Column('consensus_data', JSON_TYPE, nullable=False),
        )
        op.create_index('idx_consensus_snapshots_topic', 'consensus_snapshots', ['topic_id', 'snapshot_at'])


def downgrade():
    op.drop_index('idx_consensus_snapshots_topic', table_name='consensus_snapshots')
    op.drop_table('consensus_snapshots')
    op.drop_index('idx_user_consensus_topic', table_name='user_consensus')
    op.drop_table('user_consensus')
