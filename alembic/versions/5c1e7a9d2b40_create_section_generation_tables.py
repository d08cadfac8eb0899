"""create section generation tables

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-19 09:12:44.318205

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c1e7a9d2b40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "papers",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("subject_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_papers_subject_id", "papers", ["subject_id"])

  op.create_table(
    "paper_sections",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("paper_id", sa.String(), nullable=False),
    sa.Column("subject_id", sa.String(), nullable=True),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("item_count", sa.Integer(), nullable=False),
    sa.Column("items_per_unit", sa.Integer(), server_default=sa.text("1"), nullable=False),
    sa.Column("status", sa.String(), server_default=sa.text("'pending'"), nullable=False),
    sa.Column("generation_mode", sa.String(), server_default=sa.text("'knowledge_pool'"), nullable=False),
    sa.Column("attempt_id", sa.String(), nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("batch_number", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("total_batches", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("batch_size", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("generated_so_far", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("batch_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("resume_point", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["paper_id"], ["papers.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_paper_sections_paper_id", "paper_sections", ["paper_id"])
  # Partial index keeps reaper sweeps over running sections cheap.
  op.create_index("ix_paper_sections_generating", "paper_sections", ["status", "last_activity_at"], postgresql_where=sa.text("status = 'generating'"))

  op.create_table(
    "section_sources",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("section_id", sa.String(), nullable=False),
    sa.Column("source_id", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("order_index", sa.Integer(), nullable=False),
    sa.Column("knowledge_text", sa.Text(), nullable=True),
    sa.Column("document_uri", sa.String(), nullable=True),
    sa.ForeignKeyConstraint(["section_id"], ["paper_sections.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("section_id", "source_id", name="ux_section_sources_section_source"),
  )
  op.create_index("ix_section_sources_section_id", "section_sources", ["section_id"])

  op.create_table(
    "questions",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("section_id", sa.String(), nullable=False),
    sa.Column("paper_id", sa.String(), nullable=False),
    sa.Column("source_id", sa.String(), nullable=True),
    sa.Column("attempt_id", sa.String(), nullable=True),
    sa.Column("batch_number", sa.Integer(), nullable=False),
    sa.Column("question_order", sa.Integer(), nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("is_selected", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["section_id"], ["paper_sections.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_questions_section_id", "questions", ["section_id"])
  op.create_index("ix_questions_paper_id", "questions", ["paper_id"])
  op.create_index("ix_questions_section_attempt", "questions", ["section_id", "attempt_id"])


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_questions_section_attempt", table_name="questions")
  op.drop_index("ix_questions_paper_id", table_name="questions")
  op.drop_index("ix_questions_section_id", table_name="questions")
  op.drop_table("questions")
  op.drop_index("ix_section_sources_section_id", table_name="section_sources")
  op.drop_table("section_sources")
  op.drop_index("ix_paper_sections_generating", table_name="paper_sections")
  op.drop_index("ix_paper_sections_paper_id", table_name="paper_sections")
  op.drop_table("paper_sections")
  op.drop_index("ix_papers_subject_id", table_name="papers")
  op.drop_table("papers")
