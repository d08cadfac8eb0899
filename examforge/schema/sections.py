from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from examforge.core.database import Base


class Paper(Base):
  __tablename__ = "papers"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  subject_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PaperSection(Base):
  __tablename__ = "paper_sections"
  __table_args__ = (Index("ix_paper_sections_generating", "status", "last_activity_at", postgresql_where=text("status = 'generating'")),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  paper_id: Mapped[str] = mapped_column(ForeignKey("papers.id", ondelete="CASCADE"), nullable=False, index=True)
  subject_id: Mapped[str | None] = mapped_column(String, nullable=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  item_count: Mapped[int] = mapped_column(Integer, nullable=False)
  items_per_unit: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'pending'"))
  generation_mode: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'knowledge_pool'"))
  attempt_id: Mapped[str | None] = mapped_column(String, nullable=True)
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  batch_number: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  total_batches: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  batch_size: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  generated_so_far: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  batch_metadata: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  # Counters a resumed attempt started from; restored if that attempt is rolled back.
  resume_point: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class SectionSourceRow(Base):
  __tablename__ = "section_sources"
  __table_args__ = (UniqueConstraint("section_id", "source_id", name="ux_section_sources_section_source"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  section_id: Mapped[str] = mapped_column(ForeignKey("paper_sections.id", ondelete="CASCADE"), nullable=False, index=True)
  source_id: Mapped[str] = mapped_column(String, nullable=False)
  name: Mapped[str] = mapped_column(String, nullable=False)
  order_index: Mapped[int] = mapped_column(Integer, nullable=False)
  knowledge_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  document_uri: Mapped[str | None] = mapped_column(String, nullable=True)


class Question(Base):
  __tablename__ = "questions"
  __table_args__ = (Index("ix_questions_section_attempt", "section_id", "attempt_id"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  section_id: Mapped[str] = mapped_column(ForeignKey("paper_sections.id", ondelete="CASCADE"), nullable=False, index=True)
  paper_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  source_id: Mapped[str | None] = mapped_column(String, nullable=True)
  attempt_id: Mapped[str | None] = mapped_column(String, nullable=True)
  batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
  question_order: Mapped[int] = mapped_column(Integer, nullable=False)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
