"""Postgres-backed sections repository using SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, literal_column, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from examforge.core.database import get_session_factory
from examforge.generation.errors import AttemptMismatchError, InvalidTransitionError, PersistenceError
from examforge.generation.models import (
  GeneratedItem,
  GenerationMode,
  GenerationProgress,
  SectionRecord,
  SectionSource,
  SectionStatus,
  progress_from_json,
  progress_to_json,
)
from examforge.schema.sections import PaperSection, Question, SectionSourceRow
from examforge.storage.sections_repo import SectionsRepository

logger = logging.getLogger(__name__)

_RESET_RUN_FIELDS: dict[str, Any] = {
  "attempt_id": None,
  "started_at": None,
  "last_activity_at": None,
  "batch_number": 0,
  "total_batches": 0,
  "batch_size": 0,
  "generated_so_far": 0,
  "batch_metadata": None,
  "resume_point": None,
  "completed_at": None,
}

_RESUME_COLUMNS = ("batch_number", "total_batches", "batch_size", "generated_so_far", "batch_metadata")


def _attempt_matches(expected_attempt_id: str | None) -> Any:
  if expected_attempt_id is None:
    return PaperSection.attempt_id.is_(None)
  return PaperSection.attempt_id == expected_attempt_id


def _live_attempt(section_id: str, attempt_id: str) -> tuple[Any, ...]:
  return (PaperSection.id == section_id, PaperSection.attempt_id == attempt_id, PaperSection.status == SectionStatus.GENERATING.value)


class PostgresSectionsRepository(SectionsRepository):
  """Persist sections, sources and questions to Postgres.

  Writes against a live run are compare-and-swap updates keyed on the attempt id, so a
  reaped or superseded step cannot advance progress it no longer owns.
  """

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  @asynccontextmanager
  async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
    try:
      async with self._session_factory() as session, session.begin():
        yield session
    except SQLAlchemyError as exc:
      logger.error("Section store operation failed: %s", operation, exc_info=True)
      raise PersistenceError(f"Could not {operation}.") from exc

  async def get_section(self, section_id: str) -> SectionRecord | None:
    async with self._transaction("load section") as session:
      return await self._load(session, section_id)

  async def start_attempt(
    self,
    section_id: str,
    *,
    expected_status: SectionStatus,
    expected_attempt_id: str | None,
    attempt_id: str,
    started_at: datetime,
    progress: GenerationProgress | None,
    total_batches: int | None,
    reset: bool,
  ) -> SectionRecord:
    values: dict[str, Any] = {"status": SectionStatus.GENERATING.value, "attempt_id": attempt_id, "started_at": started_at, "last_activity_at": started_at, "error": None, "completed_at": None}
    if reset:
      if progress is None:
        raise ValueError("A fresh attempt needs a generation plan.")
      values.update(
        batch_number=0, generated_so_far=0, batch_size=progress.batch_size, total_batches=total_batches or progress.planned_batches, batch_metadata=progress_to_json(progress), resume_point=None
      )
    else:
      # SET expressions read the pre-update row, so this snapshots the counters being resumed.
      pairs = [part for column in _RESUME_COLUMNS for part in (literal_column(f"'{column}'"), getattr(PaperSection, column))]
      values["resume_point"] = func.jsonb_build_object(*pairs)

    async with self._transaction("start generation") as session:
      if reset:
        # Prior items go before the new attempt exists; the CAS below rolls this back on conflict.
        await session.execute(delete(Question).where(Question.section_id == section_id))
      statement = (
        update(PaperSection)
        .where(PaperSection.id == section_id, PaperSection.status == expected_status.value, _attempt_matches(expected_attempt_id))
        .values(**values)
        .execution_options(synchronize_session=False)
      )
      result = await session.execute(statement)
      if result.rowcount != 1:
        raise AttemptMismatchError(f"Section {section_id} changed before generation could start.")
      return await self._require(session, section_id)

  async def touch_attempt(self, section_id: str, attempt_id: str, at: datetime) -> None:
    async with self._transaction("refresh heartbeat") as session:
      statement = update(PaperSection).where(*_live_attempt(section_id, attempt_id)).values(last_activity_at=at).execution_options(synchronize_session=False)
      result = await session.execute(statement)
      if result.rowcount != 1:
        raise AttemptMismatchError(f"Attempt {attempt_id} is no longer live on section {section_id}.")

  async def persist_batch(
    self,
    section_id: str,
    attempt_id: str,
    *,
    expected_batch_number: int,
    items: Sequence[GeneratedItem],
    batch_number: int,
    generated_so_far: int,
    total_batches: int,
    progress: GenerationProgress,
    at: datetime,
  ) -> SectionRecord:
    async with self._transaction("save generated questions") as session:
      statement = (
        update(PaperSection)
        .where(*_live_attempt(section_id, attempt_id), PaperSection.batch_number == expected_batch_number)
        .values(batch_number=batch_number, generated_so_far=generated_so_far, total_batches=total_batches, batch_metadata=progress_to_json(progress), last_activity_at=at)
        .execution_options(synchronize_session=False)
      )
      result = await session.execute(statement)
      if result.rowcount != 1:
        raise AttemptMismatchError(f"Attempt {attempt_id} lost section {section_id} before batch {batch_number} was stored.")

      session.add_all(
        Question(
          id=item.item_id,
          section_id=item.section_id,
          paper_id=item.paper_id,
          source_id=item.source_id,
          attempt_id=item.attempt_id,
          batch_number=item.batch_number,
          question_order=item.question_order,
          payload=item.payload,
          is_selected=item.is_selected,
        )
        for item in items
      )
      await session.flush()
      return await self._require(session, section_id)

  async def commit_attempt(self, section_id: str, attempt_id: str, *, error: str | None, progress: GenerationProgress | None = None, completed_at: datetime | None = None) -> SectionRecord:
    values: dict[str, Any] = {"status": SectionStatus.IN_REVIEW.value, "attempt_id": None, "error": error, "resume_point": None}
    if progress is not None:
      values["batch_metadata"] = progress_to_json(progress)
    if completed_at is not None:
      values["completed_at"] = completed_at

    async with self._transaction("commit generated questions") as session:
      statement = update(PaperSection).where(*_live_attempt(section_id, attempt_id)).values(**values).execution_options(synchronize_session=False)
      result = await session.execute(statement)
      if result.rowcount != 1:
        raise AttemptMismatchError(f"Attempt {attempt_id} is no longer live on section {section_id}.")
      await session.execute(update(Question).where(Question.section_id == section_id, Question.attempt_id == attempt_id).values(attempt_id=None).execution_options(synchronize_session=False))
      return await self._require(session, section_id)

  async def abandon_attempt(self, section_id: str, attempt_id: str | None, *, status: SectionStatus, error: str, stale_before: datetime | None = None) -> int:
    conditions = [PaperSection.id == section_id, _attempt_matches(attempt_id), PaperSection.status == SectionStatus.GENERATING.value]
    if stale_before is not None:
      seen = func.greatest(PaperSection.last_activity_at, PaperSection.started_at)
      conditions.append(or_(seen.is_(None), seen < stale_before))

    async with self._transaction("roll back generation") as session:
      row = (await session.execute(select(PaperSection).where(*conditions).with_for_update())).scalar_one_or_none()
      if row is None:
        raise AttemptMismatchError(f"Attempt {attempt_id} is no longer eligible for rollback on section {section_id}.")

      resume_point = row.resume_point
      if resume_point:
        values: dict[str, Any] = {
          **_RESET_RUN_FIELDS,
          **{column: resume_point.get(column) for column in _RESUME_COLUMNS},
          "status": SectionStatus.IN_REVIEW.value,
          "error": error,
        }
      else:
        values = {**_RESET_RUN_FIELDS, "status": status.value, "error": error}
      await session.execute(update(PaperSection).where(PaperSection.id == section_id).values(**values).execution_options(synchronize_session=False))

      doomed = delete(Question).where(Question.section_id == section_id)
      if attempt_id is not None:
        doomed = doomed.where(Question.attempt_id == attempt_id)
      elif resume_point:
        # Untagged items of a resumed run cannot be told apart from committed ones.
        return 0
      deleted = await session.execute(doomed)
      return int(deleted.rowcount or 0)

  async def count_items(self, section_id: str, attempt_id: str | None = None) -> int:
    statement = select(func.count()).select_from(Question).where(Question.section_id == section_id)
    if attempt_id is not None:
      statement = statement.where(Question.attempt_id == attempt_id)
    async with self._transaction("count questions") as session:
      return int((await session.execute(statement)).scalar_one())

  async def list_item_texts(self, section_id: str, *, attempt_id: str | None = None, source_id: str | None = None) -> list[str]:
    statement = select(Question.payload).where(Question.section_id == section_id).order_by(Question.question_order)
    if attempt_id is not None:
      statement = statement.where(Question.attempt_id == attempt_id)
    if source_id is not None:
      statement = statement.where(Question.source_id == source_id)
    async with self._transaction("list questions") as session:
      payloads = (await session.execute(statement)).scalars().all()
    return [str(payload.get("question") or "") for payload in payloads]

  async def count_selected_items(self, section_id: str) -> int:
    statement = select(func.count()).select_from(Question).where(Question.section_id == section_id, Question.is_selected.is_(True))
    async with self._transaction("count selected questions") as session:
      return int((await session.execute(statement)).scalar_one())

  async def update_status(self, section_id: str, *, expected_status: SectionStatus, status: SectionStatus) -> SectionRecord:
    async with self._transaction("update section status") as session:
      statement = update(PaperSection).where(PaperSection.id == section_id, PaperSection.status == expected_status.value).values(status=status.value).execution_options(synchronize_session=False)
      result = await session.execute(statement)
      if result.rowcount != 1:
        raise InvalidTransitionError(f"Section {section_id} is no longer {expected_status.value}.", current="unknown", target=status.value)
      return await self._require(session, section_id)

  async def replace_sources(self, section_id: str, *, mode: GenerationMode, sources: Sequence[SectionSource]) -> SectionRecord:
    async with self._transaction("assign chapters") as session:
      statement = (
        update(PaperSection)
        .where(PaperSection.id == section_id, PaperSection.status != SectionStatus.FINALIZED.value, PaperSection.attempt_id.is_(None))
        .values(status=SectionStatus.READY.value, generation_mode=mode.value, error=None, **_RESET_RUN_FIELDS)
        .execution_options(synchronize_session=False)
      )
      result = await session.execute(statement)
      if result.rowcount != 1:
        raise AttemptMismatchError(f"Section {section_id} changed while chapters were being assigned.")
      await session.execute(delete(Question).where(Question.section_id == section_id))
      await session.execute(delete(SectionSourceRow).where(SectionSourceRow.section_id == section_id))
      session.add_all(
        SectionSourceRow(section_id=section_id, source_id=source.source_id, name=source.name, order_index=source.order, knowledge_text=source.knowledge_text, document_uri=source.document_uri)
        for source in sources
      )
      await session.flush()
      return await self._require(session, section_id)

  async def _require(self, session: AsyncSession, section_id: str) -> SectionRecord:
    record = await self._load(session, section_id)
    if record is None:
      raise PersistenceError(f"Section {section_id} disappeared mid-update.")
    return record

  async def _load(self, session: AsyncSession, section_id: str) -> SectionRecord | None:
    row = (await session.execute(select(PaperSection).where(PaperSection.id == section_id).execution_options(populate_existing=True))).scalar_one_or_none()
    if row is None:
      return None
    source_rows = (await session.execute(select(SectionSourceRow).where(SectionSourceRow.section_id == section_id).order_by(SectionSourceRow.order_index))).scalars().all()
    return self._model_to_record(row, source_rows)

  def _model_to_record(self, row: PaperSection, source_rows: Sequence[SectionSourceRow]) -> SectionRecord:
    try:
      progress = progress_from_json(row.batch_metadata)
    except (ValueError, KeyError, TypeError) as exc:
      raise PersistenceError(f"Section {row.id} has an unreadable batch_metadata ledger: {exc}") from exc

    sources = tuple(
      SectionSource(source_id=source.source_id, name=source.name, order=source.order_index, knowledge_text=source.knowledge_text, document_uri=source.document_uri) for source in source_rows
    )
    return SectionRecord(
      section_id=row.id,
      paper_id=row.paper_id,
      name=row.name,
      item_count=row.item_count,
      status=SectionStatus(row.status),
      mode=GenerationMode(row.generation_mode),
      subject_id=row.subject_id,
      items_per_unit=row.items_per_unit,
      sources=sources,
      attempt_id=row.attempt_id,
      started_at=row.started_at,
      last_activity_at=row.last_activity_at,
      error=row.error,
      batch_number=row.batch_number,
      total_batches=row.total_batches,
      batch_size=row.batch_size,
      generated_so_far=row.generated_so_far,
      progress=progress,
      completed_at=row.completed_at,
    )
