"""Attempt lifecycle: the unit of tagging, commit and rollback for one generation run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from examforge.generation.models import GeneratedItem, GenerationProgress, SectionRecord, SectionStatus
from examforge.storage.sections_repo import SectionsRepository
from examforge.utils.ids import generate_attempt_id

logger = logging.getLogger(__name__)


class AttemptTracker:
  """Issues attempt ids and applies commit/rollback through the repository."""

  def __init__(self, repo: SectionsRepository, clock: Callable[[], datetime], id_factory: Callable[[], str] = generate_attempt_id) -> None:
    self._repo = repo
    self._clock = clock
    self._id_factory = id_factory

  async def begin(self, section: SectionRecord, *, progress: GenerationProgress | None, total_batches: int | None = None, resume: bool = False) -> SectionRecord:
    """Record a fresh attempt on the section before any external call.

    A fresh run (``resume=False``) deletes every prior item of the section first. A
    resumed run keeps committed items and counters and only swaps in a new attempt id.
    """
    attempt_id = self._id_factory()
    started = await self._repo.start_attempt(
      section.section_id,
      expected_status=section.status,
      expected_attempt_id=section.attempt_id,
      attempt_id=attempt_id,
      started_at=self._clock(),
      progress=progress,
      total_batches=total_batches,
      reset=not resume,
    )
    logger.info("Attempt %s started for section %s (resume=%s, from=%s)", attempt_id, section.section_id, resume, section.status.value)
    return started

  @staticmethod
  def tag(item: GeneratedItem, attempt_id: str) -> GeneratedItem:
    return replace(item, attempt_id=attempt_id)

  async def heartbeat(self, section_id: str, attempt_id: str) -> None:
    await self._repo.touch_attempt(section_id, attempt_id, self._clock())

  async def commit(self, section_id: str, attempt_id: str, *, error: str | None = None, progress: GenerationProgress | None = None, completed: bool = False) -> SectionRecord:
    """Clear the attempt tag so its items become permanent, leaving the section in review."""
    committed = await self._repo.commit_attempt(section_id, attempt_id, error=error, progress=progress, completed_at=self._clock() if completed else None)
    logger.info("Attempt %s committed for section %s (generated=%s, completed=%s)", attempt_id, section_id, committed.generated_so_far, completed)
    return committed

  async def rollback(self, section_id: str, attempt_id: str | None, *, error: str, status: SectionStatus = SectionStatus.READY, stale_before: datetime | None = None) -> int:
    """Delete every item bearing the attempt tag and release the section (back to review for a resumed run)."""
    removed = await self._repo.abandon_attempt(section_id, attempt_id, status=status, error=error, stale_before=stale_before)
    logger.info("Attempt %s rolled back for section %s (removed=%s, status=%s)", attempt_id, section_id, removed, status.value)
    return removed
