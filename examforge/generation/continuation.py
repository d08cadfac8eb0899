"""Decides what follows a successful batch: another batch, a parked run, or completion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Literal

from examforge.ai.contracts import Proofreader
from examforge.generation.attempts import AttemptTracker
from examforge.generation.errors import DispatchError
from examforge.generation.models import SectionRecord
from examforge.services.tasks.interface import ContinuationTask, TaskEnqueuer

logger = logging.getLogger(__name__)

ContinuationAction = Literal["dispatched", "parked", "completed"]


@dataclass(frozen=True)
class ContinuationDecision:
  action: ContinuationAction
  section: SectionRecord


def dispatch_failure_message(section: SectionRecord, reason: str) -> str:
  return (
    f"Batch {section.batch_number + 1}/{section.total_batches} could not be scheduled ({reason}). "
    f"{section.generated_so_far} questions are available for review; resume generation to continue."
  )


class ContinuationScheduler:
  """Fires the next batch without awaiting it, or runs the finishing pass and hands the section to review."""

  def __init__(self, tracker: AttemptTracker, enqueuer: TaskEnqueuer, proofreader: Proofreader | None = None) -> None:
    self._tracker = tracker
    self._enqueuer = enqueuer
    self._proofreader = proofreader

  async def after_step(self, section: SectionRecord, *, auth_token: str | None) -> ContinuationDecision:
    attempt_id = section.attempt_id
    if attempt_id is None:
      raise ValueError(f"Section {section.section_id} has no live attempt to continue.")

    if not section.has_more:
      return ContinuationDecision(action="completed", section=await self.finish(section))

    task = ContinuationTask(paper_id=section.paper_id, section_id=section.section_id, attempt_id=attempt_id, batch_number=section.batch_number + 1, auth_token=auth_token)
    try:
      await self._enqueuer.enqueue_next_batch(task)
    except DispatchError as exc:
      logger.error("Continuation dispatch failed for section %s batch %s: %s", section.section_id, task.batch_number, exc)
      parked = await self._tracker.commit(section.section_id, attempt_id, error=dispatch_failure_message(section, str(exc)))
      return ContinuationDecision(action="parked", section=parked)

    logger.info("Dispatched batch %s/%s for section %s", task.batch_number, section.total_batches, section.section_id)
    return ContinuationDecision(action="dispatched", section=section)

  async def finish(self, section: SectionRecord) -> SectionRecord:
    """Sole terminal-success path: proofread, then commit the attempt into review."""
    attempt_id = section.attempt_id
    if attempt_id is None:
      raise ValueError(f"Section {section.section_id} has no live attempt to finish.")

    notes: list[str] = []
    if self._proofreader is not None:
      try:
        notes = await self._proofreader.proofread(section)
      except Exception as exc:  # noqa: BLE001
        # Proofreading is advisory; a failure must not strand the run in generating.
        logger.warning("Proofreading failed for section %s; completing without it", section.section_id, exc_info=True)
        notes = [f"Proofreading skipped: {exc}"]

    progress = replace(section.progress, finishing_warnings=tuple(notes)) if section.progress else None
    completed = await self._tracker.commit(section.section_id, attempt_id, progress=progress, completed=True)
    logger.info("Section %s generation complete: %s question(s) ready for review", section.section_id, completed.generated_so_far)
    return completed
