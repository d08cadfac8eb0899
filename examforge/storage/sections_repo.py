"""Repository interface for sections and their generated items."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from examforge.generation.models import GeneratedItem, GenerationMode, GenerationProgress, SectionRecord, SectionSource, SectionStatus


class SectionsRepository(Protocol):
  """Persistence contract for the generation engine.

  Every write that touches a live run is conditional on the section still carrying the
  expected attempt id and raises AttemptMismatchError otherwise.
  """

  async def get_section(self, section_id: str) -> SectionRecord | None:
    """Return a section with its sources, or None."""
    ...

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
    """Move the section to generating under a new attempt.

    With ``reset`` every existing item of the section is deleted first and counters
    restart from the given progress; without it counters and ledger carry over and are
    remembered as the resume point.
    """
    ...

  async def touch_attempt(self, section_id: str, attempt_id: str, at: datetime) -> None:
    """Refresh the heartbeat of a live attempt."""
    ...

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
    """Insert a batch of items and advance progress in one transaction."""
    ...

  async def commit_attempt(self, section_id: str, attempt_id: str, *, error: str | None, progress: GenerationProgress | None = None, completed_at: datetime | None = None) -> SectionRecord:
    """Promote the attempt's items and move the section to in_review."""
    ...

  async def abandon_attempt(self, section_id: str, attempt_id: str | None, *, status: SectionStatus, error: str, stale_before: datetime | None = None) -> int:
    """Delete the attempt's items and release the section; return the number of items removed.

    A fresh attempt resets run fields and moves the section to ``status``. A resumed
    attempt instead restores the counters and ledger it resumed from and returns the
    section to in_review, so earlier committed items stay accounted for.

    ``attempt_id=None`` targets a generating row that lost its attempt tag. Without a
    resume point every item of the section is removed.

    With ``stale_before`` the rollback only applies if the latest of heartbeat and start
    time is older than that instant.
    """
    ...

  async def count_items(self, section_id: str, attempt_id: str | None = None) -> int:
    """Count items of a section, optionally restricted to one attempt."""
    ...

  async def list_item_texts(self, section_id: str, *, attempt_id: str | None = None, source_id: str | None = None) -> list[str]:
    """Return question texts already generated, for duplicate avoidance."""
    ...

  async def count_selected_items(self, section_id: str) -> int:
    """Count items a reviewer has selected for the final paper."""
    ...

  async def update_status(self, section_id: str, *, expected_status: SectionStatus, status: SectionStatus) -> SectionRecord:
    """Conditionally change status outside of a generation run."""
    ...

  async def replace_sources(self, section_id: str, *, mode: GenerationMode, sources: Sequence[SectionSource]) -> SectionRecord:
    """Replace sources, delete all items, clear run fields and mark the section ready."""
    ...
