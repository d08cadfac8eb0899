"""Reclaims generation runs that stopped sending heartbeats."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from examforge.generation.attempts import AttemptTracker
from examforge.generation.errors import AttemptMismatchError
from examforge.generation.models import SectionRecord, SectionStatus

logger = logging.getLogger(__name__)

REAPED_MESSAGE = "Generation timed out and was automatically cleaned up"


@dataclass(frozen=True)
class ReapResult:
  acted: bool
  removed_items: int = 0


def last_sign_of_life(section: SectionRecord) -> datetime | None:
  """Later of heartbeat and start time."""
  stamps = [stamp for stamp in (section.last_activity_at, section.started_at) if stamp is not None]
  return max(stamps) if stamps else None


class StalenessReaper:
  def __init__(self, tracker: AttemptTracker, *, stale_after: timedelta, clock: Callable[[], datetime]) -> None:
    self._tracker = tracker
    self._stale_after = stale_after
    self._clock = clock

  def is_stale(self, section: SectionRecord, now: datetime | None = None) -> bool:
    if section.status is not SectionStatus.GENERATING:
      return False
    seen = last_sign_of_life(section)
    # A generating row without timestamps cannot prove liveness.
    if seen is None:
      return True
    return (now or self._clock()) - seen > self._stale_after

  async def reap(self, section: SectionRecord) -> ReapResult:
    """Roll back an abandoned run; a healthy or non-generating section is left untouched."""
    now = self._clock()
    if not self.is_stale(section, now):
      return ReapResult(acted=False)

    if section.attempt_id is None:
      logger.warning("Section %s is generating without an attempt id; releasing it", section.section_id)

    try:
      removed = await self._tracker.rollback(section.section_id, section.attempt_id, error=REAPED_MESSAGE, status=SectionStatus.READY, stale_before=now - self._stale_after)
    except AttemptMismatchError:
      # The run advanced or finished between the read and the reset.
      logger.info("Section %s changed while reaping; leaving it alone", section.section_id)
      return ReapResult(acted=False)

    logger.warning("Reaped stale generation for section %s (attempt %s, removed %s item(s))", section.section_id, section.attempt_id, removed)
    return ReapResult(acted=True, removed_items=removed)
