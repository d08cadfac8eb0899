from __future__ import annotations

import pytest

from examforge.generation.attempts import AttemptTracker
from examforge.generation.errors import AttemptMismatchError
from examforge.generation.models import SectionStatus, SinglePoolProgress
from fakes import make_item, make_section

PROGRESS = SinglePoolProgress(effective_target=15, batch_size=15, planned_batches=1)


def tracker_for(repo, clock, *ids: str) -> AttemptTracker:
  queue = list(ids)
  return AttemptTracker(repo, clock, id_factory=lambda: queue.pop(0))


@pytest.mark.anyio
async def test_begin_records_attempt_before_any_items(repo, clock) -> None:
  section = repo.add_section(make_section())
  tracker = tracker_for(repo, clock, "attempt-1")

  started = await tracker.begin(section, progress=PROGRESS)

  assert started.status is SectionStatus.GENERATING
  assert started.attempt_id == "attempt-1"
  assert started.started_at == clock.now
  assert started.last_activity_at == clock.now
  assert started.total_batches == 1
  assert started.batch_number == 0
  assert started.error is None


@pytest.mark.anyio
async def test_regeneration_deletes_prior_items_first(repo, clock) -> None:
  section = repo.add_section(make_section(status=SectionStatus.IN_REVIEW, error="old failure"))
  repo.add_items([make_item("sec-1", 1), make_item("sec-1", 2, selected=True)])
  tracker = tracker_for(repo, clock, "attempt-2")

  started = await tracker.begin(section, progress=PROGRESS)

  assert await repo.count_items("sec-1") == 0
  assert started.error is None


@pytest.mark.anyio
async def test_resume_keeps_committed_items_and_counters(repo, clock) -> None:
  progress = SinglePoolProgress(effective_target=120, batch_size=60, planned_batches=2)
  section = repo.add_section(make_section(status=SectionStatus.IN_REVIEW, progress=progress, total_batches=2, batch_number=1, generated_so_far=60, batch_size=60))
  repo.add_items([make_item("sec-1", 1)])
  tracker = tracker_for(repo, clock, "attempt-3")

  resumed = await tracker.begin(section, progress=None, resume=True)

  assert resumed.attempt_id == "attempt-3"
  assert resumed.generated_so_far == 60
  assert resumed.batch_number == 1
  assert resumed.progress == progress
  assert await repo.count_items("sec-1") == 1


@pytest.mark.anyio
async def test_second_begin_on_a_live_section_loses_the_race(repo, clock) -> None:
  section = repo.add_section(make_section())
  tracker = tracker_for(repo, clock, "attempt-1", "attempt-2")
  await tracker.begin(section, progress=PROGRESS)

  # Same stale snapshot: the section is no longer ready with no attempt.
  with pytest.raises(AttemptMismatchError):
    await tracker.begin(section, progress=PROGRESS)
  assert repo.sections["sec-1"].attempt_id == "attempt-1"


@pytest.mark.anyio
async def test_commit_clears_tags(repo, clock) -> None:
  section = repo.add_section(make_section())
  tracker = tracker_for(repo, clock, "attempt-1")
  await tracker.begin(section, progress=PROGRESS)
  repo.add_items([tracker.tag(make_item("sec-1", order), "attempt-1") for order in (1, 2)])

  committed = await tracker.commit("sec-1", "attempt-1", completed=True)

  assert committed.status is SectionStatus.IN_REVIEW
  assert committed.attempt_id is None
  assert committed.completed_at == clock.now
  assert await repo.count_items("sec-1", "attempt-1") == 0
  assert await repo.count_items("sec-1") == 2


@pytest.mark.anyio
async def test_rollback_removes_every_tagged_item(repo, clock) -> None:
  section = repo.add_section(make_section())
  tracker = tracker_for(repo, clock, "attempt-1")
  await tracker.begin(section, progress=PROGRESS)
  repo.add_items([tracker.tag(make_item("sec-1", order), "attempt-1") for order in (1, 2, 3)])

  removed = await tracker.rollback("sec-1", "attempt-1", error="boom")

  released = repo.sections["sec-1"]
  assert removed == 3
  assert await repo.count_items("sec-1", "attempt-1") == 0
  assert released.attempt_id is None
  assert released.status is SectionStatus.READY
  assert released.error == "boom"
  assert released.started_at is None
  assert released.progress is None


@pytest.mark.anyio
async def test_heartbeat_rejects_a_superseded_attempt(repo, clock) -> None:
  section = repo.add_section(make_section())
  tracker = tracker_for(repo, clock, "attempt-1")
  await tracker.begin(section, progress=PROGRESS)

  clock.advance(30)
  await tracker.heartbeat("sec-1", "attempt-1")
  assert repo.sections["sec-1"].last_activity_at == clock.now

  with pytest.raises(AttemptMismatchError):
    await tracker.heartbeat("sec-1", "attempt-old")
