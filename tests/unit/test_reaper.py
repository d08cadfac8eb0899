from __future__ import annotations

from datetime import timedelta

import pytest

from examforge.generation.attempts import AttemptTracker
from examforge.generation.models import SectionStatus, SinglePoolProgress
from examforge.generation.reaper import REAPED_MESSAGE, StalenessReaper, last_sign_of_life
from fakes import make_item, make_section, running_section

THRESHOLD = timedelta(minutes=7)
PROGRESS = SinglePoolProgress(effective_target=120, batch_size=60, planned_batches=2)


def reaper_for(repo, clock) -> StalenessReaper:
  return StalenessReaper(AttemptTracker(repo, clock), stale_after=THRESHOLD, clock=clock)


@pytest.mark.anyio
async def test_recent_heartbeat_is_left_alone(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now - timedelta(minutes=30))
  section = repo.add_section(section.with_updates(last_activity_at=clock.now - timedelta(seconds=1)))
  repo.add_items([make_item("sec-1", 1, attempt_id="attempt-1")])

  result = await reaper_for(repo, clock).reap(section)

  assert not result.acted
  assert repo.sections["sec-1"].attempt_id == "attempt-1"
  assert await repo.count_items("sec-1") == 1


@pytest.mark.anyio
async def test_heartbeat_past_threshold_rolls_back(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now - THRESHOLD - timedelta(seconds=1), batch_number=1, generated_so_far=60)
  repo.add_items([make_item("sec-1", order, attempt_id="attempt-1") for order in (1, 2)])

  result = await reaper_for(repo, clock).reap(section)

  reset = repo.sections["sec-1"]
  assert result.acted
  assert result.removed_items == 2
  assert await repo.count_items("sec-1", "attempt-1") == 0
  assert reset.status is SectionStatus.READY
  assert reset.attempt_id is None
  assert reset.started_at is None
  assert reset.last_activity_at is None
  assert reset.generated_so_far == 0
  assert reset.error == REAPED_MESSAGE


@pytest.mark.anyio
async def test_slow_run_is_judged_by_its_refreshed_heartbeat(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now - timedelta(minutes=20))
  section = repo.add_section(section.with_updates(last_activity_at=clock.now - timedelta(minutes=2)))

  assert last_sign_of_life(section) == clock.now - timedelta(minutes=2)
  assert not (await reaper_for(repo, clock).reap(section)).acted


@pytest.mark.anyio
async def test_non_generating_sections_are_never_reaped(repo, clock) -> None:
  ancient = clock.now - timedelta(days=3)
  for status in (SectionStatus.READY, SectionStatus.IN_REVIEW, SectionStatus.FAILED, SectionStatus.FINALIZED):
    section = repo.add_section(make_section(status=status, started_at=ancient, last_activity_at=ancient))
    assert not (await reaper_for(repo, clock).reap(section)).acted
    assert repo.sections["sec-1"].status is status


@pytest.mark.anyio
async def test_reap_is_idempotent(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now - timedelta(hours=1))
  reaper = reaper_for(repo, clock)

  first = await reaper.reap(section)
  # A poller holding the old snapshot calls again.
  second = await reaper.reap(section)

  assert first.acted
  assert not second.acted
  assert repo.sections["sec-1"].status is SectionStatus.READY


@pytest.mark.anyio
async def test_heartbeat_that_lands_after_the_read_wins(repo, clock) -> None:
  snapshot = running_section(repo, PROGRESS, started_at=clock.now - timedelta(hours=1))
  # The step refreshes its heartbeat between the reaper's read and its reset.
  repo.add_section(snapshot.with_updates(last_activity_at=clock.now))

  result = await reaper_for(repo, clock).reap(snapshot)

  assert not result.acted
  assert repo.sections["sec-1"].attempt_id == "attempt-1"
  assert repo.sections["sec-1"].status is SectionStatus.GENERATING


def test_generating_section_without_timestamps_counts_as_stale(repo, clock) -> None:
  section = make_section(status=SectionStatus.GENERATING, attempt_id="attempt-1")

  assert reaper_for(repo, clock).is_stale(section)


@pytest.mark.anyio
async def test_reaping_a_resumed_run_restores_the_committed_run(repo, clock) -> None:
  parked = repo.add_section(
    make_section(item_count=100, status=SectionStatus.IN_REVIEW, progress=PROGRESS, total_batches=2, batch_size=60, batch_number=1, generated_so_far=2, error="Batch 2/2 could not be scheduled.")
  )
  repo.add_items([make_item("sec-1", order) for order in (1, 2)])
  resumed = await AttemptTracker(repo, clock, id_factory=lambda: "attempt-2").begin(parked, progress=PROGRESS, resume=True)
  await repo.persist_batch(
    "sec-1",
    "attempt-2",
    expected_batch_number=1,
    items=[make_item("sec-1", 3, attempt_id="attempt-2")],
    batch_number=2,
    generated_so_far=3,
    total_batches=2,
    progress=PROGRESS,
    at=clock.now,
  )
  clock.advance(THRESHOLD.total_seconds() + 1)

  result = await reaper_for(repo, clock).reap(repo.sections["sec-1"])

  restored = repo.sections["sec-1"]
  assert resumed.attempt_id == "attempt-2"
  assert result.acted
  assert result.removed_items == 1
  assert restored.status is SectionStatus.IN_REVIEW
  assert restored.attempt_id is None
  assert restored.batch_number == 1
  assert restored.generated_so_far == 2
  assert restored.progress == PROGRESS
  assert restored.has_more
  assert restored.error == REAPED_MESSAGE
  assert [item.question_order for item in repo.items_for("sec-1")] == [1, 2]


@pytest.mark.anyio
async def test_generating_section_without_an_attempt_is_released(repo, clock) -> None:
  orphan = repo.add_section(make_section(status=SectionStatus.GENERATING, progress=PROGRESS, total_batches=2, batch_number=1, generated_so_far=1))
  repo.add_items([make_item("sec-1", 1)])

  result = await reaper_for(repo, clock).reap(orphan)

  released = repo.sections["sec-1"]
  assert result.acted
  assert result.removed_items == 1
  assert released.status is SectionStatus.READY
  assert released.generated_so_far == 0
  assert released.error == REAPED_MESSAGE
  assert repo.items_for("sec-1") == []
  assert not (await reaper_for(repo, clock).reap(released)).acted
