from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from examforge.generation.attempts import AttemptTracker
from examforge.generation.continuation import ContinuationScheduler
from examforge.generation.errors import DispatchError
from examforge.generation.models import SectionStatus, SinglePoolProgress
from fakes import RecordingEnqueuer, make_item, running_section

PROGRESS = SinglePoolProgress(effective_target=120, batch_size=60, planned_batches=2)


@pytest.mark.anyio
async def test_remaining_work_dispatches_next_batch_with_caller_token(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now, batch_number=1, generated_so_far=60)
  enqueuer = RecordingEnqueuer()
  scheduler = ContinuationScheduler(AttemptTracker(repo, clock), enqueuer)

  decision = await scheduler.after_step(section, auth_token="user-token")

  assert decision.action == "dispatched"
  assert decision.section.status is SectionStatus.GENERATING
  [task] = enqueuer.tasks
  assert (task.section_id, task.attempt_id, task.batch_number, task.auth_token) == ("sec-1", "attempt-1", 2, "user-token")


@pytest.mark.anyio
async def test_dispatch_failure_parks_the_run_in_review(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now, batch_number=1, generated_so_far=60)
  repo.add_items([make_item("sec-1", order, attempt_id="attempt-1") for order in (1, 2)])
  scheduler = ContinuationScheduler(AttemptTracker(repo, clock), RecordingEnqueuer(error=DispatchError("connection refused")))

  decision = await scheduler.after_step(section, auth_token=None)

  parked = repo.sections["sec-1"]
  assert decision.action == "parked"
  assert parked.status is SectionStatus.IN_REVIEW
  assert parked.attempt_id is None
  assert "Batch 2/2 could not be scheduled (connection refused)" in parked.error
  # Progress survives so the run can be resumed from batch 2.
  assert parked.has_more
  assert await repo.count_items("sec-1", "attempt-1") == 0
  assert await repo.count_items("sec-1") == 2


@pytest.mark.anyio
async def test_finished_run_is_proofread_then_committed(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now, batch_number=2, generated_so_far=120)
  proofreader = AsyncMock()
  proofreader.proofread.return_value = ["Duplicate question (2x): what is light?"]
  enqueuer = RecordingEnqueuer()
  scheduler = ContinuationScheduler(AttemptTracker(repo, clock), enqueuer, proofreader)

  decision = await scheduler.after_step(section, auth_token="user-token")

  assert decision.action == "completed"
  assert enqueuer.tasks == []
  proofreader.proofread.assert_awaited_once()
  completed = repo.sections["sec-1"]
  assert completed.status is SectionStatus.IN_REVIEW
  assert completed.completed_at == clock.now
  assert completed.error is None
  assert completed.progress.finishing_warnings == ("Duplicate question (2x): what is light?",)


@pytest.mark.anyio
async def test_proofreading_failure_does_not_block_completion(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now, batch_number=2, generated_so_far=120)
  proofreader = AsyncMock()
  proofreader.proofread.side_effect = RuntimeError("proofreader offline")
  scheduler = ContinuationScheduler(AttemptTracker(repo, clock), RecordingEnqueuer(), proofreader)

  decision = await scheduler.after_step(section, auth_token=None)

  assert decision.action == "completed"
  assert decision.section.status is SectionStatus.IN_REVIEW
  assert decision.section.progress.finishing_warnings == ("Proofreading skipped: proofreader offline",)


@pytest.mark.anyio
async def test_section_without_attempt_cannot_continue(repo, clock) -> None:
  section = running_section(repo, PROGRESS, started_at=clock.now).with_updates(attempt_id=None)
  scheduler = ContinuationScheduler(AttemptTracker(repo, clock), RecordingEnqueuer())

  with pytest.raises(ValueError):
    await scheduler.after_step(section, auth_token=None)
