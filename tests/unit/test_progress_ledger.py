from __future__ import annotations

import pytest

from examforge.generation.models import (
  LEDGER_VERSION,
  BatchLedgerEntry,
  MultiSourceProgress,
  SectionStatus,
  SinglePoolProgress,
  SourceScheduleEntry,
  max_total_batches,
  progress_from_json,
  progress_to_json,
)
from fakes import make_section


def test_multi_source_ledger_survives_storage() -> None:
  progress = MultiSourceProgress(
    effective_target=45,
    batch_size=15,
    planned_batches=3,
    schedule=(
      SourceScheduleEntry(source_id="ch-1", order=0, target_for_source=15, generated_for_source=15, calls_made=1),
      SourceScheduleEntry(source_id="ch-2", order=1, target_for_source=15),
    ),
    current_source_index=1,
    ledger=(BatchLedgerEntry(batch_number=1, generated_at="2025-03-01T09:00:00+00:00", items=15, tokens=400, cost=0.0012, source_id="ch-1", warnings=("Question 3 has no text.",)),),
  )

  stored = progress_to_json(progress)

  assert stored["kind"] == "multi_source"
  assert stored["version"] == LEDGER_VERSION
  assert progress_from_json(stored) == progress


def test_ledger_with_unknown_version_is_rejected() -> None:
  stored = progress_to_json(SinglePoolProgress(effective_target=15, batch_size=15, planned_batches=1))
  stored["version"] = LEDGER_VERSION + 1

  with pytest.raises(ValueError, match="version"):
    progress_from_json(stored)


def test_ledger_with_unknown_kind_is_rejected() -> None:
  with pytest.raises(ValueError, match="kind"):
    progress_from_json({"version": LEDGER_VERSION, "kind": "round_robin", "effective_target": 1, "batch_size": 1, "planned_batches": 1})


def test_empty_ledger_reads_as_no_progress() -> None:
  assert progress_from_json(None) is None
  assert progress_from_json({}) is None
  assert progress_to_json(None) is None


def test_has_more_is_judged_from_persisted_counters() -> None:
  progress = SinglePoolProgress(effective_target=120, batch_size=60, planned_batches=2)
  section = make_section(status=SectionStatus.GENERATING, progress=progress, total_batches=2, batch_number=1, generated_so_far=60)

  assert section.has_more
  assert not section.with_updates(generated_so_far=120, batch_number=2).has_more
  # Out of batches even though short of target.
  assert not section.with_updates(generated_so_far=100, batch_number=2).has_more
  assert not make_section().has_more
  assert max_total_batches(progress) == 4
