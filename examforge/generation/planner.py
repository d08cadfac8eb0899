"""Batch size planning for section generation runs."""

from __future__ import annotations

import math
from dataclasses import dataclass

from examforge.generation.models import GenerationProgress, MultiSourceProgress, SectionSource, SinglePoolProgress, SourceScheduleEntry


@dataclass(frozen=True)
class BufferPolicy:
  """Over-generation allowance: a proportional buffer capped by an absolute ceiling."""

  ratio: float = 1.5
  fixed_cap: int = 20

  def effective_target(self, target_count: int) -> int:
    return min(math.ceil(target_count * self.ratio), target_count + self.fixed_cap)


@dataclass(frozen=True)
class BatchPlan:
  """Sizing for one generation run."""

  effective_target: int
  batch_size: int
  total_batches: int
  source_count: int | None = None
  per_source_target: int | None = None
  calls_per_source: int | None = None

  @property
  def is_multi_source(self) -> bool:
    return self.source_count is not None


def plan(target_count: int, buffer_policy: BufferPolicy, per_call_cap: int, source_count: int | None = None) -> BatchPlan:
  """Compute batch size and count.

  ``source_count=None`` plans a single pool with as few calls as the cap allows. A
  positive ``source_count`` gives every source its own share of the target, with calls
  for one source made back to back. Callers reject a zero target before planning.
  """

  if per_call_cap < 1:
    raise ValueError("per_call_cap must be at least 1.")
  if source_count is not None and source_count < 1:
    raise ValueError("source_count must be at least 1 in multi-source mode.")

  effective_target = buffer_policy.effective_target(target_count)

  if source_count is None:
    calls = max(math.ceil(effective_target / per_call_cap), 1)
    batch_size = math.ceil(effective_target / calls)
    return BatchPlan(effective_target=effective_target, batch_size=batch_size, total_batches=calls)

  per_source_target = math.ceil(effective_target / source_count)
  calls_per_source = max(math.ceil(per_source_target / per_call_cap), 1)
  batch_size = math.ceil(per_source_target / calls_per_source)
  return BatchPlan(
    effective_target=effective_target,
    batch_size=batch_size,
    total_batches=source_count * calls_per_source,
    source_count=source_count,
    per_source_target=per_source_target,
    calls_per_source=calls_per_source,
  )


def initial_progress(batch_plan: BatchPlan, sources: tuple[SectionSource, ...] = ()) -> GenerationProgress:
  """Build the empty ledger a new run starts from, including the source schedule."""
  if not batch_plan.is_multi_source:
    return SinglePoolProgress(effective_target=batch_plan.effective_target, batch_size=batch_plan.batch_size, planned_batches=batch_plan.total_batches)

  ordered = sorted(sources, key=lambda source: source.order)
  if len(ordered) != batch_plan.source_count:
    raise ValueError("Source list does not match the planned source count.")

  schedule = tuple(SourceScheduleEntry(source_id=source.source_id, order=index, target_for_source=batch_plan.per_source_target or 0) for index, source in enumerate(ordered))
  return MultiSourceProgress(
    effective_target=batch_plan.effective_target,
    batch_size=batch_plan.batch_size,
    planned_batches=batch_plan.total_batches,
    schedule=schedule,
  )
