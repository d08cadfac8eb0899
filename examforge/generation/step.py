"""One batch of a generation run: prompt, call, validate, persist, record progress."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial

from examforge.ai.contracts import GenerationClient, GenerationResponse, ItemValidator, PromptBuilder, PromptRequest, ResponseParser, SourceContextLoader
from examforge.ai.utils.cost import PricingTable, calculate_call_cost
from examforge.generation.attempts import AttemptTracker
from examforge.generation.errors import AttemptMismatchError, PlanningError, SourceContextError
from examforge.generation.models import (
  BatchLedgerEntry,
  GeneratedItem,
  GenerationProgress,
  MultiSourceProgress,
  SectionRecord,
  SectionSource,
  SectionStatus,
  max_total_batches,
)
from examforge.generation.retry import RetryExecutor, RetryPolicy
from examforge.storage.sections_repo import SectionsRepository
from examforge.utils.ids import generate_item_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchContext:
  batch_index: int
  requested: int
  source: SectionSource | None = None
  source_index: int | None = None


@dataclass(frozen=True)
class StepResult:
  section: SectionRecord
  items_generated: int
  warnings: tuple[str, ...] = ()

  @property
  def has_more(self) -> bool:
    return self.section.has_more


def resolve_batch(section: SectionRecord, batch_index: int) -> BatchContext:
  """Work out how many items the batch asks for and, for multi-source runs, from which source.

  The source comes from the stored cursor, never from recomputing the schedule.
  """
  progress = section.progress
  if progress is None:
    raise PlanningError(f"Section {section.section_id} has no generation plan.")

  remaining_total = progress.effective_target - section.generated_so_far
  if not isinstance(progress, MultiSourceProgress):
    requested = min(progress.batch_size, remaining_total)
    if requested <= 0:
      raise PlanningError(f"Section {section.section_id} has nothing left to generate.")
    return BatchContext(batch_index=batch_index, requested=requested)

  entry = progress.current_entry()
  if entry is None:
    raise PlanningError(f"Section {section.section_id} has no remaining source in its schedule.")

  source = next((candidate for candidate in section.sources if candidate.source_id == entry.source_id), None)
  if source is None:
    raise SourceContextError(f"Source {entry.source_id} is no longer assigned to section {section.section_id}.")

  requested = min(progress.batch_size, entry.remaining, remaining_total)
  if requested <= 0:
    raise PlanningError(f"Section {section.section_id} has nothing left to generate for source {entry.source_id}.")
  return BatchContext(batch_index=batch_index, requested=requested, source=source, source_index=progress.current_source_index)


def advance_progress(progress: GenerationProgress, context: BatchContext, generated: int, entry: BatchLedgerEntry) -> GenerationProgress:
  """Append the ledger entry and move the source cursor once its share is met."""
  ledger = (*progress.ledger, entry)
  if not isinstance(progress, MultiSourceProgress) or context.source_index is None:
    return replace(progress, ledger=ledger)

  schedule = list(progress.schedule)
  current = schedule[context.source_index]
  current = replace(current, generated_for_source=current.generated_for_source + generated, calls_made=current.calls_made + 1)
  schedule[context.source_index] = current
  next_index = progress.current_source_index + 1 if current.remaining == 0 else progress.current_source_index
  return replace(progress, schedule=tuple(schedule), current_source_index=next_index, ledger=ledger)


class GenerationStep:
  """Runs exactly one batch for the attempt recorded on a section."""

  def __init__(
    self,
    repo: SectionsRepository,
    tracker: AttemptTracker,
    client: GenerationClient,
    *,
    prompt_builder: PromptBuilder,
    parser: ResponseParser,
    validator: ItemValidator,
    context_loader: SourceContextLoader,
    retry_policy: RetryPolicy,
    clock: Callable[[], datetime],
    call_timeout_seconds: float = 120.0,
    pricing: PricingTable | None = None,
    provider: str = "gemini",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._repo = repo
    self._tracker = tracker
    self._client = client
    self._prompt_builder = prompt_builder
    self._parser = parser
    self._validator = validator
    self._context_loader = context_loader
    self._retry_policy = retry_policy
    self._clock = clock
    self._call_timeout = call_timeout_seconds
    self._pricing = pricing
    self._provider = provider
    self._sleep = sleep

  async def run_batch(self, section: SectionRecord, batch_index: int) -> StepResult:
    attempt_id = section.attempt_id
    if section.status is not SectionStatus.GENERATING or attempt_id is None:
      raise AttemptMismatchError(f"Section {section.section_id} has no live attempt.")
    if batch_index != section.batch_number + 1:
      raise AttemptMismatchError(f"Batch {batch_index} is not next for section {section.section_id} (at {section.batch_number}).")

    context = resolve_batch(section, batch_index)
    source_id = context.source.source_id if context.source else None
    logger.info("Section %s batch %s/%s: requesting %s question(s) source=%s", section.section_id, batch_index, section.total_batches, context.requested, source_id)

    source_context = await self._context_loader.load(section, context.source)
    existing = await self._repo.list_item_texts(section.section_id, source_id=source_id)
    prompt = self._prompt_builder.build(
      PromptRequest(
        section_name=section.name,
        subject_id=section.subject_id,
        mode=section.mode,
        count=context.requested,
        batch_number=batch_index,
        source_name=context.source.name if context.source else None,
        knowledge_text=source_context.knowledge_text,
        has_reference_documents=bool(source_context.document_uris),
        existing_questions=tuple(existing),
      )
    )

    async def _call() -> GenerationResponse:
      return await asyncio.wait_for(self._client.generate(prompt, document_uris=source_context.document_uris), timeout=self._call_timeout)

    executor = RetryExecutor(self._retry_policy, heartbeat=partial(self._tracker.heartbeat, section.section_id, attempt_id), sleep=self._sleep)
    result = await executor.execute(_call, self._parser.parse)

    payloads = result.items[: context.requested]
    if len(result.items) > context.requested:
      logger.info("Section %s batch %s: discarded %s surplus question(s)", section.section_id, batch_index, len(result.items) - context.requested)

    warnings = self._validator.validate(payloads)
    for warning in warnings:
      logger.warning("Section %s batch %s validation: %s", section.section_id, batch_index, warning)

    items = [
      self._tracker.tag(
        GeneratedItem(
          item_id=generate_item_id(),
          section_id=section.section_id,
          paper_id=section.paper_id,
          batch_number=batch_index,
          question_order=section.generated_so_far + offset,
          payload=payload,
          source_id=source_id,
        ),
        attempt_id,
      )
      for offset, payload in enumerate(payloads, start=1)
    ]

    now = self._clock()
    ledger_entry = BatchLedgerEntry(
      batch_number=batch_index,
      generated_at=now.isoformat(),
      items=len(items),
      tokens=int(result.usage.get("total_tokens") or 0),
      cost=calculate_call_cost(result.usage, self._pricing, provider=self._provider, model=result.model),
      source_id=source_id,
      warnings=tuple(warnings),
    )
    progress = advance_progress(section.progress, context, len(items), ledger_entry)  # type: ignore[arg-type]
    generated_so_far = section.generated_so_far + len(items)

    total_batches = section.total_batches
    # Under-delivery appends a batch, bounded so a stingy service cannot loop forever.
    if generated_so_far < progress.effective_target and batch_index >= total_batches and total_batches < max_total_batches(progress):
      total_batches = batch_index + 1
      logger.info("Section %s short by %s question(s); extending run to %s batches", section.section_id, progress.effective_target - generated_so_far, total_batches)

    updated = await self._repo.persist_batch(
      section.section_id,
      attempt_id,
      expected_batch_number=section.batch_number,
      items=items,
      batch_number=batch_index,
      generated_so_far=generated_so_far,
      total_batches=total_batches,
      progress=progress,
      at=now,
    )
    logger.info("Section %s batch %s stored %s question(s) (%s/%s)", section.section_id, batch_index, len(items), generated_so_far, progress.effective_target)
    return StepResult(section=updated, items_generated=len(items), warnings=tuple(warnings))
