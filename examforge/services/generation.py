"""Section generation orchestration: start, continue, resume, reclaim, finalize."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Literal

from examforge.ai.contracts import GenerationClient
from examforge.ai.defaults import DefaultPromptBuilder, DuplicateProofreader, JsonQuestionParser, QuestionValidator, SectionSourceContextLoader
from examforge.config import Settings
from examforge.generation.attempts import AttemptTracker
from examforge.generation.continuation import ContinuationScheduler
from examforge.generation.errors import (
  AttemptMismatchError,
  ExternalCallError,
  GenerationError,
  InvalidTransitionError,
  PersistenceError,
  PlanningError,
  SectionNotFoundError,
  SourceContextError,
)
from examforge.generation.models import GenerationMode, GenerationProgress, SectionRecord, SectionSource, SectionStatus
from examforge.generation.planner import BatchPlan, BufferPolicy, initial_progress, plan
from examforge.generation.reaper import ReapResult, StalenessReaper
from examforge.generation.retry import RetryPolicy
from examforge.generation.state import ensure_can_assign_sources, ensure_can_finalize, ensure_can_generate, ensure_transition
from examforge.generation.step import GenerationStep
from examforge.services.tasks.factory import get_task_enqueuer
from examforge.services.tasks.interface import ContinuationTask, TaskEnqueuer
from examforge.storage.sections_repo import SectionsRepository

logger = logging.getLogger(__name__)

OutcomeAction = Literal["dispatched", "parked", "completed", "partial", "skipped"]

REASSIGNED_MESSAGE = "Generation was cancelled because the section's chapters changed"


@dataclass(frozen=True)
class BatchOutcome:
  """What one generation or continuation call achieved."""

  section: SectionRecord
  generated_this_batch: int
  action: OutcomeAction
  warnings: tuple[str, ...] = ()

  @property
  def partial(self) -> bool:
    """Items were committed but the run stopped short (retries exhausted or dispatch failed)."""
    return self.action in {"partial", "parked"}


def utcnow() -> datetime:
  return datetime.now(UTC)


def failure_message(section: SectionRecord, batch_index: int, exc: GenerationError, committed: int) -> str:
  if isinstance(exc, ExternalCallError):
    head = f"Batch {batch_index}/{section.total_batches} failed after {exc.attempts} retry attempts."
  else:
    head = f"Batch {batch_index}/{section.total_batches} failed: {exc}."
  return f"{head} {committed} questions from {section.batch_number} successful batch(es) are available for review."


class GenerationService:
  def __init__(
    self,
    repo: SectionsRepository,
    tracker: AttemptTracker,
    step: GenerationStep,
    scheduler: ContinuationScheduler,
    reaper: StalenessReaper,
    *,
    buffer_policy: BufferPolicy,
    per_call_cap: int,
    allow_failed_retry: bool = False,
  ) -> None:
    self._repo = repo
    self._tracker = tracker
    self._step = step
    self._scheduler = scheduler
    self._reaper = reaper
    self._buffer_policy = buffer_policy
    self._per_call_cap = per_call_cap
    self._allow_failed_retry = allow_failed_retry

  async def get_section(self, paper_id: str, section_id: str) -> SectionRecord:
    section = await self._repo.get_section(section_id)
    if section is None or section.paper_id != paper_id:
      raise SectionNotFoundError(f"Section {section_id} not found in paper {paper_id}.")
    return section

  def plan_section(self, section: SectionRecord) -> tuple[BatchPlan, GenerationProgress]:
    """Size the run; every rejection happens here, before any external call."""
    if section.item_count < 1:
      raise PlanningError(f"Section '{section.name}' needs a question count of at least 1.")

    source_count: int | None = None
    if section.mode.is_multi_source:
      if not section.sources:
        raise PlanningError(f"Section '{section.name}' has no chapters assigned.")
      source_count = len(section.sources)

    batch_plan = plan(section.item_count, self._buffer_policy, self._per_call_cap, source_count)
    return batch_plan, initial_progress(batch_plan, section.sources)

  async def start_generation(self, paper_id: str, section_id: str, *, auth_token: str | None) -> BatchOutcome:
    """Begin a fresh run and execute its first batch."""
    section = await self.get_section(paper_id, section_id)
    ensure_can_generate(section.status, allow_failed_retry=self._allow_failed_retry)
    batch_plan, progress = self.plan_section(section)

    if section.status is SectionStatus.IN_REVIEW:
      logger.info("Regenerating section %s; existing questions will be replaced", section_id)
    started = await self._tracker.begin(section, progress=progress, total_batches=batch_plan.total_batches)
    logger.info(
      "Section %s plan: target=%s effective=%s batch_size=%s total_batches=%s sources=%s",
      section_id,
      section.item_count,
      batch_plan.effective_target,
      batch_plan.batch_size,
      batch_plan.total_batches,
      batch_plan.source_count,
    )
    return await self._run_next_batch(started, auth_token=auth_token)

  async def continue_generation(self, task: ContinuationTask) -> BatchOutcome:
    """Run the batch a continuation trigger asks for, judged against persisted state only.

    Triggers for another attempt, or for a batch the section has already moved past,
    are acknowledged without doing anything. A re-delivered trigger for the final batch
    of a run that never reached review retries the finishing pass.
    """
    section = await self.get_section(task.paper_id, task.section_id)
    if section.status is not SectionStatus.GENERATING or section.attempt_id != task.attempt_id:
      logger.info("Ignoring continuation for section %s: attempt %s is not live (status=%s)", task.section_id, task.attempt_id, section.status.value)
      return BatchOutcome(section=section, generated_this_batch=0, action="skipped")
    if task.batch_number == section.batch_number and not section.has_more:
      logger.info("Section %s finished its batches without completing; retrying the finishing pass", task.section_id)
      return await self._finish_stranded(section)
    if task.batch_number != section.batch_number + 1 or not section.has_more:
      logger.info("Ignoring duplicate continuation for section %s batch %s (persisted batch %s)", task.section_id, task.batch_number, section.batch_number)
      return BatchOutcome(section=section, generated_this_batch=0, action="skipped")
    return await self._run_next_batch(section, auth_token=task.auth_token)

  async def resume_generation(self, paper_id: str, section_id: str, *, auth_token: str | None) -> BatchOutcome:
    """Manually drive the next batch of a running or parked section."""
    section = await self.get_section(paper_id, section_id)
    if section.status is SectionStatus.GENERATING and section.has_more:
      return await self._run_next_batch(section, auth_token=auth_token)

    if section.status is SectionStatus.GENERATING and section.attempt_id is not None:
      # Every batch is stored but the commit into review did not land.
      return await self._finish_stranded(section)

    if section.status is SectionStatus.IN_REVIEW and section.has_more:
      resumed = await self._tracker.begin(section, progress=None, resume=True)
      return await self._run_next_batch(resumed, auth_token=auth_token)

    raise InvalidTransitionError(f"Section {section_id} has no remaining batches to run (status: {section.status.value}).", current=section.status.value, target=SectionStatus.GENERATING.value)

  def is_stale(self, section: SectionRecord) -> bool:
    return self._reaper.is_stale(section)

  async def reclaim(self, paper_id: str, section_id: str) -> ReapResult:
    section = await self.get_section(paper_id, section_id)
    return await self._reaper.reap(section)

  async def finalize(self, paper_id: str, section_id: str) -> SectionRecord:
    section = await self.get_section(paper_id, section_id)
    selected = await self._repo.count_selected_items(section_id)
    ensure_can_finalize(section.status, selected_count=selected, item_count=section.item_count)
    finalized = await self._repo.update_status(section_id, expected_status=SectionStatus.IN_REVIEW, status=SectionStatus.FINALIZED)
    logger.info("Section %s finalized with %s selected question(s)", section_id, selected)
    return finalized

  async def reopen(self, paper_id: str, section_id: str) -> SectionRecord:
    section = await self.get_section(paper_id, section_id)
    ensure_transition(section.status, SectionStatus.IN_REVIEW)
    return await self._repo.update_status(section_id, expected_status=section.status, status=SectionStatus.IN_REVIEW)

  async def assign_sources(self, paper_id: str, section_id: str, *, mode: GenerationMode, sources: Sequence[SectionSource]) -> SectionRecord:
    """Replace chapters; any live attempt is rolled back and existing questions are dropped."""
    section = await self.get_section(paper_id, section_id)
    ensure_can_assign_sources(section.status)
    if mode.is_multi_source and not sources:
      raise PlanningError("Choose at least one chapter for chapter-based generation.")
    source_ids = [source.source_id for source in sources]
    if len(set(source_ids)) != len(source_ids):
      raise PlanningError("Each chapter can only be assigned once.")

    if section.attempt_id is not None:
      await self._tracker.rollback(section_id, section.attempt_id, error=REASSIGNED_MESSAGE)
    updated = await self._repo.replace_sources(section_id, mode=mode, sources=sources)
    logger.info("Section %s assigned %s chapter(s) in %s mode", section_id, len(sources), mode.value)
    return updated

  async def _run_next_batch(self, section: SectionRecord, *, auth_token: str | None) -> BatchOutcome:
    batch_index = section.batch_number + 1
    try:
      result = await self._step.run_batch(section, batch_index)
    except AttemptMismatchError as exc:
      # Another actor (reaper, duplicate trigger) owns the section now.
      logger.warning("Section %s batch %s abandoned: %s", section.section_id, batch_index, exc)
      current = await self._repo.get_section(section.section_id) or section
      return BatchOutcome(section=current, generated_this_batch=0, action="skipped")
    except ExternalCallError as exc:
      return await self._resolve_failure(section, batch_index, exc, release_to=SectionStatus.READY)
    except (SourceContextError, PersistenceError, PlanningError) as exc:
      return await self._resolve_failure(section, batch_index, exc, release_to=SectionStatus.FAILED)

    decision = await self._scheduler.after_step(result.section, auth_token=auth_token)
    return BatchOutcome(section=decision.section, generated_this_batch=result.items_generated, action=decision.action, warnings=result.warnings)

  async def _finish_stranded(self, section: SectionRecord) -> BatchOutcome:
    try:
      completed = await self._scheduler.finish(section)
    except AttemptMismatchError as exc:
      logger.warning("Section %s finishing pass lost the attempt: %s", section.section_id, exc)
      current = await self._repo.get_section(section.section_id) or section
      return BatchOutcome(section=current, generated_this_batch=0, action="skipped")
    return BatchOutcome(section=completed, generated_this_batch=0, action="completed")

  async def _resolve_failure(self, section: SectionRecord, batch_index: int, exc: GenerationError, *, release_to: SectionStatus) -> BatchOutcome:
    """Commit what the run produced so far, or roll it back and surface the error."""
    attempt_id = section.attempt_id
    if attempt_id is None:
      raise exc

    committed = await self._repo.count_items(section.section_id)
    try:
      if committed > 0:
        message = failure_message(section, batch_index, exc, committed)
        logger.warning("Section %s partial success: %s", section.section_id, message)
        parked = await self._tracker.commit(section.section_id, attempt_id, error=message)
        return BatchOutcome(section=parked, generated_this_batch=0, action="partial")

      logger.error("Section %s batch %s failed with nothing to keep: %s", section.section_id, batch_index, exc)
      await self._tracker.rollback(section.section_id, attempt_id, error=str(exc), status=release_to)
    except AttemptMismatchError:
      logger.warning("Section %s was reclaimed while resolving a failed batch", section.section_id)
    raise exc


@lru_cache(maxsize=4)
def _gemini_client(model: str, api_key: str | None) -> GenerationClient:
  from examforge.ai.providers.gemini import GeminiGenerationClient

  return GeminiGenerationClient(model, api_key)


def build_generation_service(
  settings: Settings,
  *,
  repo: SectionsRepository | None = None,
  client: GenerationClient | None = None,
  enqueuer: TaskEnqueuer | None = None,
  clock: Callable[[], datetime] = utcnow,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> GenerationService:
  """Wire the engine with its default collaborators."""
  if repo is None:
    from examforge.storage.postgres_sections_repo import PostgresSectionsRepository

    repo = PostgresSectionsRepository()
  tracker = AttemptTracker(repo, clock)
  step = GenerationStep(
    repo,
    tracker,
    client or _gemini_client(settings.gemini_model, settings.gemini_api_key),
    prompt_builder=DefaultPromptBuilder(),
    parser=JsonQuestionParser(),
    validator=QuestionValidator(),
    context_loader=SectionSourceContextLoader(),
    retry_policy=RetryPolicy(max_retries=settings.max_retries, base_delay_ms=settings.retry_base_delay_ms),
    clock=clock,
    call_timeout_seconds=settings.generation_call_timeout_seconds,
    pricing={"gemini": {settings.gemini_model: (settings.gemini_input_price_per_million, settings.gemini_output_price_per_million)}},
    sleep=sleep,
  )
  scheduler = ContinuationScheduler(tracker, enqueuer or get_task_enqueuer(settings), DuplicateProofreader(repo))
  reaper = StalenessReaper(tracker, stale_after=timedelta(seconds=settings.stale_after_seconds), clock=clock)
  return GenerationService(
    repo,
    tracker,
    step,
    scheduler,
    reaper,
    buffer_policy=BufferPolicy(ratio=settings.buffer_ratio, fixed_cap=settings.buffer_cap),
    per_call_cap=settings.per_call_cap,
    allow_failed_retry=settings.allow_failed_retry,
  )


async def run_continuation_task(task: ContinuationTask, settings: Settings) -> None:
  """Background entry point for continuation triggers; the section row records any failure."""
  service = build_generation_service(settings)
  try:
    outcome = await service.continue_generation(task)
  except GenerationError as exc:
    logger.warning("Continuation for section %s batch %s ended with %s: %s", task.section_id, task.batch_number, type(exc).__name__, exc)
    return
  logger.info("Continuation for section %s batch %s: %s (+%s questions)", task.section_id, task.batch_number, outcome.action, outcome.generated_this_batch)
