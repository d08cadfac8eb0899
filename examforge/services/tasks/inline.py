from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from examforge.config import Settings
from examforge.generation.errors import DispatchError
from examforge.services.tasks.interface import ContinuationTask, TaskEnqueuer

logger = logging.getLogger(__name__)

ContinuationRunner = Callable[[ContinuationTask, Settings], Awaitable[None]]

# Detached tasks are only weakly referenced by the loop.
_PENDING: set[asyncio.Task[None]] = set()


def _default_runner() -> ContinuationRunner:
  from examforge.services.generation import run_continuation_task

  return run_continuation_task


class InlineEnqueuer(TaskEnqueuer):
  """Runs the next batch as a detached task in this process (single-instance deployments)."""

  def __init__(self, settings: Settings, runner: ContinuationRunner | None = None) -> None:
    self.settings = settings
    self._runner = runner

  async def enqueue_next_batch(self, task: ContinuationTask) -> None:
    runner = self._runner or _default_runner()
    try:
      scheduled = asyncio.get_running_loop().create_task(runner(task, self.settings), name=f"continuation-{task.section_id}-{task.batch_number}")
    except RuntimeError as e:
      raise DispatchError(f"no running event loop for inline continuation: {e}") from e

    _PENDING.add(scheduled)
    scheduled.add_done_callback(_on_done)
    logger.info("Scheduled inline batch %s for section %s", task.batch_number, task.section_id)


def _on_done(task: asyncio.Task[None]) -> None:
  _PENDING.discard(task)
  if task.cancelled():
    logger.warning("Inline continuation %s was cancelled", task.get_name())
    return
  exc = task.exception()
  if exc is not None:
    logger.error("Inline continuation %s failed", task.get_name(), exc_info=exc)
