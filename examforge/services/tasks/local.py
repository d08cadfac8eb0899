from __future__ import annotations

import logging

import httpx

from examforge.config import Settings
from examforge.generation.errors import DispatchError
from examforge.services.tasks.interface import ContinuationTask, TaskEnqueuer

logger = logging.getLogger(__name__)

CONTINUATION_PATH = "/internal/tasks/generate-next-batch"


def task_headers(settings: Settings) -> dict[str, str]:
  """Build task authentication headers for internal endpoints."""
  # Shared-secret auth is mandatory for internal endpoints.
  if not settings.task_secret:
    raise DispatchError("Task secret not configured.")
  return {"x-examforge-task-secret": settings.task_secret}


class LocalHttpEnqueuer(TaskEnqueuer):
  """Delivers continuation triggers by POSTing to this service's internal endpoint.

  The endpoint acknowledges with 202 and runs the batch as a background task, so the
  POST returns once the trigger is accepted rather than when the batch finishes.
  """

  def __init__(self, settings: Settings) -> None:
    self.settings = settings

  async def enqueue_next_batch(self, task: ContinuationTask) -> None:
    if not self.settings.base_url:
      raise DispatchError("Base URL not configured, strictly required for LocalHttpEnqueuer.")

    url = f"{self.settings.base_url.rstrip('/')}{CONTINUATION_PATH}"
    headers = task_headers(self.settings)

    try:
      # Never trust environment proxy variables for internal task dispatch.
      async with httpx.AsyncClient(trust_env=False) as client:
        logger.info("Dispatching batch %s for section %s to %s", task.batch_number, task.section_id, url)
        response = await client.post(url, json=task.model_dump(), headers=headers, timeout=self.settings.task_dispatch_timeout_seconds)
        response.raise_for_status()

    except httpx.HTTPStatusError as e:
      logger.error("Local task dispatch returned %s for section %s: %s", e.response.status_code, task.section_id, e.response.text)
      raise DispatchError(f"continuation endpoint returned HTTP {e.response.status_code}") from e
    except httpx.RequestError as e:
      logger.error("Failed to dispatch local task for section %s: %s", task.section_id, e)
      raise DispatchError(f"continuation endpoint unreachable: {e}") from e
