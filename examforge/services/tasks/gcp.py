from __future__ import annotations

import logging

from google.api_core import exceptions as google_exceptions
from google.cloud import tasks_v2
from starlette.concurrency import run_in_threadpool

from examforge.config import Settings
from examforge.generation.errors import DispatchError
from examforge.services.tasks.interface import ContinuationTask, TaskEnqueuer
from examforge.services.tasks.local import CONTINUATION_PATH, task_headers

logger = logging.getLogger(__name__)


class CloudTasksEnqueuer(TaskEnqueuer):
  """Enqueues continuation triggers to Google Cloud Tasks."""

  def __init__(self, settings: Settings, client: tasks_v2.CloudTasksClient | None = None) -> None:
    self.settings = settings
    self.client = client or tasks_v2.CloudTasksClient()

  def _build_task(self, task: ContinuationTask) -> dict:
    if not self.settings.base_url:
      raise DispatchError("Base URL not configured.")

    http_request: dict = {
      "http_method": tasks_v2.HttpMethod.POST,
      "url": f"{self.settings.base_url.rstrip('/')}{CONTINUATION_PATH}",
      "headers": {"Content-Type": "application/json", **task_headers(self.settings)},
      "body": task.model_dump_json().encode(),
    }
    # Cloud Run invoker auth rides on an OIDC token when a service account is configured.
    if self.settings.cloud_run_invoker_service_account:
      http_request["oidc_token"] = {"service_account_email": self.settings.cloud_run_invoker_service_account}
    return {"http_request": http_request}

  async def enqueue_next_batch(self, task: ContinuationTask) -> None:
    parent = self.settings.cloud_tasks_queue_path
    if not parent:
      raise DispatchError("Cloud Tasks queue path not configured.")

    request = {"parent": parent, "task": self._build_task(task)}
    try:
      # The Cloud Tasks client is synchronous; keep it off the event loop.
      response = await run_in_threadpool(self.client.create_task, request=request)
    except google_exceptions.GoogleAPIError as e:
      logger.error("Failed to enqueue Cloud Task for section %s batch %s: %s", task.section_id, task.batch_number, e, exc_info=True)
      raise DispatchError(f"Cloud Tasks rejected the continuation: {e}") from e

    logger.info("Enqueued task %s for section %s batch %s", response.name, task.section_id, task.batch_number)
