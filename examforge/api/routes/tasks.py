from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from examforge.config import Settings, get_settings
from examforge.core.security import verify_task_secret
from examforge.services.generation import run_continuation_task
from examforge.services.tasks.interface import ContinuationTask

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


@router.post("/generate-next-batch", status_code=status.HTTP_202_ACCEPTED)
async def generate_next_batch_task(
  payload: ContinuationTask,
  background_tasks: BackgroundTasks,
  settings: Annotated[Settings, Depends(get_settings)],
  authorization: str | None = Header(default=None),
  x_examforge_task_secret: str | None = Header(default=None),
) -> dict[str, str]:
  """
  Continuation trigger for Cloud Tasks, local HTTP and manual re-delivery.
  Accepts quickly and runs the batch in the background so the dispatcher never waits on generation.
  """
  try:
    verify_task_secret(settings, authorization=authorization, task_secret_header=x_examforge_task_secret)
  except HTTPException:
    logger.warning("Unauthorized access attempt to /generate-next-batch for section %s", payload.section_id)
    raise

  logger.info("Received continuation for section %s batch %s", payload.section_id, payload.batch_number)
  background_tasks.add_task(run_continuation_task, payload, settings)
  return {"status": "accepted"}
