from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel


class ContinuationTask(BaseModel):
  """Message that triggers the next batch of a running section."""

  paper_id: str
  section_id: str
  attempt_id: str
  batch_number: int
  auth_token: str | None = None


class TaskEnqueuer(Protocol):
  """Interface for delivering continuation triggers."""

  async def enqueue_next_batch(self, task: ContinuationTask) -> None:
    """Hand the task to the transport without waiting for the batch to run.

    Raises DispatchError when the trigger cannot be delivered.
    """
    ...
