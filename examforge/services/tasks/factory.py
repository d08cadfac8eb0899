from __future__ import annotations

from examforge.config import Settings
from examforge.services.tasks.interface import TaskEnqueuer
from examforge.services.tasks.local import LocalHttpEnqueuer


def get_task_enqueuer(settings: Settings) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "gcp":
    from examforge.services.tasks.gcp import CloudTasksEnqueuer

    return CloudTasksEnqueuer(settings)
  if settings.task_service_provider == "inline":
    from examforge.services.tasks.inline import InlineEnqueuer

    return InlineEnqueuer(settings)
  return LocalHttpEnqueuer(settings)
