import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from examforge.core.database import get_db_engine
from examforge.core.logging import _initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Ensure logging is correctly set up after uvicorn starts."""
  from examforge.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("examforge.core.lifespan")

  _initialize_logging(settings)
  logger.info("Startup complete - logging verified.")

  if not settings.task_secret:
    logger.warning("EXAMFORGE_TASK_SECRET is unset; continuation triggers will be rejected and runs will park in review.")
  if settings.task_service_provider == "inline":
    logger.info("Inline continuation enabled; batches run in this process.")

  yield

  # Dispose pooled connections so shutdown does not leak sockets.
  engine = get_db_engine()
  if engine is not None:
    await engine.dispose()
