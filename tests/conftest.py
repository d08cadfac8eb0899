"""Test configuration for importing the application package."""

from __future__ import annotations

import os

# Ensure required settings are available before importing the app.
os.environ.setdefault("EXAMFORGE_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("EXAMFORGE_TASK_SECRET", "test-task-secret")
os.environ.setdefault("EXAMFORGE_BASE_URL", "http://localhost:8000")

import pytest  # noqa: E402
from fakes import FixedClock, InMemorySectionsRepository  # noqa: E402


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def clock() -> FixedClock:
  return FixedClock()


@pytest.fixture
def repo() -> InMemorySectionsRepository:
  return InMemorySectionsRepository()
