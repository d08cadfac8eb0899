"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_attempt_id() -> str:
  """Return a new generation attempt identifier."""
  return str(uuid.uuid4())


def generate_item_id() -> str:
  """Return a new generated item identifier."""
  return str(uuid.uuid4())
