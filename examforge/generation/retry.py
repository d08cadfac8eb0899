"""Bounded retries around one generation service call and its parse."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from examforge.ai.contracts import GenerationResponse
from examforge.generation.errors import ExternalCallError, GenerationTimeoutError, ParseError, ServiceError

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline exceeded", "connection reset", "econnreset")


@dataclass(frozen=True)
class RetryPolicy:
  """Attempt n (1-indexed) waits base_delay * n before the next try; timeouts wait twice as long."""

  max_retries: int = 2
  base_delay_ms: int = 2000

  @property
  def total_attempts(self) -> int:
    return self.max_retries + 1

  def delay_seconds(self, attempt: int, error: ExternalCallError) -> float:
    delay_ms = self.base_delay_ms * attempt
    if isinstance(error, GenerationTimeoutError):
      delay_ms *= 2
    return delay_ms / 1000


@dataclass(frozen=True)
class CallResult:
  items: list[dict[str, Any]]
  usage: dict[str, int] = field(default_factory=dict)
  model: str | None = None
  attempts: int = 1


def classify_failure(exc: BaseException) -> ExternalCallError:
  """Map an arbitrary call/parse failure onto the retry taxonomy."""
  if isinstance(exc, ExternalCallError):
    return exc
  if isinstance(exc, (json.JSONDecodeError, SyntaxError)):
    return ParseError(f"Generation response could not be parsed: {exc}")
  message = str(exc)
  lowered = message.lower()
  if isinstance(exc, (TimeoutError, ConnectionResetError)) or any(marker in lowered for marker in _TIMEOUT_MARKERS):
    return GenerationTimeoutError(f"Generation service timed out: {message or type(exc).__name__}")
  return ServiceError(f"Generation service error: {message or type(exc).__name__}")


class RetryExecutor:
  """Runs call-then-parse up to ``policy.total_attempts`` times.

  The heartbeat callback runs before every backoff sleep so a slow but live run is not
  mistaken for an abandoned one.
  """

  def __init__(self, policy: RetryPolicy, *, heartbeat: Callable[[], Awaitable[None]] | None = None, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
    self._policy = policy
    self._heartbeat = heartbeat
    self._sleep = sleep

  async def execute(self, call: Callable[[], Awaitable[GenerationResponse]], parse: Callable[[str], list[dict[str, Any]]]) -> CallResult:
    total = self._policy.total_attempts
    for attempt in range(1, total + 1):
      try:
        return await self._attempt(call, parse, attempt)
      except Exception as exc:  # noqa: BLE001
        error = classify_failure(exc)
        error.attempts = attempt
        if attempt >= total:
          logger.error("Generation call failed after %s attempt(s): %s", attempt, error)
          if error is exc:
            raise
          raise error from exc

        delay = self._policy.delay_seconds(attempt, error)
        logger.warning("Generation call attempt %s/%s failed (%s: %s); retrying in %.1fs", attempt, total, type(error).__name__, error, delay)
        if self._heartbeat is not None:
          await self._heartbeat()
        await self._sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover

  async def _attempt(self, call: Callable[[], Awaitable[GenerationResponse]], parse: Callable[[str], list[dict[str, Any]]], attempt: int) -> CallResult:
    response = await call()
    if response is None or not (response.text or "").strip():
      raise ServiceError("Generation service returned an empty response.")

    try:
      items = parse(response.text or "")
    except ExternalCallError:
      raise
    except (ValueError, TypeError, SyntaxError) as exc:
      raise ParseError(f"Generation response could not be parsed: {exc}") from exc

    if not items:
      raise ParseError("Generation response contained no questions.")
    return CallResult(items=list(items), usage=dict(response.usage or {}), model=response.model, attempts=attempt)
