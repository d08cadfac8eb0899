from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from examforge.ai.contracts import GenerationResponse
from examforge.ai.defaults import JsonQuestionParser
from examforge.generation.errors import GenerationTimeoutError, ParseError, ServiceError
from examforge.generation.retry import RetryExecutor, RetryPolicy, classify_failure
from fakes import questions_response


class Recorder:
  def __init__(self) -> None:
    self.delays: list[float] = []

  async def sleep(self, delay: float) -> None:
    self.delays.append(delay)


def scripted_call(*outcomes):
  queue = list(outcomes)

  async def _call() -> GenerationResponse:
    outcome = queue.pop(0)
    if isinstance(outcome, BaseException):
      raise outcome
    return outcome

  return _call


@pytest.mark.anyio
async def test_two_timeouts_then_success_refreshes_heartbeat_twice() -> None:
  heartbeat = AsyncMock()
  recorder = Recorder()
  executor = RetryExecutor(RetryPolicy(max_retries=2, base_delay_ms=2000), heartbeat=heartbeat, sleep=recorder.sleep)
  call = scripted_call(TimeoutError("read timed out"), TimeoutError("read timed out"), questions_response(4))

  result = await executor.execute(call, JsonQuestionParser().parse)

  assert heartbeat.await_count == 2
  assert result.attempts == 3
  assert len(result.items) == 4
  assert result.items[0]["question"] == "Question 1?"
  # Timeouts double the linear backoff.
  assert recorder.delays == [4.0, 8.0]


@pytest.mark.anyio
async def test_exhausted_parse_failures_surface_a_parse_error() -> None:
  heartbeat = AsyncMock()
  recorder = Recorder()
  executor = RetryExecutor(RetryPolicy(), heartbeat=heartbeat, sleep=recorder.sleep)
  bad = GenerationResponse(text="Sorry, I cannot help with that.")
  call = scripted_call(bad, bad, bad)

  with pytest.raises(ParseError) as exc_info:
    await executor.execute(call, JsonQuestionParser().parse)

  assert exc_info.value.attempts == 3
  assert heartbeat.await_count == 2
  assert recorder.delays == [2.0, 4.0]


@pytest.mark.anyio
async def test_empty_response_is_a_service_error() -> None:
  executor = RetryExecutor(RetryPolicy(max_retries=0), sleep=Recorder().sleep)

  with pytest.raises(ServiceError, match="empty"):
    await executor.execute(scripted_call(GenerationResponse(text="   ")), JsonQuestionParser().parse)


@pytest.mark.anyio
async def test_zero_parsed_items_is_a_parse_error() -> None:
  executor = RetryExecutor(RetryPolicy(max_retries=0), sleep=Recorder().sleep)

  with pytest.raises(ParseError, match="no questions"):
    await executor.execute(scripted_call(GenerationResponse(text=json.dumps([]))), JsonQuestionParser().parse)


@pytest.mark.anyio
async def test_service_error_recovers_on_retry_without_heartbeat_callback() -> None:
  recorder = Recorder()
  executor = RetryExecutor(RetryPolicy(max_retries=1, base_delay_ms=500), sleep=recorder.sleep)

  result = await executor.execute(scripted_call(RuntimeError("429 RESOURCE_EXHAUSTED"), questions_response(2)), JsonQuestionParser().parse)

  assert result.attempts == 2
  assert recorder.delays == [0.5]


def test_classify_failure() -> None:
  assert isinstance(classify_failure(TimeoutError()), GenerationTimeoutError)
  assert isinstance(classify_failure(ConnectionResetError("peer")), GenerationTimeoutError)
  assert isinstance(classify_failure(RuntimeError("504 Deadline Exceeded")), GenerationTimeoutError)
  assert isinstance(classify_failure(RuntimeError("socket hang up: ECONNRESET")), GenerationTimeoutError)
  assert isinstance(classify_failure(json.JSONDecodeError("Expecting value", "x", 0)), ParseError)
  assert isinstance(classify_failure(RuntimeError("quota exceeded")), ServiceError)

  existing = ServiceError("already classified")
  assert classify_failure(existing) is existing


def test_retry_policy_delays() -> None:
  policy = RetryPolicy(max_retries=2, base_delay_ms=2000)

  assert policy.total_attempts == 3
  assert policy.delay_seconds(1, ServiceError("x")) == 2.0
  assert policy.delay_seconds(2, ServiceError("x")) == 4.0
  assert policy.delay_seconds(2, GenerationTimeoutError("x")) == 8.0
