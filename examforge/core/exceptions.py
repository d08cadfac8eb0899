import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from examforge.generation.errors import (
  AttemptMismatchError,
  DispatchError,
  GenerationError,
  GenerationTimeoutError,
  IncompleteSelectionError,
  InvalidTransitionError,
  ParseError,
  PersistenceError,
  PlanningError,
  SectionNotFoundError,
  ServiceError,
  SourceContextError,
)

logger = logging.getLogger("uvicorn.error")

# Most specific first; the first isinstance match wins.
_GENERATION_STATUS: tuple[tuple[type[GenerationError], int], ...] = (
  (SectionNotFoundError, status.HTTP_404_NOT_FOUND),
  (IncompleteSelectionError, status.HTTP_400_BAD_REQUEST),
  (PlanningError, status.HTTP_400_BAD_REQUEST),
  (InvalidTransitionError, status.HTTP_409_CONFLICT),
  (AttemptMismatchError, status.HTTP_409_CONFLICT),
  (SourceContextError, status.HTTP_422_UNPROCESSABLE_ENTITY),
  (GenerationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
  (ParseError, status.HTTP_502_BAD_GATEWAY),
  (ServiceError, status.HTTP_502_BAD_GATEWAY),
  (DispatchError, status.HTTP_503_SERVICE_UNAVAILABLE),
  (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "ctx"}}
    sanitized.append(scrubbed)
  return sanitized


def generation_status_code(exc: GenerationError) -> int:
  for error_type, status_code in _GENERATION_STATUS:
    if isinstance(exc, error_type):
      return status_code
  return status.HTTP_500_INTERNAL_SERVER_ERROR


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from examforge.config import get_settings

  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if get_settings().log_http_4xx:
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=exc.headers)


async def generation_exception_handler(request: Request, exc: GenerationError) -> JSONResponse:
  """Map engine failures to human-readable payloads; messages are authored by the engine."""
  request_id = getattr(request.state, "request_id", None)
  status_code = generation_status_code(exc)
  if status_code >= 500:
    logger.error("Generation failure request_id=%s path=%s error_type=%s error=%s", request_id, request.url.path, type(exc).__name__, exc, exc_info=True)
  else:
    logger.info("Generation rejected request_id=%s path=%s error_type=%s error=%s", request_id, request.url.path, type(exc).__name__, exc)

  detail: Any = str(exc)
  if isinstance(exc, IncompleteSelectionError):
    detail = {"message": str(exc), "expected": exc.expected, "selected": exc.selected}
  if isinstance(exc, PersistenceError):
    detail = "Generated questions could not be saved. Please try again."
  payload = _error_payload(detail, request_id=request_id)
  payload["error"] = type(exc).__name__
  return JSONResponse(status_code=status_code, content=payload)
