"""Error taxonomy for section generation."""

from __future__ import annotations


class GenerationError(Exception):
  """Base class for failures raised by the generation engine."""


class SectionNotFoundError(GenerationError):
  """Raised when a section does not exist under the requested paper."""


class PlanningError(GenerationError):
  """Raised when a section cannot be planned (zero target, no sources)."""


class InvalidTransitionError(GenerationError):
  """Raised when a lifecycle transition is not permitted from the current status."""

  def __init__(self, message: str, *, current: str, target: str) -> None:
    super().__init__(message)
    self.current = current
    self.target = target


class IncompleteSelectionError(GenerationError):
  """Raised when finalization is attempted before enough items are selected."""

  def __init__(self, *, expected: int, selected: int) -> None:
    super().__init__(f"Select at least {expected} questions before finalizing ({selected} selected).")
    self.expected = expected
    self.selected = selected


class ExternalCallError(GenerationError):
  """Base class for classified failures of one external generation call."""

  def __init__(self, message: str, *, attempts: int = 1) -> None:
    super().__init__(message)
    self.attempts = attempts


class ServiceError(ExternalCallError):
  """The generation service failed or returned an empty response."""


class GenerationTimeoutError(ExternalCallError):
  """The generation service timed out or reset the connection."""


class ParseError(ExternalCallError):
  """The generation service response did not parse into any items."""


class SourceContextError(GenerationError):
  """Knowledge or reference material for a source could not be prepared."""


class PersistenceError(GenerationError):
  """Generated items or progress could not be stored."""


class DispatchError(GenerationError):
  """The continuation trigger could not be delivered."""


class AttemptMismatchError(GenerationError):
  """The section no longer carries the expected attempt; the writer lost its lock."""
