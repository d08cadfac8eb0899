"""Section lifecycle transitions and their guards."""

from __future__ import annotations

from collections.abc import Mapping

from examforge.generation.errors import IncompleteSelectionError, InvalidTransitionError
from examforge.generation.models import SectionStatus

S = SectionStatus

ALLOWED_TRANSITIONS: Mapping[SectionStatus, frozenset[SectionStatus]] = {
  S.PENDING: frozenset({S.READY}),
  S.READY: frozenset({S.READY, S.GENERATING}),
  # READY is reached from GENERATING by rollback, reaping, or source reassignment.
  S.GENERATING: frozenset({S.IN_REVIEW, S.FAILED, S.READY}),
  S.IN_REVIEW: frozenset({S.GENERATING, S.FINALIZED, S.READY}),
  S.FINALIZED: frozenset({S.IN_REVIEW}),
  S.FAILED: frozenset({S.READY, S.GENERATING}),
}

GENERATION_ENTRY_STATES = frozenset({S.READY, S.IN_REVIEW})
SOURCE_ASSIGNMENT_STATES = frozenset({S.PENDING, S.READY, S.GENERATING, S.IN_REVIEW, S.FAILED})


def can_transition(current: SectionStatus, target: SectionStatus) -> bool:
  return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: SectionStatus, target: SectionStatus) -> None:
  if not can_transition(current, target):
    raise InvalidTransitionError(f"Cannot move section from {current.value} to {target.value}.", current=current.value, target=target.value)


def ensure_can_generate(current: SectionStatus, *, allow_failed_retry: bool = False) -> None:
  """Generation starts from ready or in_review; failed only when retries are enabled."""
  if current in GENERATION_ENTRY_STATES:
    return
  if current is S.FAILED and allow_failed_retry:
    return
  if current is S.GENERATING:
    raise InvalidTransitionError("Generation is already running for this section.", current=current.value, target=S.GENERATING.value)
  raise InvalidTransitionError(f"Section must be ready or in review to generate (status: {current.value}).", current=current.value, target=S.GENERATING.value)


def ensure_can_finalize(current: SectionStatus, *, selected_count: int, item_count: int) -> None:
  """Finalization needs review status and at least item_count selected items."""
  if current is not S.IN_REVIEW:
    raise InvalidTransitionError(f"Only sections in review can be finalized (status: {current.value}).", current=current.value, target=S.FINALIZED.value)
  if selected_count < item_count:
    raise IncompleteSelectionError(expected=item_count, selected=selected_count)


def ensure_can_assign_sources(current: SectionStatus) -> None:
  if current not in SOURCE_ASSIGNMENT_STATES:
    raise InvalidTransitionError(f"Sources cannot be changed once a section is {current.value}.", current=current.value, target=S.READY.value)
