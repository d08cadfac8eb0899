"""Domain records for section generation and the persisted progress ledger."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

# Bump when the persisted ledger shape changes; readers reject unknown versions.
LEDGER_VERSION = 1


class SectionStatus(str, Enum):
  PENDING = "pending"
  READY = "ready"
  GENERATING = "generating"
  IN_REVIEW = "in_review"
  FINALIZED = "finalized"
  FAILED = "failed"


class GenerationMode(str, Enum):
  """Where generated questions draw their content from."""

  KNOWLEDGE_POOL = "knowledge_pool"
  SOURCE_SCOPE = "source_scope"
  SOURCE_TRUTH = "source_truth"

  @property
  def is_multi_source(self) -> bool:
    return self is not GenerationMode.KNOWLEDGE_POOL


@dataclass(frozen=True)
class SectionSource:
  """One content origin (a syllabus chapter) assigned to a section."""

  source_id: str
  name: str
  order: int
  knowledge_text: str | None = None
  document_uri: str | None = None


@dataclass(frozen=True)
class BatchLedgerEntry:
  batch_number: int
  generated_at: str
  items: int
  tokens: int
  cost: float
  source_id: str | None = None
  warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class SourceScheduleEntry:
  source_id: str
  order: int
  target_for_source: int
  generated_for_source: int = 0
  calls_made: int = 0

  @property
  def remaining(self) -> int:
    return max(self.target_for_source - self.generated_for_source, 0)


@dataclass(frozen=True)
class SinglePoolProgress:
  """Progress of a run that draws every batch from one logical pool."""

  kind: ClassVar[str] = "single_pool"

  effective_target: int
  batch_size: int
  planned_batches: int
  ledger: tuple[BatchLedgerEntry, ...] = ()
  finishing_warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class MultiSourceProgress:
  """Progress of a run that exhausts each source in order before moving to the next."""

  kind: ClassVar[str] = "multi_source"

  effective_target: int
  batch_size: int
  planned_batches: int
  schedule: tuple[SourceScheduleEntry, ...]
  current_source_index: int = 0
  ledger: tuple[BatchLedgerEntry, ...] = ()
  finishing_warnings: tuple[str, ...] = ()

  def current_entry(self) -> SourceScheduleEntry | None:
    if 0 <= self.current_source_index < len(self.schedule):
      return self.schedule[self.current_source_index]
    return None


GenerationProgress = SinglePoolProgress | MultiSourceProgress


def max_total_batches(progress: GenerationProgress) -> int:
  """Upper bound on batches when the service under-delivers and extra calls are appended."""
  return progress.planned_batches * 2


def progress_to_json(progress: GenerationProgress | None) -> dict[str, Any] | None:
  """Serialize progress into the versioned document stored in batch_metadata."""
  if progress is None:
    return None

  payload = asdict(progress)
  payload["kind"] = progress.kind
  payload["version"] = LEDGER_VERSION
  return payload


def progress_from_json(raw: dict[str, Any] | None) -> GenerationProgress | None:
  """Parse a stored ledger document, rejecting shapes this build cannot resume."""
  if not raw:
    return None

  version = raw.get("version")
  if version != LEDGER_VERSION:
    raise ValueError(f"Unsupported batch_metadata version: {version!r}")

  ledger = tuple(BatchLedgerEntry(**{**entry, "warnings": tuple(entry.get("warnings") or ())}) for entry in raw.get("ledger") or ())
  finishing_warnings = tuple(raw.get("finishing_warnings") or ())
  kind = raw.get("kind")

  if kind == SinglePoolProgress.kind:
    return SinglePoolProgress(
      effective_target=int(raw["effective_target"]),
      batch_size=int(raw["batch_size"]),
      planned_batches=int(raw["planned_batches"]),
      ledger=ledger,
      finishing_warnings=finishing_warnings,
    )

  if kind == MultiSourceProgress.kind:
    schedule = tuple(SourceScheduleEntry(**entry) for entry in raw.get("schedule") or ())
    return MultiSourceProgress(
      effective_target=int(raw["effective_target"]),
      batch_size=int(raw["batch_size"]),
      planned_batches=int(raw["planned_batches"]),
      schedule=schedule,
      current_source_index=int(raw.get("current_source_index", 0)),
      ledger=ledger,
      finishing_warnings=finishing_warnings,
    )

  raise ValueError(f"Unknown batch_metadata kind: {kind!r}")


@dataclass(frozen=True)
class SectionRecord:
  """A section row as seen by the generation engine."""

  section_id: str
  paper_id: str
  name: str
  item_count: int
  status: SectionStatus
  mode: GenerationMode = GenerationMode.KNOWLEDGE_POOL
  subject_id: str | None = None
  items_per_unit: int = 1
  sources: tuple[SectionSource, ...] = ()
  attempt_id: str | None = None
  started_at: datetime | None = None
  last_activity_at: datetime | None = None
  error: str | None = None
  batch_number: int = 0
  total_batches: int = 0
  batch_size: int = 0
  generated_so_far: int = 0
  progress: GenerationProgress | None = None
  completed_at: datetime | None = None

  @property
  def effective_target(self) -> int:
    return self.progress.effective_target if self.progress else 0

  @property
  def has_more(self) -> bool:
    """Whether another batch is owed, judged only from persisted counters."""
    if self.progress is None:
      return False
    return self.generated_so_far < self.progress.effective_target and self.batch_number < self.total_batches

  def with_updates(self, **changes: Any) -> SectionRecord:
    return replace(self, **changes)


@dataclass(frozen=True)
class GeneratedItem:
  """One generated exam question."""

  item_id: str
  section_id: str
  paper_id: str
  batch_number: int
  question_order: int
  payload: dict[str, Any] = field(hash=False)
  attempt_id: str | None = None
  source_id: str | None = None
  is_selected: bool = False

  @property
  def text(self) -> str:
    return str(self.payload.get("question") or "")
