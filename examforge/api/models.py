from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from examforge.generation.models import GenerationMode, SectionRecord, SectionSource, SectionStatus


class BatchProgressResponse(BaseModel):
  """Progress reported after a generation or continuation call."""

  section_id: str
  status: SectionStatus
  generated_this_batch: int
  generated_so_far: int
  effective_target: int
  batch_number: int
  total_batches: int
  has_more: bool
  action: str
  partial: bool = False
  error: str | None = None
  warnings: list[str] = Field(default_factory=list)


class ReclaimResponse(BaseModel):
  acted: bool
  removed_items: int = 0


class SourceIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  source_id: str = Field(min_length=1)
  name: str = Field(min_length=1)
  knowledge_text: str | None = None
  document_uri: str | None = None


class AssignSourcesRequest(BaseModel):
  model_config = ConfigDict(extra="forbid")

  mode: GenerationMode
  sources: list[SourceIn] = Field(default_factory=list)

  def to_sources(self) -> list[SectionSource]:
    return [SectionSource(source_id=item.source_id, name=item.name, order=index, knowledge_text=item.knowledge_text, document_uri=item.document_uri) for index, item in enumerate(self.sources)]


class SourceScheduleView(BaseModel):
  source_id: str
  target_for_source: int
  generated_for_source: int
  current: bool


class SectionStateResponse(BaseModel):
  section_id: str
  paper_id: str
  name: str
  status: SectionStatus
  mode: GenerationMode
  item_count: int
  attempt_id: str | None = None
  started_at: datetime | None = None
  last_activity_at: datetime | None = None
  error: str | None = None
  batch_number: int
  total_batches: int
  batch_size: int
  generated_so_far: int
  effective_target: int
  has_more: bool
  stale: bool = False
  schedule: list[SourceScheduleView] = Field(default_factory=list)
  total_cost: float = 0.0

  @classmethod
  def from_record(cls, section: SectionRecord, *, stale: bool = False) -> SectionStateResponse:
    schedule: list[SourceScheduleView] = []
    progress = section.progress
    current_index = getattr(progress, "current_source_index", None)
    for index, entry in enumerate(getattr(progress, "schedule", ())):
      schedule.append(SourceScheduleView(source_id=entry.source_id, target_for_source=entry.target_for_source, generated_for_source=entry.generated_for_source, current=index == current_index))
    total_cost = round(sum(entry.cost for entry in progress.ledger), 6) if progress else 0.0
    return cls(
      section_id=section.section_id,
      paper_id=section.paper_id,
      name=section.name,
      status=section.status,
      mode=section.mode,
      item_count=section.item_count,
      attempt_id=section.attempt_id,
      started_at=section.started_at,
      last_activity_at=section.last_activity_at,
      error=section.error,
      batch_number=section.batch_number,
      total_batches=section.total_batches,
      batch_size=section.batch_size,
      generated_so_far=section.generated_so_far,
      effective_target=section.effective_target,
      has_more=section.has_more,
      stale=stale,
      schedule=schedule,
      total_cost=total_cost,
    )
