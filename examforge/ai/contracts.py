"""Interfaces for the collaborators a generation step sequences but does not own."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from examforge.generation.models import GenerationMode, SectionRecord, SectionSource


@dataclass(frozen=True)
class GenerationResponse:
  """Raw text and token usage from one generation service call."""

  text: str | None
  usage: dict[str, int] = field(default_factory=dict)
  model: str | None = None


@dataclass(frozen=True)
class SourceContext:
  """Prepared material for one source: knowledge text and/or reference document handles."""

  source_id: str | None
  knowledge_text: str | None = None
  document_uris: tuple[str, ...] = ()


@dataclass(frozen=True)
class PromptRequest:
  section_name: str
  subject_id: str | None
  mode: GenerationMode
  count: int
  batch_number: int
  source_name: str | None = None
  knowledge_text: str | None = None
  has_reference_documents: bool = False
  existing_questions: tuple[str, ...] = ()


class GenerationClient(Protocol):
  async def generate(self, prompt: str, *, document_uris: Sequence[str] = ()) -> GenerationResponse:
    """Send one prompt (plus reference document handles) to the generation service."""
    ...


class PromptBuilder(Protocol):
  def build(self, request: PromptRequest) -> str: ...


class ResponseParser(Protocol):
  def parse(self, text: str) -> list[dict[str, Any]]:
    """Turn raw service text into question payloads; raise ParseError on malformed text."""
    ...


class ItemValidator(Protocol):
  def validate(self, items: Sequence[dict[str, Any]]) -> list[str]:
    """Return human-readable warnings; never blocks persistence."""
    ...


class SourceContextLoader(Protocol):
  async def load(self, section: SectionRecord, source: SectionSource | None) -> SourceContext:
    """Prepare the material a batch draws from; raise SourceContextError when unavailable."""
    ...


class Proofreader(Protocol):
  async def proofread(self, section: SectionRecord) -> list[str]:
    """Run the finishing pass over a completed run; return notes for the ledger."""
    ...
