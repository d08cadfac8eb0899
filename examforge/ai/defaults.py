"""Default prompt, parsing, validation, context and proofreading collaborators."""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Sequence
from typing import Any

from examforge.ai.contracts import PromptRequest, SourceContext
from examforge.ai.json_parser import parse_json_with_fallback
from examforge.generation.errors import ParseError, SourceContextError
from examforge.generation.models import GenerationMode, SectionRecord, SectionSource
from examforge.storage.sections_repo import SectionsRepository

logger = logging.getLogger(__name__)

# Cap on prior questions echoed back into a prompt.
MAX_EXISTING_QUESTIONS = 80

_MODE_INSTRUCTIONS = {
  GenerationMode.KNOWLEDGE_POOL: "Draw on general subject knowledge appropriate for the syllabus.",
  GenerationMode.SOURCE_SCOPE: "Stay strictly within the scope of the chapter summary below.",
  GenerationMode.SOURCE_TRUTH: "Use only facts stated in the attached reference documents.",
}


class DefaultPromptBuilder:
  """Plain-text prompt asking for a JSON array of questions."""

  def build(self, request: PromptRequest) -> str:
    lines = [
      f"Write {request.count} exam questions for the section '{request.section_name}'.",
      _MODE_INSTRUCTIONS[request.mode],
    ]
    if request.subject_id:
      lines.append(f"Subject: {request.subject_id}")
    if request.source_name:
      lines.append(f"Chapter: {request.source_name}")
    if request.knowledge_text:
      lines.extend(["Chapter summary:", request.knowledge_text])
    if request.existing_questions:
      recent = request.existing_questions[-MAX_EXISTING_QUESTIONS:]
      lines.append("Do not repeat any of these existing questions:")
      lines.extend(f"- {text}" for text in recent)
    lines.append(
      'Respond with a JSON array only. Each element: {"question": str, "options": [str], "answer": str, "explanation": str}.'
    )
    return "\n".join(lines)


class JsonQuestionParser:
  """Accepts a bare array or an object wrapping it under ``questions``."""

  def parse(self, text: str) -> list[dict[str, Any]]:
    try:
      parsed = parse_json_with_fallback(text)
    except json.JSONDecodeError as exc:
      raise ParseError(f"Generation response is not valid JSON: {exc.msg}") from exc

    if isinstance(parsed, dict):
      parsed = parsed.get("questions")
    if not isinstance(parsed, list):
      raise ParseError("Generation response must be a JSON array of questions.")
    return [item for item in parsed if isinstance(item, dict)]


class QuestionValidator:
  """Soft checks on question shape; every problem becomes a warning."""

  def validate(self, items: Sequence[dict[str, Any]]) -> list[str]:
    warnings: list[str] = []
    for index, item in enumerate(items, start=1):
      if not str(item.get("question") or "").strip():
        warnings.append(f"Question {index} has no text.")
      options = item.get("options")
      if options is not None and (not isinstance(options, list) or len(options) < 2):
        warnings.append(f"Question {index} has fewer than two options.")
      answer = item.get("answer")
      if isinstance(options, list) and answer is not None and answer not in options:
        warnings.append(f"Question {index} answer is not one of its options.")
    return warnings


class SectionSourceContextLoader:
  """Reads knowledge summaries and document handles stored on section sources."""

  async def load(self, section: SectionRecord, source: SectionSource | None) -> SourceContext:
    if section.mode is GenerationMode.KNOWLEDGE_POOL:
      return SourceContext(source_id=None)

    if source is None:
      raise SourceContextError(f"Section {section.section_id} has no source for the current batch.")

    if section.mode is GenerationMode.SOURCE_SCOPE:
      if not (source.knowledge_text or "").strip():
        raise SourceContextError(f"Chapter '{source.name}' has no knowledge summary yet.")
      return SourceContext(source_id=source.source_id, knowledge_text=source.knowledge_text)

    if not source.document_uri:
      raise SourceContextError(f"Chapter '{source.name}' has no uploaded reference document.")
    return SourceContext(source_id=source.source_id, document_uris=(source.document_uri,))


class DuplicateProofreader:
  """Finishing pass that flags repeated question texts across the whole section."""

  def __init__(self, repo: SectionsRepository) -> None:
    self._repo = repo

  async def proofread(self, section: SectionRecord) -> list[str]:
    texts = await self._repo.list_item_texts(section.section_id)
    counts = Counter(" ".join(text.lower().split()) for text in texts if text.strip())
    notes = [f"Duplicate question ({count}x): {text[:80]}" for text, count in counts.items() if count > 1]
    if notes:
      logger.info("Proofreading section %s found %s duplicate question(s)", section.section_id, len(notes))
    return notes
