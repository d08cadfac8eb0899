from __future__ import annotations

from dataclasses import replace

import pytest

from examforge.ai.contracts import PromptRequest
from examforge.ai.defaults import MAX_EXISTING_QUESTIONS, DefaultPromptBuilder, DuplicateProofreader, QuestionValidator, SectionSourceContextLoader
from examforge.ai.utils.cost import calculate_call_cost
from examforge.generation.errors import SourceContextError
from examforge.generation.models import GenerationMode, SectionSource
from fakes import make_item, make_section


def test_prompt_lists_recent_existing_questions_only() -> None:
  existing = tuple(f"Old question {index}" for index in range(MAX_EXISTING_QUESTIONS + 5))
  prompt = DefaultPromptBuilder().build(
    PromptRequest(section_name="Optics", subject_id="physics", mode=GenerationMode.SOURCE_SCOPE, count=12, batch_number=2, source_name="Lenses", knowledge_text="Convex lenses converge light.", existing_questions=existing)
  )

  assert prompt.startswith("Write 12 exam questions for the section 'Optics'.")
  assert "Chapter: Lenses" in prompt
  assert "Convex lenses converge light." in prompt
  assert "- Old question 4\n" not in prompt
  assert f"- Old question {MAX_EXISTING_QUESTIONS + 4}" in prompt


def test_validator_flags_soft_problems() -> None:
  warnings = QuestionValidator().validate([{"question": "", "options": ["a"]}, {"question": "Fine?", "options": ["a", "b"], "answer": "a"}])

  assert warnings == ["Question 1 has no text.", "Question 1 has fewer than two options."]


@pytest.mark.anyio
async def test_context_loader_per_mode() -> None:
  loader = SectionSourceContextLoader()
  chapter = SectionSource(source_id="ch-1", name="Lenses", order=0, knowledge_text="Convex lenses converge light.", document_uri="gs://bucket/lenses.pdf")

  pool = await loader.load(make_section(), None)
  scoped = await loader.load(make_section(mode=GenerationMode.SOURCE_SCOPE), chapter)
  grounded = await loader.load(make_section(mode=GenerationMode.SOURCE_TRUTH), chapter)

  assert pool.knowledge_text is None and pool.document_uris == ()
  assert scoped.knowledge_text == "Convex lenses converge light."
  assert grounded.document_uris == ("gs://bucket/lenses.pdf",)

  with pytest.raises(SourceContextError):
    await loader.load(make_section(mode=GenerationMode.SOURCE_SCOPE), None)


@pytest.mark.anyio
async def test_proofreader_reports_duplicates(repo) -> None:
  first, second, third = (make_item("sec-1", order) for order in (1, 2, 3))
  repo.add_items([first, replace(second, payload={"question": "existing  QUESTION 1?"}), third])

  notes = await DuplicateProofreader(repo).proofread(make_section())

  assert notes == ["Duplicate question (2x): existing question 1?"]


def test_call_cost_uses_per_million_prices() -> None:
  pricing = {"gemini": {"gemini-2.5-flash": (0.30, 2.50)}}

  assert calculate_call_cost({"prompt_tokens": 1_000_000, "completion_tokens": 200_000}, pricing, model="gemini-2.5-flash") == pytest.approx(0.8)
  assert calculate_call_cost({"prompt_tokens": 500}, pricing, model="unknown-model") == 0.0
