"""Gemini generation client using the google-genai SDK."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from google import genai
from google.genai import types

from examforge.ai.contracts import GenerationResponse

logger = logging.getLogger(__name__)


class GeminiGenerationClient:
  """Sends question prompts (and optional PDF handles) to Gemini."""

  def __init__(self, model: str, api_key: str | None) -> None:
    if not api_key:
      raise ValueError("GEMINI_API_KEY environment variable is required")
    self.model = model
    self._client = genai.Client(api_key=api_key)

  async def generate(self, prompt: str, *, document_uris: Sequence[str] = ()) -> GenerationResponse:
    contents: list[types.Part | str] = [types.Part.from_uri(file_uri=uri, mime_type="application/pdf") for uri in document_uris]
    contents.append(prompt)

    # Use the async client to avoid blocking the asyncio event loop.
    response = await self._client.aio.models.generate_content(model=self.model, contents=contents)
    logger.debug("Gemini response (%s documents):\n%s", len(document_uris), response.text)

    usage: dict[str, int] = {}
    if response.usage_metadata:
      usage = {
        "prompt_tokens": response.usage_metadata.prompt_token_count or 0,
        "completion_tokens": response.usage_metadata.candidates_token_count or 0,
        "total_tokens": response.usage_metadata.total_token_count or 0,
      }
    return GenerationResponse(text=response.text, usage=usage, model=self.model)
