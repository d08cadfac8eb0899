from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from examforge.api.models import AssignSourcesRequest, BatchProgressResponse, ReclaimResponse, SectionStateResponse
from examforge.config import Settings, get_settings
from examforge.core.security import AuthContext, get_auth_context
from examforge.services.generation import BatchOutcome, GenerationService, build_generation_service

router = APIRouter()
logger = logging.getLogger(__name__)


def get_generation_service(settings: Annotated[Settings, Depends(get_settings)]) -> GenerationService:
  return build_generation_service(settings)


ServiceDep = Annotated[GenerationService, Depends(get_generation_service)]
AuthDep = Annotated[AuthContext, Depends(get_auth_context)]


def _progress_response(outcome: BatchOutcome, response: Response) -> BatchProgressResponse:
  section = outcome.section
  # Committed-with-caveats runs answer 207 so clients show the error alongside the questions.
  if outcome.partial:
    response.status_code = status.HTTP_207_MULTI_STATUS
  return BatchProgressResponse(
    section_id=section.section_id,
    status=section.status,
    generated_this_batch=outcome.generated_this_batch,
    generated_so_far=section.generated_so_far,
    effective_target=section.effective_target,
    batch_number=section.batch_number,
    total_batches=section.total_batches,
    has_more=section.has_more,
    action=outcome.action,
    partial=outcome.partial,
    error=section.error,
    warnings=list(outcome.warnings),
  )


@router.post("/{paper_id}/sections/{section_id}/generate", response_model=BatchProgressResponse)
async def generate_section(paper_id: str, section_id: str, response: Response, service: ServiceDep, auth: AuthDep) -> BatchProgressResponse:
  """Start (or restart) generation; runs the first batch and schedules the rest."""
  outcome = await service.start_generation(paper_id, section_id, auth_token=auth.token)
  return _progress_response(outcome, response)


@router.post("/{paper_id}/sections/{section_id}/generate-next-batch", response_model=BatchProgressResponse)
async def generate_next_batch(paper_id: str, section_id: str, response: Response, service: ServiceDep, auth: AuthDep) -> BatchProgressResponse:
  """Manually run the next batch of a running or parked section."""
  outcome = await service.resume_generation(paper_id, section_id, auth_token=auth.token)
  return _progress_response(outcome, response)


@router.post("/{paper_id}/sections/{section_id}/cleanup", response_model=ReclaimResponse)
async def cleanup_section(paper_id: str, section_id: str, service: ServiceDep, auth: AuthDep) -> ReclaimResponse:
  """Reclaim a generation run that has stopped sending heartbeats; safe to poll."""
  result = await service.reclaim(paper_id, section_id)
  return ReclaimResponse(acted=result.acted, removed_items=result.removed_items)


@router.post("/{paper_id}/sections/{section_id}/finalize", response_model=SectionStateResponse)
async def finalize_section(paper_id: str, section_id: str, service: ServiceDep, auth: AuthDep) -> SectionStateResponse:
  section = await service.finalize(paper_id, section_id)
  return SectionStateResponse.from_record(section)


@router.post("/{paper_id}/sections/{section_id}/reopen", response_model=SectionStateResponse)
async def reopen_section(paper_id: str, section_id: str, service: ServiceDep, auth: AuthDep) -> SectionStateResponse:
  section = await service.reopen(paper_id, section_id)
  return SectionStateResponse.from_record(section)


@router.put("/{paper_id}/sections/{section_id}/sources", response_model=SectionStateResponse)
async def assign_section_sources(paper_id: str, section_id: str, payload: AssignSourcesRequest, service: ServiceDep, auth: AuthDep) -> SectionStateResponse:
  """Replace the section's chapters; existing questions are discarded."""
  section = await service.assign_sources(paper_id, section_id, mode=payload.mode, sources=payload.to_sources())
  return SectionStateResponse.from_record(section)


@router.get("/{paper_id}/sections/{section_id}", response_model=SectionStateResponse)
async def get_section_state(paper_id: str, section_id: str, service: ServiceDep, auth: AuthDep) -> SectionStateResponse:
  section = await service.get_section(paper_id, section_id)
  return SectionStateResponse.from_record(section, stale=service.is_stale(section))
