from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from examforge.ai.contracts import GenerationResponse
from examforge.api.routes.sections import get_generation_service
from examforge.config import get_settings
from examforge.core.security import AuthContext, get_auth_context
from examforge.generation.errors import DispatchError
from examforge.generation.models import GenerationMode, SectionStatus
from examforge.main import app
from examforge.services.generation import build_generation_service
from fakes import RecordingEnqueuer, ScriptedClient, make_item, make_section, make_sources, no_sleep

BASE = "/v1/papers/paper-1/sections/sec-1"


class Harness:
  """Wires the app to in-memory collaborators for one test."""

  def __init__(self, repo, clock) -> None:
    self.repo = repo
    self.clock = clock
    self.client = ScriptedClient()
    self.enqueuer = RecordingEnqueuer()

  def service(self):
    return build_generation_service(get_settings(), repo=self.repo, client=self.client, enqueuer=self.enqueuer, clock=self.clock, sleep=no_sleep)


@pytest.fixture
def harness(repo, clock) -> Harness:
  return Harness(repo, clock)


@pytest.fixture
async def api(harness: Harness) -> AsyncIterator[AsyncClient]:
  app.dependency_overrides[get_generation_service] = harness.service
  app.dependency_overrides[get_auth_context] = lambda: AuthContext(token="user-token")
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_generate_runs_first_batch_and_dispatches_the_rest(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=100))

  response = await api.post(f"{BASE}/generate")

  assert response.status_code == 200
  body = response.json()
  assert body["status"] == "generating"
  assert body["action"] == "dispatched"
  assert body["generated_this_batch"] == 60
  assert body["effective_target"] == 120
  assert body["batch_number"] == 1
  assert body["total_batches"] == 2
  assert body["has_more"] is True
  assert response.headers["x-request-id"]
  assert harness.enqueuer.tasks[0].auth_token == "user-token"


@pytest.mark.anyio
async def test_parked_run_answers_multi_status(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=100))
  harness.enqueuer.error = DispatchError("continuation endpoint unreachable")

  response = await api.post(f"{BASE}/generate")

  assert response.status_code == 207
  body = response.json()
  assert body["status"] == "in_review"
  assert body["partial"] is True
  assert "could not be scheduled" in body["error"]


@pytest.mark.anyio
async def test_exhausted_first_batch_surfaces_a_readable_error(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=10))
  bad = GenerationResponse(text="model overloaded, try later")
  harness.client.script = [bad, bad, bad]

  response = await api.post(f"{BASE}/generate")

  assert response.status_code == 502
  body = response.json()
  assert body["error"] == "ParseError"
  assert "requestId" in body
  assert harness.repo.sections["sec-1"].status is SectionStatus.READY


@pytest.mark.anyio
async def test_lifecycle_guards_map_to_http_statuses(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(status=SectionStatus.GENERATING, attempt_id="attempt-1", started_at=harness.clock.now))

  conflict = await api.post(f"{BASE}/generate")
  missing = await api.post("/v1/papers/paper-1/sections/nope/generate")

  assert conflict.status_code == 409
  assert conflict.json()["error"] == "InvalidTransitionError"
  assert missing.status_code == 404


@pytest.mark.anyio
async def test_state_view_reports_schedule_and_staleness(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=30, mode=GenerationMode.SOURCE_SCOPE, sources=make_sources(3)))
  await api.post(f"{BASE}/generate")

  fresh = (await api.get(BASE)).json()
  harness.clock.advance(get_settings().stale_after_seconds + 1)
  stale = (await api.get(BASE)).json()

  assert fresh["stale"] is False
  assert stale["stale"] is True
  assert [entry["source_id"] for entry in fresh["schedule"]] == ["ch-1", "ch-2", "ch-3"]
  assert [entry["current"] for entry in fresh["schedule"]] == [False, True, False]
  assert fresh["generated_so_far"] == 15


@pytest.mark.anyio
async def test_cleanup_is_safe_to_poll(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=100))
  await api.post(f"{BASE}/generate")

  healthy = await api.post(f"{BASE}/cleanup")
  harness.clock.advance(get_settings().stale_after_seconds + 1)
  reaped = await api.post(f"{BASE}/cleanup")
  again = await api.post(f"{BASE}/cleanup")

  assert healthy.json() == {"acted": False, "removed_items": 0}
  assert reaped.json() == {"acted": True, "removed_items": 60}
  assert again.json() == {"acted": False, "removed_items": 0}


@pytest.mark.anyio
async def test_finalize_reports_selection_shortfall(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=2, status=SectionStatus.IN_REVIEW))
  harness.repo.add_items([make_item("sec-1", 1, selected=True), make_item("sec-1", 2)])

  response = await api.post(f"{BASE}/finalize")

  assert response.status_code == 400
  assert response.json()["detail"] == {"message": "Select at least 2 questions before finalizing (1 selected).", "expected": 2, "selected": 1}


@pytest.mark.anyio
async def test_manual_next_batch_resumes_a_parked_run(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section(item_count=100))
  harness.enqueuer.error = DispatchError("queue paused")
  await api.post(f"{BASE}/generate")
  harness.enqueuer.error = None

  response = await api.post(f"{BASE}/generate-next-batch")

  assert response.status_code == 200
  body = response.json()
  assert body["action"] == "completed"
  assert body["status"] == "in_review"
  assert body["generated_so_far"] == 120


@pytest.mark.anyio
async def test_assign_sources_replaces_chapters(api: AsyncClient, harness: Harness) -> None:
  harness.repo.add_section(make_section())
  payload = {"mode": "source_truth", "sources": [{"source_id": "ch-7", "name": "Optics", "document_uri": "gs://bucket/optics.pdf"}]}

  response = await api.put(f"{BASE}/sources", json=payload)
  rejected = await api.put(f"{BASE}/sources", json={"mode": "source_truth", "sources": [{"source_id": "ch-7", "name": "Optics", "pages": 3}]})

  assert response.status_code == 200
  assert response.json()["mode"] == "source_truth"
  assert harness.repo.sections["sec-1"].sources[0].document_uri == "gs://bucket/optics.pdf"
  assert rejected.status_code == 422


@pytest.mark.anyio
async def test_routes_require_a_bearer_token(harness: Harness) -> None:
  harness.repo.add_section(make_section())
  app.dependency_overrides[get_generation_service] = harness.service
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
      response = await client.get(BASE)
  finally:
    app.dependency_overrides.clear()

  assert response.status_code in {401, 403}
