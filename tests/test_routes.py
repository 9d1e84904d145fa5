"""
Route tests: request validation, job queuing and error mapping, with the worker pool and services stubbed out.
"""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from playsync.main import app
from playsync.routes.plays import get_play_service
from playsync.services.bgg.errors import PlayValidationError
from playsync.tasks.jobs import SyncCatalogBatchJob, SyncUserPlaysJob


class RecordingPool:
    def __init__(self, stale_ids=()):
        self.jobs = []
        self.context = SimpleNamespace(catalog=SimpleNamespace(select_stale_bgg_ids=self._stale))
        self._stale_ids = list(stale_ids)

    async def _stale(self):
        return self._stale_ids

    async def enqueue(self, job, delay=0):
        if any(queued.key == job.key for queued in self.jobs):
            return False
        self.jobs.append(job)
        return True


class StubPlayService:
    async def create_play(self, creator_id, body):
        raise PlayValidationError(f"board game #{body.board_game_id} does not exist")

    async def get_sync_status(self, play_id):
        raise LookupError(f"play #{play_id} not found")

    async def delete_play(self, play_id):
        raise LookupError(f"play #{play_id} not found")


@pytest.fixture
def pool():
    pool = RecordingPool(stale_ids=["1", "2"])
    app.state.pool = pool
    app.dependency_overrides[get_play_service] = StubPlayService
    yield pool
    app.dependency_overrides.clear()
    del app.state.pool


@pytest.fixture
def client(pool):
    # no context manager: startup hooks (database, real pool, scheduler) stay off
    return TestClient(app)


def test_catalog_sync_queues_cleaned_ids(client, pool):
    response = client.post("/catalog/sync", json={"bgg_ids": ["13", "abc", "822", "13"]})

    assert response.status_code == 202
    assert response.json() == {"requested": 2, "queued_jobs": 1}
    assert isinstance(pool.jobs[0], SyncCatalogBatchJob)
    assert pool.jobs[0].bgg_ids == ["13", "822"]


def test_catalog_sync_requires_ids(client, pool):
    assert client.post("/catalog/sync", json={"bgg_ids": []}).status_code == 422
    assert pool.jobs == []


def test_refresh_stale_catalog(client, pool):
    response = client.post("/catalog/refresh-stale")

    assert response.json() == {"queued_jobs": 1}
    assert pool.jobs[0].bgg_ids == ["1", "2"]


def test_user_play_sync_is_queued_once(client, pool):
    first = client.post("/plays/sync/7", params={"min_date": "2025-01-01", "max_date": "2025-01-31"})
    second = client.post("/plays/sync/7", params={"min_date": "2025-01-01", "max_date": "2025-01-31"})

    assert first.status_code == 202
    assert first.json() == {"queued": True}
    assert second.json() == {"queued": False}
    job = pool.jobs[0]
    assert isinstance(job, SyncUserPlaysJob)
    assert (job.user_id, str(job.min_date), str(job.max_date)) == (7, "2025-01-01", "2025-01-31")


def test_play_body_is_validated(client):
    response = client.post(
        "/plays", params={"creator_id": 1}, json={"board_game_id": 1, "played_at": "2025-01-10", "players": []}
    )
    assert response.status_code == 422


def test_service_validation_errors_map_to_422(client):
    response = client.post(
        "/plays",
        params={"creator_id": 1},
        json={
            "board_game_id": 9,
            "played_at": "2025-01-10",
            "players": [{"identity": {"kind": "guest", "name": "Dave"}}],
        },
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "board game #9 does not exist"


def test_unknown_play_is_404(client):
    response = client.get("/plays/42/sync-status")

    assert response.status_code == 404
    assert response.json() == {"error": "Play not found", "status": "fail"}
    assert client.delete("/plays/42").status_code == 404
