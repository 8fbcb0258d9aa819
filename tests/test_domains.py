"""Tests for domain score tracking."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from main import app
from routers.domains import get_domain_service
from services.domains import (
    DOMAIN_MAPPING_FILE,
    DomainScoreService,
    TrackScoreRequest,
    load_domain_mapping,
)

MAPPING = {
    "domains": {
        "cardio": {"name": "Cardiologie", "color": "#e11d48", "files": ["item-231.pdf", "ecg.pdf"]},
        "nephro": {"name": "Néphrologie", "files": ["item-231.pdf"]},
        "neuro": {"name": "Neurologie", "files": ["avc.pdf"]},
    }
}


def _run(coro):
    return asyncio.run(coro)


def _score(filename: str, average: float, session_id: str = "s") -> TrackScoreRequest:
    return TrackScoreRequest(
        session_id=session_id,
        filename=filename,
        score=average,
        total_questions=10,
        answered_questions=10,
        average_score=average,
    )


@pytest.fixture
def data_dir(tmp_path):
    (tmp_path / DOMAIN_MAPPING_FILE).write_text(json.dumps(MAPPING), encoding="utf-8")
    return str(tmp_path)


@pytest.fixture
def service(file_backend, data_dir):
    return DomainScoreService(file_backend, data_dir)


class TestMapping:
    def test_load(self, data_dir) -> None:
        mapping = load_domain_mapping(data_dir)
        assert set(mapping.domains) == {"cardio", "nephro", "neuro"}
        assert mapping.domains["nephro"].color == "#64748b"

    def test_missing_file(self, tmp_path) -> None:
        assert load_domain_mapping(str(tmp_path)).domains == {}

    def test_malformed_file(self, tmp_path) -> None:
        (tmp_path / DOMAIN_MAPPING_FILE).write_text("{broken", encoding="utf-8")
        assert load_domain_mapping(str(tmp_path)).domains == {}


class TestScores:
    """Test tracking and aggregation."""

    def test_file_in_two_domains(self, service) -> None:
        assert _run(service.track_score(_score("item-231.pdf", 14.0))) == ["cardio", "nephro"]

    def test_unmapped_file_is_ignored(self, service) -> None:
        assert _run(service.track_score(_score("unknown.pdf", 12.0))) == []
        assert _run(service.evolution("cardio")).total_sessions == 0

    def test_evolution_is_chronological(self, service) -> None:
        async def scenario():
            await service.track_score(_score("ecg.pdf", 10.0, "s1"))
            await service.track_score(_score("item-231.pdf", 16.0, "s2"))
            return await service.evolution("cardio")

        evolution = _run(scenario())
        assert evolution.scores == [10.0, 16.0]
        assert evolution.average_score == pytest.approx(13.0)
        assert evolution.total_sessions == 2
        assert evolution.dates == sorted(evolution.dates)

    def test_concurrent_scores_are_all_kept(self, service) -> None:
        async def scenario():
            await asyncio.gather(*(service.track_score(_score("ecg.pdf", float(i), f"s{i}")) for i in range(6)))
            return await service.evolution("cardio")

        evolution = _run(scenario())
        assert evolution.total_sessions == 6
        assert sorted(evolution.scores) == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]

    def test_router_shares_one_service(self) -> None:
        assert get_domain_service() is get_domain_service()

    def test_stats_most_practised_first(self, service) -> None:
        async def scenario():
            await service.track_score(_score("ecg.pdf", 10.0))
            await service.track_score(_score("item-231.pdf", 16.0))
            return await service.all_stats()

        stats = _run(scenario())
        assert [s.key for s in stats] == ["cardio", "nephro", "neuro"]
        assert [s.total_sessions for s in stats] == [2, 1, 0]
        assert stats[2].last_session is None
        assert stats[2].average_score == 0.0


class TestDomainRoutes:
    @pytest.fixture
    def client(self, service):
        app.dependency_overrides[get_domain_service] = lambda: service
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_track_then_stats(self, client: TestClient) -> None:
        payload = _score("avc.pdf", 15.5).model_dump()
        response = client.post("/domains/track-score", json=payload)
        assert response.json() == {"ok": True, "domains": ["neuro"]}

        evolution = client.get("/domains/stats", params={"domain": "neuro"}).json()
        assert evolution["scores"] == [15.5]

        stats = client.get("/domains/stats").json()["stats"]
        assert stats[0]["key"] == "neuro"

    def test_invalid_payload(self, client: TestClient) -> None:
        response = client.post("/domains/track-score", json={"filename": "avc.pdf"})
        assert response.status_code == 422
