import json

from fastapi.testclient import TestClient

import main
from session_grader.gcs_client import GCSClient
from session_grader.job_queue import InMemoryJobQueue
from session_grader.phrase_cache import InMemoryPhraseCache
from session_grader.pipeline import GradingPipeline
from session_grader.session_store import InMemorySessionStore

from fakes import FakeLLM, GOOD_RATING, CLOSED_DEEP_GRADE


SALES_CALL = [
    {"speaker": "rep", "text": "Hi, I'm with the local pest team.", "timestamp": "00:00"},
    {"speaker": "customer", "text": "Hello.", "timestamp": "00:04"},
    {"speaker": "rep", "text": "Have you noticed any ants this season?", "timestamp": "00:08"},
    {"speaker": "customer", "text": "A few. It's too expensive to treat though.", "timestamp": "00:14"},
    {"speaker": "rep", "text": "Would you like to get started this week?", "timestamp": "00:30"},
    {"speaker": "customer", "text": "Sure, Tuesday works.", "timestamp": "00:35"},
]


def _pipeline(deep_responses=None):
    return GradingPipeline(
        store=InMemorySessionStore(),
        queue=InMemoryJobQueue(),
        cache=InMemoryPhraseCache(),
        moments_llm=FakeLLM(),
        line_llm=FakeLLM([GOOD_RATING]),
        deep_llm=FakeLLM(deep_responses or [CLOSED_DEEP_GRADE]),
        poll_interval=0.05,
    )


class TestGradingAPI:
    def setup_method(self):
        self.pipeline = _pipeline()
        main.app.state.pipeline = self.pipeline

    def _drain(self, client):
        client.portal.call(self.pipeline.pool.drain, 5)

    def test_health(self):
        with TestClient(main.app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["workers_running"] is True

    def test_orchestrate_then_poll(self):
        with TestClient(main.app) as client:
            response = client.post("/grade/orchestrate", json={
                "session_id": "api-1", "transcript": SALES_CALL, "duration_seconds": 35
            })
            self._drain(client)
            client.portal.call(self.pipeline.orchestrator.refresh_status, "api-1")
            status_response = client.get("/grade/status/api-1")
            session_response = client.get("/grade/session/api-1")
            health_response = client.get("/grade/health/api-1")

        assert response.status_code == 200
        assert response.json()["instant_complete"] is True
        assert response.json()["deep_grade_scheduled"] is True

        status = status_response.json()
        assert status["grading_status"] == "completed"
        assert status["sale_closed"] is True
        assert status["line_ratings_completed_batches"] == 1
        assert status["line_ratings_total_batches"] == 1

        session = session_response.json()
        assert len(session["line_ratings"]) == 3
        assert session["deep_grade"]["scores"]["overall"] == 80

        assert health_response.json()["status"] == "healthy"

    def test_failed_deep_grade_reported(self):
        self.pipeline = _pipeline(deep_responses=[{"finalScores": {"overall": 50}}])
        main.app.state.pipeline = self.pipeline

        with TestClient(main.app) as client:
            client.post("/grade/orchestrate", json={"session_id": "api-2", "transcript": SALES_CALL})
            status = client.get("/grade/status/api-2").json()
            health = client.get("/grade/health/api-2").json()

        assert status["grading_status"] == "failed"
        assert status["deep_analysis_error"]
        assert health["status"] == "error"

    def test_empty_transcript_is_bad_request(self):
        with TestClient(main.app) as client:
            response = client.post("/grade/orchestrate", json={"session_id": "api-3", "transcript": []})
            instant = client.post("/grade/instant", json={"transcript": []})

        assert response.status_code == 400
        assert instant.status_code == 400

    def test_unknown_session_is_not_found(self):
        with TestClient(main.app) as client:
            assert client.get("/grade/status/missing").status_code == 404
            assert client.get("/grade/health/missing").status_code == 404
            assert client.post("/grade/deep-analysis/missing").status_code == 404
            assert client.post("/grade/retry-batches/missing").status_code == 404

    def test_instant_metrics(self):
        with TestClient(main.app) as client:
            response = client.post("/grade/instant", json={
                "transcript": SALES_CALL,
                "voice_analysis": {"avgWPM": 150, "totalFillerWords": 0, "longPausesCount": 0}
            })

        body = response.json()
        assert response.status_code == 200
        assert body["words_per_minute"] == 150
        assert body["question_count"] == 2
        assert body["close_attempts"] == 1

    def test_key_moments(self):
        with TestClient(main.app) as client:
            response = client.post("/grade/key-moments", json={"transcript": SALES_CALL, "max_moments": 2})

        body = response.json()
        assert response.status_code == 200
        assert [m["id"] for m in body["key_moments"]] == ["moment-1", "moment-2"]
        assert "improvements" in body["feedback"]

    def test_key_moments_limit_of_zero(self):
        with TestClient(main.app) as client:
            response = client.post("/grade/key-moments", json={"transcript": SALES_CALL, "max_moments": 0})

        assert response.status_code == 200
        assert response.json()["key_moments"] == []

    def test_recent_jobs(self):
        with TestClient(main.app) as client:
            client.post("/grade/orchestrate", json={"session_id": "api-4", "transcript": SALES_CALL})
            self._drain(client)
            response = client.get("/recent-jobs?limit=5")

        body = response.json()
        assert body["sessions"][0]["session_id"] == "api-4"
        assert body["jobs"][0]["status"] == "completed"


class FakeGCSClient(GCSClient):
    downloads = []

    def __init__(self, bucket_name=None, client=None):
        self.bucket_name = bucket_name

    def download_transcript(self, blob_name):
        self.downloads.append((self.bucket_name, blob_name))
        return json.dumps({"transcript": SALES_CALL, "duration_seconds": 35})


class TestStorageEvents:
    def setup_method(self):
        self.pipeline = _pipeline()
        main.app.state.pipeline = self.pipeline
        FakeGCSClient.downloads = []

    def _event(self, client, name, generation="1", event_id="evt-1"):
        headers = {
            "ce-specversion": "1.0",
            "ce-type": "google.cloud.storage.object.v1.finalized",
            "ce-source": "//storage.googleapis.com/projects/_/buckets/uploads",
            "ce-id": event_id,
            "content-type": "application/json",
        }
        body = {"name": name, "bucket": "uploads", "generation": generation}
        return client.post("/cloudevents", headers=headers, content=json.dumps(body))

    def test_transcript_upload_is_graded_once(self, monkeypatch):
        monkeypatch.setattr(main, "GCSClient", FakeGCSClient)

        with TestClient(main.app) as client:
            first = self._event(client, "transcripts/knock.json").json()
            second = self._event(client, "transcripts/knock.json", event_id="evt-2").json()
            session = client.get(f"/grade/session/{first['session_id']}")

        assert first["status"] == "accepted"
        assert first["session_id"] == "auto-knock-1"
        assert second["status"] == "duplicate"
        assert FakeGCSClient.downloads == [("uploads", "transcripts/knock.json")]
        assert session.status_code == 200
        assert session.json()["instant_metrics"] is not None

    def test_remembered_events_are_bounded(self, monkeypatch):
        monkeypatch.setattr(main, "GCSClient", FakeGCSClient)
        monkeypatch.setenv("PROCESSED_EVENTS_LIMIT", "2")

        with TestClient(main.app) as client:
            for generation in ("1", "2", "3"):
                self._event(client, "transcripts/knock.json", generation=generation)
            remembered = list(main.app.state.processed_events)
            # The oldest id was forgotten, the graded session still marks it as seen
            redelivered = self._event(client, "transcripts/knock.json", generation="1", event_id="evt-9").json()

        assert remembered == ["auto-knock-2", "auto-knock-3"]
        assert redelivered["status"] == "duplicate"
        assert len(FakeGCSClient.downloads) == 3

    def test_other_objects_are_ignored(self, monkeypatch):
        monkeypatch.setattr(main, "GCSClient", FakeGCSClient)

        with TestClient(main.app) as client:
            response = self._event(client, "exports/report.pdf").json()

        assert response["status"] == "ignored"
        assert FakeGCSClient.downloads == []
