"""
Tests for the read-only dashboard.
"""

import pytest
from fastapi.testclient import TestClient

from dashboard import app, get_db
from models import ExecutionState, JobStatus, PCBStatus


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestDashboard:
    def test_home_lists_recent_jobs(self, client, make_job):
        job = make_job(type="WEBHOOK", payload={"url": "http://x"})
        response = client.get("/")
        assert response.status_code == 200
        assert job.id in response.text

    def test_jobs_json_newest_first(self, client, make_job):
        old = make_job(age_secs=20)
        new = make_job()
        data = client.get("/jobs").json()
        assert [j["id"] for j in data] == [new.id, old.id]
        assert data[0]["status"] == "PENDING"

    def test_metrics(self, client, lanes, make_job):
        make_job(status=JobStatus.SUCCESS)
        lanes.push(7, "x")
        data = client.get("/metrics/json").json()
        assert data["jobs"]["SUCCESS"] == 1
        assert data["lanes"]["7"] == 1
        assert data["suspended_pcbs"] == 0

    def test_job_detail_with_pcb(self, client, db, make_job):
        job = make_job(execution_time_secs=4)
        db.create_pcb(ExecutionState(job_id=job.id, status=PCBStatus.SUSPENDED, execution_time_secs=4,
                                     execution_time_done_secs=1.5, resume_count=1))
        response = client.get(f"/job/{job.id}")
        assert response.status_code == 200
        assert "1.5/4.0s" in response.text

    def test_job_detail_missing(self, client):
        assert client.get("/job/nope").status_code == 404

    def test_ids_and_statuses_are_escaped(self, client, make_job):
        make_job(id="x<i>y")
        response = client.get("/")
        assert "x<i>y" not in response.text
        assert "x&lt;i&gt;y" in response.text

    def test_detail_escapes_job_id(self, client, make_job):
        make_job(id="a&b")
        response = client.get("/job/a&b")
        assert response.status_code == 200
        assert "Job a&amp;b" in response.text
        assert "Job a&b" not in response.text
