"""Tests for the background scan queue and worker."""

import json
from contextlib import asynccontextmanager

import pytest

import worker
from app.services import job_queue


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the job queue."""

    def __init__(self):
        self.hashes: dict[str, dict] = {}
        self.lists: dict[str, list] = {}

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        return True

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()

    async def _get_redis():
        return fake

    monkeypatch.setattr(job_queue, "get_redis", _get_redis)
    return fake


def _reusing(session):
    @asynccontextmanager
    async def _session():
        yield session
    return _session


@pytest.mark.asyncio
class TestJobQueue:
    async def test_enqueue_and_status(self, fake_redis):
        job_id = await job_queue.enqueue_scan_job("verify_all_coverage", {"days_back": 30})

        assert job_id.startswith("JOB-")
        (queued,) = fake_redis.lists[job_queue.QUEUE_KEY]
        assert json.loads(queued) == {"job_id": job_id, "job_type": "verify_all_coverage",
                                      "params": {"days_back": 30}}

        status = await job_queue.get_job_status(job_id)
        assert status["status"] == "queued"
        assert status["params"] == {"days_back": 30}

    async def test_unknown_job_type(self, fake_redis):
        with pytest.raises(ValueError):
            await job_queue.enqueue_scan_job("reindex_everything")

    async def test_missing_job(self, fake_redis):
        assert await job_queue.get_job_status("JOB-NOPE") is None


@pytest.mark.asyncio
class TestWorker:
    async def test_runs_opportunity_scan(self, db_session, factory, fake_redis):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await factory.trigger("ACE_TO_ARB", detection_keywords=["LISINOPRIL"], default_gp_value=40)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)
        job_id = await job_queue.enqueue_scan_job("scan_all_opportunities", {})

        await worker.process_scan_job(
            {"job_id": job_id, "job_type": "scan_all_opportunities", "params": {}}, _reusing(db_session),
        )

        status = await job_queue.get_job_status(job_id)
        assert status["status"] == "completed"
        assert status["result"]["created"] == 1
        assert status["completed_at"]

    async def test_failed_job_is_reported(self, db_session, fake_redis):
        job_id = await job_queue.enqueue_scan_job("verify_all_coverage", {})

        await worker.process_scan_job({"job_id": job_id, "job_type": "rebuild"}, _reusing(db_session))

        status = await job_queue.get_job_status(job_id)
        assert status["status"] == "failed"
        assert "Unknown job type" in status["error"]
