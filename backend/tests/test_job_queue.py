"""Tests for the Redis run queue and the worker that drains it."""

import json

import pytest

import worker
from apiflow.models import PipelineExecution
from apiflow.services import job_queue


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the job queue."""

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int] = {}

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    redis = FakeRedis()

    async def _get_redis():
        return redis

    monkeypatch.setattr(job_queue, "get_redis", _get_redis)
    return redis


@pytest.mark.asyncio
class TestJobQueue:
    async def test_enqueue_run(self, fake_redis):
        job_id = await job_queue.enqueue_run(7, 3)

        assert job_id.startswith("RJOB-")
        key = f"{job_queue.JOB_KEY_PREFIX}{job_id}"
        assert fake_redis.hashes[key]["status"] == "queued"
        assert fake_redis.hashes[key]["run_id"] == "7"
        assert fake_redis.ttls[key] == job_queue.JOB_TTL_SECONDS
        assert json.loads(fake_redis.lists[job_queue.QUEUE_KEY][0]) == {"job_id": job_id, "run_id": 7}

    async def test_status_lifecycle(self, fake_redis):
        job_id = await job_queue.enqueue_run(1, 1)

        await job_queue.update_job_status(job_id, status="running")
        running = await job_queue.get_job_status(job_id)
        assert running["status"] == "running"
        assert running["started_at"]
        assert running["completed_at"] == ""

        await job_queue.update_job_status(job_id, status="completed", run_status="FAILED", error="Step 1 failed")
        done = await job_queue.get_job_status(job_id)
        assert done["status"] == "completed"
        assert done["run_status"] == "FAILED"
        assert done["error"] == "Step 1 failed"
        assert done["completed_at"]

    async def test_unknown_job(self, fake_redis):
        assert await job_queue.get_job_status("RJOB-MISSING") is None


class FakeOrchestrator:
    def __init__(self, run=None, error=None):
        self.run = run
        self.error = error
        self.executed = []

    async def execute_run(self, run_id):
        self.executed.append(run_id)
        if self.error:
            raise self.error
        return self.run


@pytest.mark.asyncio
class TestWorker:
    async def test_process_run_job(self, fake_redis):
        job_id = await job_queue.enqueue_run(11, 2)
        run = PipelineExecution(id=11, pipeline_id=2, status="COMPLETED")
        orchestrator = FakeOrchestrator(run=run)

        await worker.process_run_job({"job_id": job_id, "run_id": "11"}, orchestrator)

        assert orchestrator.executed == [11]
        job = await job_queue.get_job_status(job_id)
        assert job["status"] == "completed"
        assert job["run_status"] == "COMPLETED"

    async def test_process_run_job_failure(self, fake_redis):
        job_id = await job_queue.enqueue_run(12, 2)
        orchestrator = FakeOrchestrator(error=RuntimeError("database went away"))

        await worker.process_run_job({"job_id": job_id, "run_id": 12}, orchestrator)

        job = await job_queue.get_job_status(job_id)
        assert job["status"] == "failed"
        assert job["error"] == "RuntimeError: database went away"
