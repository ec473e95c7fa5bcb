"""
Redis job queue for pipeline runs (RUN_DISPATCH=queue).

The API creates the PENDING run, then enqueues its id here; worker.py pops
the id and executes the run. A small status hash per job lets clients see
whether the worker has picked the run up yet.
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis

from apiflow.config import settings

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "apiflow:job:"
QUEUE_KEY = "apiflow:runs:queue"
JOB_TTL_SECONDS = 86400


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, decode_responses=True)


async def enqueue_run(run_id: int, pipeline_id: int) -> str:
    """Enqueue a run for the worker and return its job_id."""
    job_id = f"RJOB-{uuid4().hex[:12].upper()}"
    r = await get_redis()

    job_data = {
        "job_id": job_id,
        "run_id": run_id,
        "pipeline_id": pipeline_id,
        "status": "queued",
        "enqueued_at": _now(),
        "started_at": "",
        "completed_at": "",
        "error": "",
    }
    try:
        await r.hset(f"{JOB_KEY_PREFIX}{job_id}", mapping=job_data)
        await r.expire(f"{JOB_KEY_PREFIX}{job_id}", JOB_TTL_SECONDS)
        await r.lpush(QUEUE_KEY, json.dumps({"job_id": job_id, "run_id": run_id}))
    finally:
        await r.aclose()

    logger.info("Enqueued run %s as job %s", run_id, job_id)
    return job_id


async def get_job_status(job_id: str) -> dict | None:
    """Get the current status of a queued run job."""
    r = await get_redis()
    try:
        data = await r.hgetall(f"{JOB_KEY_PREFIX}{job_id}")
    finally:
        await r.aclose()
    if not data:
        return None
    return data


async def update_job_status(
    job_id: str,
    *,
    status: str | None = None,
    run_status: str | None = None,
    error: str | None = None,
):
    """Update fields on a queued run job."""
    updates: dict = {}
    if status is not None:
        updates["status"] = status
    if run_status is not None:
        updates["run_status"] = run_status
    if error is not None:
        updates["error"] = error
    if status == "running":
        updates["started_at"] = _now()
    if status in ("completed", "failed"):
        updates["completed_at"] = _now()

    if not updates:
        return
    r = await get_redis()
    try:
        await r.hset(f"{JOB_KEY_PREFIX}{job_id}", mapping=updates)
    finally:
        await r.aclose()
