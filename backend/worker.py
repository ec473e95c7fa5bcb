"""
Run worker: executes pipeline runs popped from the Redis queue.

Used when RUN_DISPATCH=queue. The API has already created the PENDING run;
the worker only drives it to a terminal state and mirrors the outcome onto
the job status hash.

Run with: python worker.py
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from apiflow.config import settings
from apiflow.middleware.logging_config import configure_logging

configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger("worker")


async def process_run_job(job_data: dict, orchestrator) -> None:
    """Execute one queued run and record the result on its job."""
    from apiflow.services.job_queue import update_job_status

    job_id = job_data["job_id"]
    run_id = int(job_data["run_id"])

    await update_job_status(job_id, status="running")
    try:
        run = await orchestrator.execute_run(run_id)
    except Exception as exc:
        logger.error("Job %s (run %s) failed: %s", job_id, run_id, exc, exc_info=True)
        await update_job_status(job_id, status="failed", error=f"{type(exc).__name__}: {exc}")
        return

    await update_job_status(
        job_id, status="completed", run_status=run.status, error=run.error_message or "",
    )
    logger.info("Job %s completed: run %s is %s", job_id, run_id, run.status)


async def main():
    """Main worker loop: polls Redis queue for run jobs."""
    from apiflow.database import engine
    from apiflow.services.job_queue import QUEUE_KEY
    from apiflow.services.run_orchestrator import RunOrchestrator

    orchestrator = RunOrchestrator()
    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, listening on %s", QUEUE_KEY)

    try:
        while True:
            try:
                # Block-pop from queue (5 second timeout)
                result = await r.brpop(QUEUE_KEY, timeout=5)
                if result is None:
                    continue
                _, raw = result
                job_data = json.loads(raw)
                logger.info("Processing job: %s", job_data.get("job_id"))
                await process_run_job(job_data, orchestrator)
            except Exception as exc:
                logger.error("Worker loop error: %s", exc, exc_info=True)
                await asyncio.sleep(1)
    finally:
        await r.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
