"""
Worker entrypoint — processes bulk scan jobs from the Redis queue.

Run with: python worker.py
"""

import asyncio
import json
import logging
import time

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("worker")


async def run_job(job_type: str, params: dict, db) -> dict:
    """Run one bulk scan inside the given session and return its summary."""
    from app.services.coverage_scanner import CoverageScanner
    from app.services.opportunity_generator import OpportunityGenerator

    if job_type == "verify_all_coverage":
        result = await CoverageScanner(db).scan_all_coverage(
            min_claims=params.get("min_claims"),
            days_back=params.get("days_back"),
            min_margin=params.get("min_margin"),
            dme_min_margin=params.get("dme_min_margin"),
            deadline_seconds=params.get("deadline_seconds"),
        )
    elif job_type == "scan_all_opportunities":
        result = await OpportunityGenerator(db).scan_all_opportunities(
            days_back=params.get("days_back"),
            deadline_seconds=params.get("deadline_seconds"),
        )
    else:
        raise ValueError(f"Unknown job type: {job_type}")
    return result.to_dict()


async def process_scan_job(job_data: dict, SessionMaker):
    from app.services.job_queue import update_job_status

    job_id = job_data["job_id"]
    job_type = job_data.get("job_type", "")
    params = job_data.get("params") or {}

    await update_job_status(job_id, status="running")
    t_start = time.time()

    async with SessionMaker() as db:
        try:
            summary = await run_job(job_type, params, db)
            await db.commit()

            duration = round(time.time() - t_start, 3)
            summary["duration_seconds"] = duration
            await update_job_status(job_id, status="completed", result=summary)
            logger.info("Job %s (%s) completed in %.1fs", job_id, job_type, duration)

        except Exception as exc:
            logger.error("Job %s failed: %s", job_id, exc, exc_info=True)
            await db.rollback()
            await update_job_status(job_id, status="failed", error=f"{type(exc).__name__}: {exc}")


async def main():
    """Main worker loop — polls Redis queue for scan jobs."""
    from app.config import settings
    from app.services.job_queue import QUEUE_KEY

    engine = create_async_engine(settings.database_url, echo=False)
    SessionMaker = async_sessionmaker(engine, expire_on_commit=False)

    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, listening on %s", QUEUE_KEY)

    while True:
        try:
            # Block-pop from queue (5 second timeout)
            result = await r.brpop(QUEUE_KEY, timeout=5)
            if result is None:
                continue
            _, raw = result
            job_data = json.loads(raw)
            logger.info("Processing job: %s", job_data.get("job_id"))
            await process_scan_job(job_data, SessionMaker)
        except Exception as exc:
            logger.error("Worker loop error: %s", exc, exc_info=True)
            await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(main())
