"""
Redis-backed job queue for bulk scans.

Bulk coverage verification and the all-pharmacy opportunity scan can take many
minutes; the API enqueues them here and worker.py runs them in the background
with status tracking.
"""

import json
import logging
from datetime import datetime
from uuid import uuid4

import redis.asyncio as aioredis

from app.config import settings

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "scan:job:"
QUEUE_KEY = "rxos:scan:queue"
JOB_TTL_SECONDS = 86400

JOB_TYPES = ("verify_all_coverage", "scan_all_opportunities")


async def get_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, decode_responses=True)


async def enqueue_scan_job(job_type: str, params: dict | None = None) -> str:
    """Enqueue a bulk scan job and return its job_id."""
    if job_type not in JOB_TYPES:
        raise ValueError(f"Unknown job type: {job_type}")

    job_id = f"JOB-{uuid4().hex[:12].upper()}"
    params = params or {}
    r = await get_redis()

    job_data = {
        "job_id": job_id,
        "job_type": job_type,
        "status": "queued",
        "params": json.dumps(params),
        "queued_at": datetime.utcnow().isoformat(),
        "started_at": "",
        "completed_at": "",
        "error": "",
    }
    await r.hset(f"{JOB_KEY_PREFIX}{job_id}", mapping=job_data)
    await r.expire(f"{JOB_KEY_PREFIX}{job_id}", JOB_TTL_SECONDS)

    await r.lpush(QUEUE_KEY, json.dumps({"job_id": job_id, "job_type": job_type, "params": params}))
    await r.aclose()
    logger.info("Enqueued %s job %s", job_type, job_id)
    return job_id


async def get_job_status(job_id: str) -> dict | None:
    """Get the current status of a scan job."""
    r = await get_redis()
    data = await r.hgetall(f"{JOB_KEY_PREFIX}{job_id}")
    await r.aclose()
    if not data:
        return None
    for key in ("params", "result"):
        if data.get(key):
            data[key] = json.loads(data[key])
    return data


async def update_job_status(
    job_id: str,
    *,
    status: str | None = None,
    result: dict | None = None,
    error: str | None = None,
):
    """Update fields on a scan job."""
    r = await get_redis()
    updates: dict = {}
    if status is not None:
        updates["status"] = status
    if status == "running":
        updates["started_at"] = datetime.utcnow().isoformat()
    if status in ("completed", "failed"):
        updates["completed_at"] = datetime.utcnow().isoformat()
    if result:
        updates["result"] = json.dumps(result, default=str)
    if error:
        updates["error"] = error[:500]

    if updates:
        await r.hset(f"{JOB_KEY_PREFIX}{job_id}", mapping=updates)
    await r.aclose()
