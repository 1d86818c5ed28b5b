"""Redis queue configuration and job management."""

import zlib
from typing import Any
from uuid import UUID

from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from lab_ingestion.core.config import settings
from lab_ingestion.core.redis import get_redis

# Lazy initialized queues cache
_queues: dict[str, Queue] = {}

LAB_IMPORT_QUEUE_PREFIX = "lab_import"


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue with specified name.

    Uses cached queue instances to avoid creating multiple connections.
    """
    if name not in _queues:
        _queues[name] = Queue(name=name, connection=get_redis())
    return _queues[name]


def lab_import_queue_name(patient_id: str, shards: int | None = None) -> str:
    """Name of the import queue shard that owns a patient.

    A patient always maps to the same shard, so with one worker per shard
    that patient's batches run one at a time while other patients proceed
    in parallel.
    """
    shards = shards or settings.lab_import_queue_shards
    shard = zlib.crc32(patient_id.encode("utf-8")) % shards
    return f"{LAB_IMPORT_QUEUE_PREFIX}_{shard}"


def lab_import_queue_names() -> list[str]:
    """All import queue shard names, for starting workers."""
    return [f"{LAB_IMPORT_QUEUE_PREFIX}_{i}" for i in range(settings.lab_import_queue_shards)]


def enqueue_job(
    func: Any,
    *args: Any,
    queue_name: str = "default",
    job_timeout: int = 600,
    job_id: str | UUID | None = None,
    **kwargs: Any,
) -> Job:
    """Enqueue a job to the Redis queue.

    Args:
        func: The function to execute.
        *args: Positional arguments for the function.
        queue_name: Name of the queue. Defaults to "default".
        job_timeout: Job timeout in seconds. Defaults to 600 (10 minutes).
        job_id: Optional custom job ID (string or UUID).
        **kwargs: Keyword arguments for the function.

    Returns:
        RQ Job instance with job_id.
    """
    queue = get_queue(queue_name)
    job_id_str = str(job_id) if job_id is not None else None
    return queue.enqueue(func, *args, job_timeout=job_timeout, job_id=job_id_str, **kwargs)


def get_job(job_id: str | UUID) -> Job | None:
    """Get job by ID, or None if Redis has no such job."""
    try:
        return Job.fetch(str(job_id), connection=get_redis())
    except NoSuchJobError:
        return None


def get_job_status(job_id: str | UUID) -> str | None:
    """Get the current status of a job.

    Returns:
        Job status string ('queued', 'started', 'finished', 'failed') or None if not found.
    """
    job = get_job(job_id)
    if job is None:
        return None
    status = job.get_status()
    return str(status.value) if status is not None else None


def get_job_result(job_id: str | UUID) -> Any:
    """Get the result of a completed job, or None."""
    job = get_job(job_id)
    if job is None:
        return None
    return job.return_value()


def clear_queues() -> None:
    """Clear all queues and reset queue cache.

    Used primarily for testing cleanup.
    """
    for queue in _queues.values():
        queue.empty()
    _queues.clear()
