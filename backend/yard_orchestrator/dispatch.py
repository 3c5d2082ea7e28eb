import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import redis
from django.conf import settings
from django.db import close_old_connections
from django.utils.module_loading import import_string
from rq import Callback, Queue

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4)


def _async_mode() -> str:
    mode = (getattr(settings, "SHIPYARD_ASYNC_JOBS_MODE", "") or "").strip().lower()
    return mode or "redis"


def _run_inprocess(func_path: str, *args) -> None:
    close_old_connections()
    try:
        import_string(func_path)(*args)
    except Exception:
        logger.exception("in-process job %s failed", func_path)
    finally:
        close_old_connections()


def _enqueue_job(func_path: str, *args, timeout: int, on_failure: Optional[Callable[..., Any]] = None) -> str:
    redis_url = settings.SHIPYARD_JOBS_REDIS_URL
    queue = Queue(settings.SHIPYARD_JOBS_QUEUE, connection=redis.Redis.from_url(redis_url))
    options = {"job_timeout": timeout}
    if on_failure is not None:
        options["on_failure"] = Callback(on_failure)
    job = queue.enqueue(func_path, *args, **options)
    return job.id


def dispatch(func_path: str, *args, timeout: int, on_failure: Optional[Callable[..., Any]] = None) -> str:
    """Hand ``func_path(*args)`` to the configured job backend and return a job id.

    ``eager`` runs the job in the caller and lets its exceptions propagate.
    """
    mode = _async_mode()
    if mode == "redis":
        job_id = _enqueue_job(func_path, *args, timeout=timeout, on_failure=on_failure)
    elif mode == "inprocess":
        job_id = str(uuid.uuid4())
        _executor.submit(_run_inprocess, func_path, *args)
    elif mode == "eager":
        job_id = str(uuid.uuid4())
        import_string(func_path)(*args)
    else:
        raise ValueError(f"Unknown async jobs mode: {mode}")
    logger.info("dispatched %s (%s) as %s", func_path, mode, job_id)
    return job_id
