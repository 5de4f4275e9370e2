import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

# Handler signature: async def handler(conn: AsyncConnection, payload: dict) -> None
HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

# One handler per job_type
_registry: dict[str, HandlerFn] = {}

# Job types whose handlers open and commit their own transactions per item.
_self_committing: set[str] = set()


def register(
    job_type: str, *, commits_own_work: bool = False
) -> Callable[[HandlerFn], HandlerFn]:
    """Register a handler for a job_type (e.g. 'medication.missed_sweep').

    ``commits_own_work`` handlers run on an idle connection instead of inside
    the job's transaction, so each of their ``conn.transaction()`` blocks is a
    real commit. The job row is completed separately afterwards.
    """

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = fn
        if commits_own_work:
            _self_committing.add(job_type)
        logger.info(
            "Registered handler for job_type=%s (commits_own_work=%s)",
            job_type,
            commits_own_work,
        )
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def commits_own_work(job_type: str) -> bool:
    return job_type in _self_committing


def registered_types() -> list[str]:
    return list(_registry.keys())
