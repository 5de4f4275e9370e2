"""Recurring missed-dose sweep."""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from ..config import EngineSettings
from ..missed_detector import run_missed_sweep
from ..registry import register
from ..scheduler import MISSED_SWEEP_JOB_TYPE

logger = logging.getLogger(__name__)


@register(MISSED_SWEEP_JOB_TYPE, commits_own_work=True)
async def handle_missed_sweep(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    settings = EngineSettings.from_env()
    report = await run_missed_sweep(
        conn,
        batch_size=settings.sweep_batch_size,
        budget_seconds=settings.sweep_budget_seconds,
    )
    if payload.get("missed_runs"):
        logger.info("Missed sweep caught up %d skipped runs", payload["missed_runs"])
    logger.info("%s completed (report=%s)", MISSED_SWEEP_JOB_TYPE, report.to_dict())
