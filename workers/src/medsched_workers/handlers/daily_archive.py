"""Nightly per-patient summaries, event archival and occurrence pruning."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import psycopg

from ..archiver import run_daily_archive
from ..config import EngineSettings
from ..registry import register
from ..scheduler import DAILY_ARCHIVE_JOB_TYPE

logger = logging.getLogger(__name__)


@register(DAILY_ARCHIVE_JOB_TYPE, commits_own_work=True)
async def handle_daily_archive(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    settings = EngineSettings.from_env()
    day = date.fromisoformat(payload["day"]) if payload.get("day") else None
    report = await run_daily_archive(
        conn,
        day=day,
        retention_days=settings.archive_retention_days,
        catch_up_days=settings.archive_catch_up_days,
        budget_seconds=settings.archive_budget_seconds,
    )
    logger.info("%s completed (report=%s)", DAILY_ARCHIVE_JOB_TYPE, report.to_dict())
