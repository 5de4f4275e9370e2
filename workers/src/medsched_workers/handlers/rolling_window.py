"""Daily extension of every active command's materialization horizon."""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from ..calendar import maintain_rolling_window
from ..commands import list_active_commands
from ..config import EngineSettings
from ..registry import register
from ..scheduler import ROLLING_WINDOW_JOB_TYPE
from ..utils import utc_now

logger = logging.getLogger(__name__)


@register(ROLLING_WINDOW_JOB_TYPE, commits_own_work=True)
async def handle_rolling_window(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    settings = EngineSettings.from_env()
    now = utc_now()
    # Listing commits on its own so each command below is a separate commit
    async with conn.transaction():
        commands = await list_active_commands(conn, payload.get("patient_id"))

    created = 0
    failed = 0
    for command in commands:
        try:
            async with conn.transaction():
                occurrences = await maintain_rolling_window(
                    conn,
                    command,
                    now=now,
                    horizon_days=settings.horizon_days,
                    boundaries=settings.boundaries,
                    multiplier_policy=settings.multiplier_policy,
                )
        except psycopg.OperationalError:
            raise
        except Exception:
            failed += 1
            logger.exception(
                "Rolling window failed for command %s",
                command.id,
                extra={"medsched_command_id": command.id},
            )
            continue
        created += len(occurrences)

    logger.info(
        "%s completed (commands=%d, created=%d, failed=%d)",
        ROLLING_WINDOW_JOB_TYPE,
        len(commands),
        created,
        failed,
    )
