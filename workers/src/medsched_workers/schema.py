"""Schema bootstrap, applied on worker startup before any job is claimed."""

import logging
from pathlib import Path
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def load_schema_sql() -> str:
    return SCHEMA_PATH.read_text(encoding="utf-8")


async def ensure_schema(conn: psycopg.AsyncConnection[Any]) -> None:
    """Apply the idempotent DDL. No parameters, so multiple statements are allowed."""
    await conn.execute(load_schema_sql())
    await conn.commit()
    logger.info("Schema ensured (%s)", SCHEMA_PATH.name)
