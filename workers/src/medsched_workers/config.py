import json
import logging
import os
from dataclasses import dataclass

from .time_buckets import DEFAULT_BOUNDARIES, BucketBoundaries, parse_boundaries

logger = logging.getLogger(__name__)

MULTIPLIER_POLICIES = ("holiday_wins", "stack", "max")


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=(
                os.environ.get("MEDSCHED_WORKER_LISTEN_DATABASE_URL") or database_url
            ),
            poll_interval_seconds=float(os.environ.get("MEDSCHED_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("MEDSCHED_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("MEDSCHED_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("MEDSCHED_HEALTH_PORT", "8081")),
            log_format=os.environ.get("MEDSCHED_LOG_FORMAT", "json"),
        )


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


def _env_boundaries(name: str) -> BucketBoundaries:
    """Parse ``{"morning": "HH:MM", ...}`` JSON; invalid input keeps the defaults."""
    raw = os.environ.get(name)
    if not raw:
        return DEFAULT_BOUNDARIES
    try:
        return parse_boundaries(json.loads(raw))
    except (AttributeError, TypeError, ValueError):
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return DEFAULT_BOUNDARIES


@dataclass(frozen=True)
class EngineSettings:
    """Scheduling-engine tunables. Defaults match the documented behavior."""

    horizon_days: int = 7
    sweep_batch_size: int = 50
    sweep_budget_seconds: float = 60.0
    archive_retention_days: int = 30
    archive_budget_seconds: float = 120.0
    undo_window_seconds: float = 30.0
    correction_window_hours: int = 24
    timing_threshold_minutes: int = 30
    multiplier_policy: str = "holiday_wins"
    default_timezone: str = "UTC"
    transaction_attempts: int = 3
    archive_catch_up_days: int = 7
    boundaries: BucketBoundaries = DEFAULT_BOUNDARIES

    @classmethod
    def from_env(cls) -> "EngineSettings":
        policy = os.environ.get("MEDSCHED_MULTIPLIER_POLICY", "holiday_wins").strip().lower()
        if policy not in MULTIPLIER_POLICIES:
            policy = "holiday_wins"
        return cls(
            horizon_days=_env_int("MEDSCHED_HORIZON_DAYS", 7),
            sweep_batch_size=_env_int("MEDSCHED_SWEEP_BATCH_SIZE", 50),
            sweep_budget_seconds=_env_float("MEDSCHED_SWEEP_BUDGET_SECONDS", 60.0, 1.0),
            archive_retention_days=_env_int("MEDSCHED_ARCHIVE_RETENTION_DAYS", 30),
            archive_budget_seconds=_env_float("MEDSCHED_ARCHIVE_BUDGET_SECONDS", 120.0, 1.0),
            undo_window_seconds=_env_float("MEDSCHED_UNDO_WINDOW_SECONDS", 30.0),
            correction_window_hours=_env_int("MEDSCHED_CORRECTION_WINDOW_HOURS", 24),
            timing_threshold_minutes=_env_int("MEDSCHED_TIMING_THRESHOLD_MINUTES", 30, 0),
            multiplier_policy=policy,
            default_timezone=os.environ.get("MEDSCHED_DEFAULT_TIMEZONE", "UTC") or "UTC",
            transaction_attempts=_env_int("MEDSCHED_TRANSACTION_ATTEMPTS", 3),
            archive_catch_up_days=_env_int("MEDSCHED_ARCHIVE_CATCH_UP_DAYS", 7),
            boundaries=_env_boundaries("MEDSCHED_BUCKET_BOUNDARIES"),
        )
