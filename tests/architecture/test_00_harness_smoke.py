from __future__ import annotations

from pathlib import Path

from medsched_workers.registry import registered_types
from medsched_workers.scheduler import RECURRING_JOBS

import medsched_workers.handlers  # noqa: F401

REPO_ROOT = Path(__file__).resolve().parents[2]


def test_architecture_spec_folder_is_present_and_non_empty() -> None:
    spec_files = sorted(p for p in (REPO_ROOT / "tests" / "architecture").glob("test_*.py"))
    assert spec_files, "tests/architecture must contain executable contract tests"


def test_recurring_jobs_are_all_handled() -> None:
    registered = set(registered_types())
    assert {job.job_type for job in RECURRING_JOBS} <= registered
