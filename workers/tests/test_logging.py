"""Tests for the JSON log formatter and the ambient log context."""

import json
import logging
import sys

import pytest

from medsched_workers.errors import ConflictError
from medsched_workers.logging import (
    ContextTextFormatter,
    JSONFormatter,
    current_context,
    log_context,
)


def _record(**extra):
    record = logging.LogRecord(
        name="medsched_workers.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="marked %d occurrences",
        args=(3,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formats_single_line_json():
    line = JSONFormatter().format(_record())
    entry = json.loads(line)
    assert entry["level"] == "INFO"
    assert entry["message"] == "marked 3 occurrences"
    assert entry["logger"] == "medsched_workers.test"
    assert "\n" not in line


def test_includes_prefixed_extras_only():
    entry = json.loads(
        JSONFormatter().format(
            _record(medsched_occurrence_id="occ-1", medsched_duration_ms=12.5, other="x")
        )
    )
    assert entry["medsched_occurrence_id"] == "occ-1"
    assert entry["medsched_duration_ms"] == 12.5
    assert "other" not in entry


def test_includes_exception_text():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()
    entry = json.loads(JSONFormatter().format(record))
    assert "RuntimeError: boom" in entry["exception"]
    assert "medsched_error_code" not in entry


def test_engine_errors_carry_their_code():
    try:
        raise ConflictError("version moved on")
    except ConflictError:
        record = _record()
        record.exc_info = sys.exc_info()
    entry = json.loads(JSONFormatter().format(record))
    assert entry["medsched_error_code"] == "conflict"


def test_context_fields_are_added_and_nested():
    with log_context(job_id=7, job_type="medication.missed_sweep"):
        with log_context(occurrence_id="occ-1"):
            entry = json.loads(JSONFormatter().format(_record()))
        outer = current_context()

    assert entry["medsched_job_id"] == 7
    assert entry["medsched_occurrence_id"] == "occ-1"
    assert "medsched_occurrence_id" not in outer
    assert current_context() == {}


def test_explicit_extras_override_context():
    with log_context(patient_id="p1"):
        entry = json.loads(JSONFormatter().format(_record(medsched_patient_id="p2")))
    assert entry["medsched_patient_id"] == "p2"


def test_context_is_restored_after_an_exception():
    with pytest.raises(RuntimeError):
        with log_context(patient_id="p1"):
            raise RuntimeError("boom")
    assert current_context() == {}


def test_text_formatter_appends_context():
    with log_context(patient_id="p1"):
        line = ContextTextFormatter().format(_record())
    assert line.endswith("marked 3 occurrences [patient_id=p1]")
    assert ContextTextFormatter().format(_record()).endswith("marked 3 occurrences")
