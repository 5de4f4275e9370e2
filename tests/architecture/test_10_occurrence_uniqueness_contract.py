from __future__ import annotations

from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
PKG = REPO_ROOT / "workers" / "src" / "medsched_workers"
SCHEMA_SQL = PKG / "schema.sql"
CALENDAR = PKG / "calendar.py"


def test_live_slot_unique_index_excludes_cancelled_rows() -> None:
    src = SCHEMA_SQL.read_text(encoding="utf-8")
    assert "CREATE UNIQUE INDEX IF NOT EXISTS uq_medication_occurrences_live_slot" in src
    assert "ON medication_occurrences (command_id, scheduled_at)" in src
    assert "WHERE status <> 'cancelled'" in src


def test_materializer_inserts_are_conflict_tolerant() -> None:
    src = CALENDAR.read_text(encoding="utf-8")
    assert "ON CONFLICT DO NOTHING" in src
    assert "superseded_by IS NOT NULL" in src
    assert "FOR UPDATE" not in src
