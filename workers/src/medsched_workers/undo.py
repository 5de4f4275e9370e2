"""Undo window: a take can be reversed for a short time after it was recorded.

Eligibility is computed from timestamps on every request; nothing is
scheduled to close the window.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import ConflictError, UndoExpiredError
from .events import MedicationEvent, is_undoable
from .models import Occurrence, OccurrenceStatus
from .utils import as_utc

UNDO_WINDOW_SECONDS = 30.0


@dataclass(frozen=True)
class UndoDecision:
    eligible: bool
    elapsed_seconds: float
    window_seconds: float
    reason: str | None = None


def evaluate_undo(
    occurrence: Occurrence,
    event: MedicationEvent | None,
    now: datetime,
    window_seconds: float = UNDO_WINDOW_SECONDS,
) -> UndoDecision:
    if event is None or occurrence.status != OccurrenceStatus.TAKEN:
        return UndoDecision(False, 0.0, window_seconds, "not_taken")
    if event.id != occurrence.linked_event_id or not is_undoable(event.kind):
        return UndoDecision(False, 0.0, window_seconds, "not_undoable")

    elapsed = as_utc(now) - as_utc(event.created_at)
    # Inclusive bound: exactly 30.000 s is still inside the window.
    if elapsed > timedelta(seconds=window_seconds):
        return UndoDecision(False, elapsed.total_seconds(), window_seconds, "expired")
    return UndoDecision(True, elapsed.total_seconds(), window_seconds)


def ensure_undoable(
    occurrence: Occurrence,
    event: MedicationEvent | None,
    now: datetime,
    window_seconds: float = UNDO_WINDOW_SECONDS,
) -> UndoDecision:
    """Raise ``UndoExpiredError`` past the window, ``ConflictError`` when nothing to undo."""
    decision = evaluate_undo(occurrence, event, now, window_seconds)
    if decision.eligible:
        return decision
    details = {
        "occurrence_id": occurrence.id,
        "status": occurrence.status.value,
        "elapsed_seconds": round(decision.elapsed_seconds, 3),
        "window_seconds": window_seconds,
    }
    if decision.reason == "expired":
        raise UndoExpiredError(
            f"undo window of {window_seconds:g}s has elapsed for occurrence {occurrence.id}",
            details=details,
        )
    raise ConflictError(
        f"occurrence {occurrence.id} has no take that can be undone",
        details={**details, "reason": decision.reason},
    )


def revert_status(occurrence: Occurrence, now: datetime) -> OccurrenceStatus:
    """Back to scheduled while the grace deadline still holds, otherwise missed."""
    if as_utc(now) <= as_utc(occurrence.grace_deadline):
        return OccurrenceStatus.SCHEDULED
    return OccurrenceStatus.MISSED
