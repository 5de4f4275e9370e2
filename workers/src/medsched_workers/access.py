"""Family-access authorization consulted before every engine call."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row

from .errors import AccessDeniedError


class Action(StrEnum):
    VIEW = "view"
    EDIT = "edit"
    MARK_TAKEN = "mark_taken"


_GRANT_COLUMN = {
    Action.VIEW: "can_view",
    Action.EDIT: "can_edit",
    Action.MARK_TAKEN: "can_mark_taken",
}


class FamilyAccessService(Protocol):
    async def authorize(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        patient_id: str,
        action: Action,
    ) -> None: ...


class AllowAllAccess:
    """For trusted internal callers (background jobs, tests)."""

    async def authorize(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        patient_id: str,
        action: Action,
    ) -> None:
        return None


class FamilyAccessTable:
    """Patients act on their own data; others need an active ``family_access`` grant."""

    async def authorize(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        patient_id: str,
        action: Action,
    ) -> None:
        if principal_id == patient_id:
            return
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT can_view, can_edit, can_mark_taken
                FROM family_access
                WHERE patient_id = %s AND principal_id = %s AND status = 'active'
                """,
                (patient_id, principal_id),
            )
            grant = await cur.fetchone()
        if grant is None or not grant[_GRANT_COLUMN[action]]:
            raise AccessDeniedError(
                f"{principal_id} may not {action.value} for patient {patient_id}",
                details={"principal_id": principal_id, "patient_id": patient_id, "action": action.value},
            )
