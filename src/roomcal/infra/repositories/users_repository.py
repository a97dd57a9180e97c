"""Users repository - identity rows and role assignment."""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

_USER_COLUMNS = ("id", "external_subject", "email", "name", "role", "is_admin",
                 "permissions", "department")


def _row_to_user(row: tuple[Any, ...]) -> dict[str, Any]:
    user = dict(zip(_USER_COLUMNS, row))
    user["id"] = str(user["id"])
    if isinstance(user.get("permissions"), str):
        user["permissions"] = json.loads(user["permissions"])
    return user


def get_user_by_subject(cur: PgCursor, external_subject: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {', '.join(_USER_COLUMNS)} FROM users WHERE external_subject = %s",
        (external_subject,),
    )
    row = cur.fetchone()
    return _row_to_user(row) if row is not None else None


def list_users(cur: PgCursor) -> list[dict[str, Any]]:
    cur.execute(f"SELECT {', '.join(_USER_COLUMNS)} FROM users ORDER BY email")
    return [_row_to_user(row) for row in cur.fetchall()]


def set_user_role(
    cur: PgCursor,
    *,
    user_id: str,
    role: str,
    department: str | None = None,
) -> dict[str, Any] | None:
    """Assign an explicit role (and optional department).

    Returns:
        Updated user row, or None if the user does not exist.
    """
    cur.execute(
        f"""
        UPDATE users
        SET role = %s, department = %s, updated_at = now()
        WHERE id = %s
        RETURNING {', '.join(_USER_COLUMNS)}
        """,
        (role, department, user_id),
    )
    row = cur.fetchone()
    return _row_to_user(row) if row is not None else None
