"""Locations repository - reservable rooms and their display names."""

from __future__ import annotations

from typing import Iterable

from psycopg2.extensions import cursor as PgCursor


def list_locations(cur: PgCursor, *, reservable_only: bool = True) -> list[dict]:
    condition = "WHERE is_reservable = true" if reservable_only else ""
    cur.execute(
        f"""
        SELECT id, name, display_name, building, capacity, is_reservable
        FROM locations
        {condition}
        ORDER BY display_name
        """
    )
    return [
        {
            "id": str(row[0]),
            "name": row[1],
            "display_name": row[2],
            "building": row[3],
            "capacity": row[4],
            "is_reservable": row[5],
        }
        for row in cur.fetchall()
    ]


def get_location_display_map(cur: PgCursor, location_ids: Iterable[str]) -> dict[str, str]:
    """Map location id -> display name for the given ids.

    Unknown ids are simply absent from the result.
    """
    ids = sorted({str(i) for i in location_ids if i})
    if not ids:
        return {}
    cur.execute(
        """
        SELECT id, COALESCE(display_name, name)
        FROM locations
        WHERE id::text = ANY(%s)
        """,
        (ids,),
    )
    return {str(row[0]): row[1] for row in cur.fetchall()}
