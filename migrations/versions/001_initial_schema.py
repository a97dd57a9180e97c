"""Initial schema (SQL-only).

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

SQL_FILE = Path(__file__).resolve().parents[1] / "sql" / "001_initial.sql"


def upgrade() -> None:
    # exec_driver_sql so the plpgsql DO/function bodies pass through untouched
    op.get_bind().exec_driver_sql(SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute(
        """
        DROP TABLE IF EXISTS system_settings;
        DROP TABLE IF EXISTS reservation_communications;
        DROP FUNCTION IF EXISTS reservation_communications_append_only();
        DROP TABLE IF EXISTS reservation_revisions;
        DROP TABLE IF EXISTS reservations;
        DROP TABLE IF EXISTS locations;
        DROP TABLE IF EXISTS users;
        """
    )
