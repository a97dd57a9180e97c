"""Add append-only reservation_status_history.

Revision ID: 002_status_history
Revises: 001_initial_schema
Create Date: 2026-10-19
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


revision = "002_status_history"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "002_status_history.sql"
    conn = op.get_bind()
    conn.exec_driver_sql(sql_path.read_text(encoding="utf-8"))


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql("DROP TABLE IF EXISTS reservation_status_history;")
    conn.exec_driver_sql("DROP FUNCTION IF EXISTS reservation_status_history_append_only();")
