"""Payment engine tables: transactions, refunds, refund audit trail, splits.

Revision ID: 001_payment_engine
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_payment_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    sql_path = (
        Path(__file__).resolve().parents[1] / "sql" / "001_payment_engine.sql"
    )
    sql = sql_path.read_text(encoding="utf-8")
    conn = op.get_bind()
    conn.exec_driver_sql(sql)


def downgrade() -> None:
    conn = op.get_bind()
    # bookings/users/service_providers belong to other services; left in place
    conn.exec_driver_sql(
        """
        DROP TABLE IF EXISTS split_payment_transactions;
        DROP TABLE IF EXISTS refund_audit_logs;
        DROP TABLE IF EXISTS refunds;
        DROP TABLE IF EXISTS payment_transactions;
        """
    )
