"""Bind split_payment_transactions rows to their payment transaction.

Revision ID: 002_split_transaction
Revises: 001_payment_engine
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_split_transaction"
down_revision = "001_payment_engine"
branch_labels = None
depends_on = None


def upgrade() -> None:
    sql_path = (
        Path(__file__).resolve().parents[1] / "sql" / "002_split_transaction.sql"
    )
    sql = sql_path.read_text(encoding="utf-8")
    conn = op.get_bind()
    conn.exec_driver_sql(sql)


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(
        """
        DROP INDEX IF EXISTS uq_split_payment_transaction;
        ALTER TABLE split_payment_transactions DROP COLUMN IF EXISTS transaction_id;
        """
    )
