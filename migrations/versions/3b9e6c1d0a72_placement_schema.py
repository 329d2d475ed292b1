"""placement_schema

Questions, assessments, sections, writing/speaking responses, the
domain_events outbox and the student level table.

Revision ID: 3b9e6c1d0a72
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from pathlib import Path

from alembic import op
import sqlalchemy as sa


revision: str = "3b9e6c1d0a72"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _statements(schema_sql: str):
    """Split schema.sql into executable statements, dropping comment lines."""
    for statement in schema_sql.split(";"):
        lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        cleaned = "\n".join(lines).strip()
        if cleaned:
            yield cleaned


def upgrade() -> None:
    """Execute placement/db/schema.sql (CREATE ... IF NOT EXISTS throughout)."""
    schema_path = Path(__file__).resolve().parents[2] / "placement" / "db" / "schema.sql"
    for statement in _statements(schema_path.read_text()):
        op.execute(sa.text(statement))


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    for table in (
        "domain_events",
        "section_responses",
        "assessment_sections",
        "assessments",
        "assessment_questions",
        "students",
    ):
        op.execute(sa.text(f"DROP TABLE IF EXISTS {table}"))
