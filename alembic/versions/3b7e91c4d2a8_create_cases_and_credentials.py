"""create cases and credentials

Revision ID: 3b7e91c4d2a8
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7e91c4d2a8"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "cases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("office_id", sa.String(length=128), nullable=False),
        sa.Column("case_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("submitted_at", sa.BigInteger(), nullable=False),
        sa.Column("verified_by", sa.String(length=128), nullable=True),
        sa.Column("verified_at", sa.BigInteger(), nullable=True),
        sa.Column("approved_by", sa.String(length=128), nullable=True),
        sa.Column("approved_at", sa.BigInteger(), nullable=True),
        sa.Column("rejected_reason", sa.Text(), nullable=True),
        sa.Column("rejected_at", sa.BigInteger(), nullable=True),
        sa.Column("test_scheduled_at", sa.BigInteger(), nullable=True),
        sa.Column("test_result", sa.String(length=8), nullable=True),
        sa.Column("test_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assigned_number", sa.String(length=64), nullable=True),
        sa.Column("terminated_at", sa.BigInteger(), nullable=True),
        sa.UniqueConstraint(
            "case_type", "assigned_number", name="uq_cases_type_assigned_number"
        ),
    )
    op.create_index("ix_cases_subject_id", "cases", ["subject_id"])

    op.create_table(
        "credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "case_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cases.id"),
            nullable=False,
        ),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("credential_type", sa.String(length=16), nullable=False),
        sa.Column("credential_number", sa.String(length=64), nullable=False),
        sa.Column("assigned_number", sa.String(length=64), nullable=False),
        sa.Column("issued_at", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=True),
        sa.Column(
            "public_fields_json", sa.Text(), nullable=False, server_default="{}"
        ),
        sa.Column("canonical_payload", sa.LargeBinary(), nullable=False),
        sa.Column("signature", sa.String(length=64), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="ACTIVE"
        ),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.BigInteger(), nullable=True),
        sa.UniqueConstraint("case_id", name="uq_credentials_case_id"),
        sa.UniqueConstraint(
            "credential_type", "credential_number", name="uq_credentials_type_number"
        ),
    )
    op.create_index(
        "uq_credentials_active_subject_type",
        "credentials",
        ["subject_id", "credential_type"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_index(
        "ix_credentials_status_expires_at", "credentials", ["status", "expires_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_credentials_status_expires_at", table_name="credentials")
    op.drop_index("uq_credentials_active_subject_type", table_name="credentials")
    op.drop_table("credentials")
    op.drop_index("ix_cases_subject_id", table_name="cases")
    op.drop_table("cases")
