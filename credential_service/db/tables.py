"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in credential_service/models/.
The domain models stay as-is — these tables are the persistence layer.
The Postgres registry converts between rows and domain dataclasses.

Constraint names are load-bearing: PgCaseRegistry maps an IntegrityError
to a typed Conflict by the name of the constraint that fired.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    BigInteger,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from credential_service.db.engine import Base

UQ_CASE_ASSIGNED_NUMBER = "uq_cases_type_assigned_number"
UQ_CREDENTIAL_CASE = "uq_credentials_case_id"
UQ_CREDENTIAL_NUMBER = "uq_credentials_type_number"
UQ_ACTIVE_CREDENTIAL = "uq_credentials_active_subject_type"


class CaseRow(Base):
    __tablename__ = "cases"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    office_id: Mapped[str] = mapped_column(String(128), nullable=False)
    case_type: Mapped[str] = mapped_column(String(16), nullable=False)  # VEHICLE|LICENSE
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    details_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    submitted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verified_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verified_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    rejected_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    test_scheduled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    test_result: Mapped[str | None] = mapped_column(String(8), nullable=True)
    test_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assigned_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    terminated_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # NULLs are distinct in a unique constraint: unapproved cases don't collide.
    __table_args__ = (
        UniqueConstraint("case_type", "assigned_number", name=UQ_CASE_ASSIGNED_NUMBER),
    )


class CredentialRow(Base):
    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False
    )
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    credential_type: Mapped[str] = mapped_column(String(16), nullable=False)
    credential_number: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_number: Mapped[str] = mapped_column(String(64), nullable=False)
    issued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    public_fields_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    canonical_payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="ACTIVE"
    )  # ACTIVE|SUSPENDED|REVOKED|EXPIRED
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint("case_id", name=UQ_CREDENTIAL_CASE),
        UniqueConstraint(
            "credential_type", "credential_number", name=UQ_CREDENTIAL_NUMBER
        ),
        # At most one ACTIVE credential per subject and type.  A partial
        # index, so any number of REVOKED/EXPIRED history rows may coexist.
        Index(
            UQ_ACTIVE_CREDENTIAL,
            "subject_id",
            "credential_type",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_credentials_status_expires_at", "status", "expires_at"),
    )
