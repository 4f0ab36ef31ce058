from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from uuid import UUID

from credential_service.models.case import CaseType


class CredentialType(StrEnum):
    VEHICLE = "VEHICLE"  # registration certificate
    LICENSE = "LICENSE"  # driving license

    @staticmethod
    def for_case(case_type: CaseType) -> CredentialType:
        return CredentialType(case_type.value)


class CredentialStatus(StrEnum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True, slots=True)
class Credential:
    """Issued, signed artifact — exactly one per approved case."""

    id: UUID
    case_id: UUID
    subject_id: str
    credential_type: CredentialType
    credential_number: str
    issued_at: int
    expires_at: int | None  # None = open-ended (registration)
    canonical_payload: bytes
    signature: str  # lowercase hex HMAC-SHA256
    assigned_number: str
    public_fields: dict[str, str] = field(default_factory=dict)
    status: CredentialStatus = CredentialStatus.ACTIVE
    status_reason: str | None = None
    updated_at: int | None = None

    def is_expired_at(self, now: int) -> bool:
        return self.expires_at is not None and now > self.expires_at
