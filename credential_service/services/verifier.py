"""Verifier — classify a scanned credential payload.

A checkpoint officer scans the QR code on a registration certificate or
license and gets back one of:

  VALID      signature checks out and the credential is in force
  TAMPERED   anything about the payload is off (bad JSON, unknown number,
             a changed field, a signature from another key)
  REVOKED    genuine, but withdrawn (scrapped vehicle, revoked license)
  SUSPENDED  genuine, temporarily not in force
  EXPIRED    genuine, past its validity period

These are classifications, not errors.  The scanner shows each one
distinctly; nothing here raises for a bad payload.

HOW THE SIGNATURE IS RECHECKED
--------------------------------
The payload only carries type, number, signature and public fields.  The
rest of the signed field set (credential id, subject, assigned number,
expiry) comes from the registry record found by (type, number).  The
claimed values are combined with the stored ones, canonicalized exactly
as at issuance, signed with the active key and compared in constant
time.  Changing any claimed field changes the canonical bytes and so the
expected signature.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from credential_service.core import metrics
from credential_service.models.credential import (
    Credential,
    CredentialStatus,
    CredentialType,
)
from credential_service.models.submission import EmbeddedPayload
from credential_service.repos.registry import CaseRegistry
from credential_service.services.issuer import Clock, canonical_payload_for, utc_now
from credential_service.services.signing import (
    SigningKey,
    canonical_fields,
    canonicalize,
    sign,
    signatures_match,
)

logger = logging.getLogger(__name__)


class VerificationOutcome(StrEnum):
    VALID = "VALID"
    TAMPERED = "TAMPERED"
    REVOKED = "REVOKED"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True, slots=True)
class VerificationResult:
    outcome: VerificationOutcome
    checked_at: int
    credential_id: UUID | None = None
    credential_number: str | None = None
    credential_type: CredentialType | None = None
    expires_at: int | None = None

    @property
    def valid(self) -> bool:
        return self.outcome is VerificationOutcome.VALID


class Verifier:
    """Read-only: never writes to the registry."""

    def __init__(
        self, key: SigningKey, registry: CaseRegistry, *, clock: Clock = utc_now
    ) -> None:
        self._key = key
        self._registry = registry
        self._clock = clock

    async def verify(
        self,
        claimed_payload: dict[str, Any] | str | bytes,
        claimed_signature: str | None = None,
    ) -> VerificationResult:
        now = self._clock()
        payload = _parse(claimed_payload)
        if payload is None:
            return self._classified(VerificationOutcome.TAMPERED, now, None)

        signature = claimed_signature if claimed_signature is not None else payload.sig
        try:
            public = payload.public_fields()
        except ValueError:
            logger.debug("Payload carries a non-string public field")
            return self._classified(VerificationOutcome.TAMPERED, now, None)

        credential_type = CredentialType(payload.type)
        credential = await self._registry.get_credential_by_number(
            credential_type, payload.number
        )
        if credential is None or signature is None:
            return self._classified(VerificationOutcome.TAMPERED, now, None)

        expected = sign(
            canonicalize(
                canonical_fields(
                    credential_id=credential.id,
                    credential_number=payload.number,
                    subject_id=credential.subject_id,
                    credential_type=credential_type,
                    assigned_number=credential.assigned_number,
                    expires_at=credential.expires_at,
                    public_fields=public,
                )
            ),
            self._key,
        )
        if not signatures_match(expected, signature):
            return self._classified(VerificationOutcome.TAMPERED, now, credential)

        if not self._record_intact(credential):
            # The scan matched but the stored record did not: the row was
            # edited outside the issuer, or signed under another key.
            logger.error("Stored credential failed its integrity check")
            return self._classified(VerificationOutcome.TAMPERED, now, credential)

        return self._classified(_status_outcome(credential, now), now, credential)

    def _record_intact(self, credential: Credential) -> bool:
        payload = canonical_payload_for(credential)
        if payload != credential.canonical_payload:
            return False
        return signatures_match(sign(payload, self._key), credential.signature)

    def _classified(
        self,
        outcome: VerificationOutcome,
        now: int,
        credential: Credential | None,
    ) -> VerificationResult:
        metrics.VERIFICATIONS.labels(outcome=outcome.value).inc()
        logger.info("Verification %s", outcome.value, extra={"outcome": outcome.value})
        if credential is None:
            return VerificationResult(outcome=outcome, checked_at=now)
        return VerificationResult(
            outcome=outcome,
            checked_at=now,
            credential_id=credential.id,
            credential_number=credential.credential_number,
            credential_type=credential.credential_type,
            expires_at=credential.expires_at,
        )


def _parse(claimed: dict[str, Any] | str | bytes) -> EmbeddedPayload | None:
    try:
        if isinstance(claimed, (str, bytes)):
            claimed = json.loads(claimed)
        return EmbeddedPayload.model_validate(claimed)
    except (ValueError, ValidationError):
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors.
        logger.debug("Unparseable credential payload")
        return None


def _status_outcome(credential: Credential, now: int) -> VerificationOutcome:
    if credential.status is CredentialStatus.REVOKED:
        return VerificationOutcome.REVOKED
    if credential.status is CredentialStatus.SUSPENDED:
        return VerificationOutcome.SUSPENDED
    if credential.status is CredentialStatus.EXPIRED or credential.is_expired_at(now):
        return VerificationOutcome.EXPIRED
    return VerificationOutcome.VALID
