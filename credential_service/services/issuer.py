"""Credential Issuer — turns an approved case into a signed credential.

ISSUANCE, STEP BY STEP
------------------------
  1. Decide the credential number: the number the approver assigned to the
     case (registration number, DL number), or a generated one.
  2. Compute expiry: licenses are valid for a fixed number of years;
     registrations are open-ended (valid until scrapped or revoked).
  3. Canonicalize the signed field set and sign it (services/signing.py).
  4. Persist through the registry transaction the caller opened, so the
     case's APPROVED write and the credential insert commit together.

The registry enforces uniqueness.  A generated number that collides is
regenerated (bounded); an assigned number that collides is a Conflict,
since silently picking another number would diverge from what the
officer wrote on the case file.

IDEMPOTENCY
-------------
``issue`` on a case that already has a credential returns that credential.
Callers that time out and retry get the same artifact back, never a second
one.  ``issue_for_case`` outside an approval follows the same rule.
"""

from __future__ import annotations

import base64
import datetime
import io
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import replace
from typing import Any
from uuid import UUID, uuid4

import qrcode
from qrcode.image.pure import PyPNGImage

from credential_service.core import metrics
from credential_service.core.config import Settings
from credential_service.core.errors import (
    Conflict,
    DuplicateAssignedNumber,
    InvalidTransition,
    NotFound,
)
from credential_service.models.case import Case, CaseType
from credential_service.models.credential import (
    Credential,
    CredentialStatus,
    CredentialType,
)
from credential_service.repos.registry import CaseRegistry, RegistryTransaction
from credential_service.services.signing import (
    SigningKey,
    canonical_fields,
    canonicalize,
    sign,
    signatures_match,
)
from credential_service.services.transitions import CREDENTIALED

logger = logging.getLogger(__name__)

Clock = Callable[[], int]

NUMBER_PREFIXES = {
    CredentialType.VEHICLE: "RC",
    CredentialType.LICENSE: "DL",
}

DEFAULT_LICENSE_VALIDITY_YEARS = 20
DEFAULT_NUMBER_ATTEMPTS = 5

PNG_DATA_URL_PREFIX = "data:image/png;base64,"
QR_BOX_SIZE = 6
QR_BORDER = 4  # quiet zone, in modules


def utc_now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


def add_years(epoch: int, years: int) -> int:
    """Same calendar day ``years`` later; Feb 29 falls back to Feb 28."""
    start = datetime.datetime.fromtimestamp(epoch, datetime.UTC)
    try:
        end = start.replace(year=start.year + years)
    except ValueError:
        end = start.replace(year=start.year + years, day=28)
    return int(end.timestamp())


def generate_credential_number(credential_type: CredentialType) -> str:
    """Time-based prefix plus random suffix, e.g. DL17394560001234817."""
    millis = int(datetime.datetime.now(datetime.UTC).timestamp() * 1000)
    suffix = f"{secrets.randbelow(10_000):04d}"
    return f"{NUMBER_PREFIXES[credential_type]}{millis}{suffix}"


def public_fields_for(case: Case) -> dict[str, str]:
    """Type-specific fields printed on the credential and embedded in its payload."""
    if case.case_type is CaseType.VEHICLE:
        return {"chassis": str(case.details["chassis_number"])}
    return {"class": str(case.details.get("license_type", "LMV"))}


def canonical_payload_for(credential: Credential) -> bytes:
    return canonicalize(
        canonical_fields(
            credential_id=credential.id,
            credential_number=credential.credential_number,
            subject_id=credential.subject_id,
            credential_type=credential.credential_type,
            assigned_number=credential.assigned_number,
            expires_at=credential.expires_at,
            public_fields=credential.public_fields,
        )
    )


def embedded_payload(credential: Credential) -> dict[str, str]:
    """The JSON object a relying party scans: type, number, sig, public fields."""
    payload = {
        "type": credential.credential_type.value,
        "number": credential.credential_number,
        "sig": credential.signature,
    }
    payload.update(credential.public_fields)
    return payload


def encode_payload(credential: Credential) -> str:
    """Compact JSON string placed in the credential's QR code."""
    return json.dumps(
        embedded_payload(credential), separators=(",", ":"), ensure_ascii=False
    )


def encode_qr(credential: Credential) -> str:
    """PNG data URL of a QR code carrying ``encode_payload(credential)``.

    Rendered with the pypng backend; Pillow is not required.
    """
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=QR_BOX_SIZE,
        border=QR_BORDER,
        image_factory=PyPNGImage,
    )
    qr.add_data(encode_payload(credential))
    qr.make(fit=True)
    buffer = io.BytesIO()
    qr.make_image().save(buffer)
    return PNG_DATA_URL_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")


class CredentialIssuer:
    def __init__(
        self,
        key: SigningKey,
        registry: CaseRegistry,
        *,
        clock: Clock = utc_now,
        license_validity_years: int = DEFAULT_LICENSE_VALIDITY_YEARS,
        max_number_attempts: int = DEFAULT_NUMBER_ATTEMPTS,
        number_generator: Callable[[CredentialType], str] = generate_credential_number,
    ) -> None:
        self._key = key
        self._registry = registry
        self._clock = clock
        self._license_validity_years = license_validity_years
        self._max_number_attempts = max_number_attempts
        self._generate_number = number_generator

    @classmethod
    def from_settings(
        cls, settings: Settings, key: SigningKey, registry: CaseRegistry, **kwargs
    ) -> CredentialIssuer:
        return cls(
            key,
            registry,
            license_validity_years=settings.license_validity_years,
            max_number_attempts=settings.credential_number_attempts,
            **kwargs,
        )

    @property
    def key(self) -> SigningKey:
        return self._key

    def validity_for(self, credential_type: CredentialType) -> int | None:
        """Validity in years, or None for open-ended credentials."""
        if credential_type is CredentialType.LICENSE:
            return self._license_validity_years
        return None

    def sign_credential(self, credential: Credential) -> Credential:
        """Return ``credential`` with canonical payload and signature recomputed."""
        payload = canonical_payload_for(credential)
        return replace(
            credential, canonical_payload=payload, signature=sign(payload, self._key)
        )

    def has_valid_signature(self, credential: Credential) -> bool:
        """Stored signature matches stored payload under the active key."""
        expected = sign(credential.canonical_payload, self._key)
        if not signatures_match(expected, credential.signature):
            return False
        return credential.canonical_payload == canonical_payload_for(credential)

    async def issue(self, tx: RegistryTransaction, case: Case) -> Credential:
        """Create and persist the credential for an APPROVED case within ``tx``."""
        existing = await tx.get_credential_by_case(case.id)
        if existing is not None:
            logger.info(
                "Case already credentialed, returning credential=%s", existing.id
            )
            return existing

        if case.assigned_number is None:
            raise ValueError("an approved case must carry an assigned number")

        credential_type = CredentialType.for_case(case.case_type)
        now = self._clock()
        years = self.validity_for(credential_type)
        draft = Credential(
            id=uuid4(),
            case_id=case.id,
            subject_id=case.subject_id,
            credential_type=credential_type,
            credential_number=case.assigned_number,
            assigned_number=case.assigned_number,
            issued_at=now,
            expires_at=add_years(now, years) if years is not None else None,
            canonical_payload=b"",
            signature="",
            public_fields=public_fields_for(case),
            updated_at=now,
        )
        credential = self.sign_credential(draft)
        await tx.insert_credential(credential)

        metrics.CREDENTIALS_ISSUED.labels(credential_type=credential_type.value).inc()
        logger.info(
            "Issued %s credential=%s number=%s sig=%s…",
            credential_type.value,
            credential.id,
            credential.credential_number,
            credential.signature[:8],
        )
        return credential

    async def approve_with_number(
        self,
        tx: RegistryTransaction,
        case: Case,
        supplied: str | None,
        **fields: Any,
    ) -> Case | None:
        """Conditionally write APPROVED plus a unique assigned number.

        Returns None when the case's status changed underneath us (lost race).
        A supplied number is tried once; a collision is DuplicateAssignedNumber.
        Generated numbers are retried up to ``max_number_attempts`` times.
        """
        if supplied is not None:
            return await tx.conditional_update(
                case.id, case.status, assigned_number=supplied, **fields
            )

        credential_type = CredentialType.for_case(case.case_type)
        for attempt in range(1, self._max_number_attempts + 1):
            number = self._generate_number(credential_type)
            try:
                return await tx.conditional_update(
                    case.id, case.status, assigned_number=number, **fields
                )
            except DuplicateAssignedNumber:
                metrics.REGISTRY_CONFLICTS.labels(reason="credential_number").inc()
                logger.warning(
                    "Generated %s number collided (attempt %d/%d)",
                    credential_type.value,
                    attempt,
                    self._max_number_attempts,
                )
        raise Conflict(
            f"could not allocate a unique {credential_type.value} number "
            f"after {self._max_number_attempts} attempts"
        )

    async def issue_for_case(self, case_id: UUID) -> Credential:
        """Standalone (re-)issuance: idempotent for credentialed cases."""
        async with self._registry.transaction() as tx:
            case = await tx.get_case(case_id)
            if case is None:
                raise NotFound("case", case_id)
            if case.status not in CREDENTIALED:
                raise InvalidTransition(case.id, case.status.value, "issue")
            return await self.issue(tx, case)

    async def renew(self, credential_id: UUID) -> Credential:
        """Extend expiry and re-sign; the credential number never changes.

        Only ACTIVE or EXPIRED credentials with a finite validity can be
        renewed.  Expiry is set to ``now + validity``, so renewing twice on the
        same day yields the same expiry instead of stacking years.  An
        EXPIRED credential comes back ACTIVE, subject to the one-active rule.
        """
        async with self._registry.transaction() as tx:
            current = await tx.get_credential(credential_id)
            if current is None:
                raise NotFound("credential", credential_id)
            if current.status not in (CredentialStatus.ACTIVE, CredentialStatus.EXPIRED):
                raise InvalidTransition(
                    current.case_id, current.status.value, "renew_credential"
                )
            years = self.validity_for(current.credential_type)
            if years is None or current.expires_at is None:
                raise InvalidTransition(
                    current.case_id, current.status.value, "renew_credential"
                )

            now = self._clock()
            renewed = self.sign_credential(
                replace(
                    current,
                    expires_at=add_years(now, years),
                    status=CredentialStatus.ACTIVE,
                    updated_at=now,
                )
            )
            updated = await tx.update_credential(
                credential_id,
                current.status,
                expires_at=renewed.expires_at,
                canonical_payload=renewed.canonical_payload,
                signature=renewed.signature,
                status=CredentialStatus.ACTIVE,
                status_reason=None,
                updated_at=now,
            )
            if updated is None:
                metrics.REGISTRY_CONFLICTS.labels(reason="stale_status").inc()
                raise Conflict(f"credential {credential_id} changed during renewal")

        metrics.CREDENTIAL_STATUS_CHANGES.labels(
            credential_type=updated.credential_type.value, status="RENEWED"
        ).inc()
        logger.info(
            "Renewed credential=%s until %s", updated.id, updated.expires_at
        )
        return updated

