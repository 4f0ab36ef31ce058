"""Canonical payloads and keyed digests for issued credentials.

Both sides of the protocol (the Issuer at signing time, the Verifier at
scan time) go through ``canonicalize`` and ``sign`` in this module, so the
bytes that get signed are produced by exactly one function.

CANONICAL FORM
----------------
A compact JSON object with a FIXED key order:

  {"id":..,"number":..,"subject":..,"type":..,"assigned":..,"expires":..,"public":{..}}

  - keys in the order of CANONICAL_FIELDS (never sorted, never reordered)
  - ``public`` keys sorted, values strings
  - separators (",", ":") — no whitespace anywhere
  - ensure_ascii=False + UTF-8 — one byte sequence per string
  - ``expires`` is an integer epoch second or null, never a float

Two callers canonicalizing the same logical data get byte-identical
output; anything else makes verification unreliable.

KEYED DIGEST
--------------
HMAC-SHA256 over the canonical bytes, rendered as 64 lowercase hex
characters.  Verification of a shared-secret digest requires the secret,
so only parties holding the key can verify.  Comparison is constant-time
(hmac.compare_digest) so response timing does not leak how many leading
characters of a forged signature were right.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from uuid import UUID

from credential_service.core.config import Settings
from credential_service.core.errors import SigningKeyUnavailable

CANONICAL_FIELDS = ("id", "number", "subject", "type", "assigned", "expires", "public")

SIGNATURE_HEX_LENGTH = 64

# HMAC-SHA256 keys shorter than the digest size weaken the MAC.
MIN_KEY_BYTES = 32


@dataclass(frozen=True, slots=True)
class SigningKey:
    """The process-wide HMAC secret, passed explicitly to Issuer and Verifier."""

    secret: bytes = field(repr=False)
    key_id: str = "default"

    def __post_init__(self) -> None:
        if len(self.secret) < MIN_KEY_BYTES:
            raise SigningKeyUnavailable(
                f"signing key must be at least {MIN_KEY_BYTES} bytes"
            )

    def __repr__(self) -> str:
        return f"SigningKey(key_id={self.key_id!r}, secret=<redacted>)"

    @staticmethod
    def from_settings(settings: Settings) -> SigningKey:
        """Fail fast when CREDENTIAL_SIGNING_KEY is missing or too short."""
        if not settings.signing_key:
            raise SigningKeyUnavailable("CREDENTIAL_SIGNING_KEY is not configured")
        return SigningKey(secret=settings.signing_key.encode("utf-8"))


def canonical_fields(
    *,
    credential_id: UUID | str,
    credential_number: str,
    subject_id: str,
    credential_type: str,
    assigned_number: str,
    expires_at: int | None,
    public_fields: Mapping[str, str],
) -> dict[str, object]:
    """Assemble the signed field set in CANONICAL_FIELDS order."""
    if expires_at is not None and (
        isinstance(expires_at, bool) or not isinstance(expires_at, int)
    ):
        raise TypeError("expires_at must be an integer epoch second or None")
    return {
        "id": str(credential_id),
        "number": credential_number,
        "subject": subject_id,
        "type": str(credential_type),
        "assigned": assigned_number,
        "expires": expires_at,
        "public": {k: public_fields[k] for k in sorted(public_fields)},
    }


def canonicalize(fields: Mapping[str, object]) -> bytes:
    missing = [name for name in CANONICAL_FIELDS if name not in fields]
    if missing:
        raise ValueError(f"canonical payload missing fields: {missing}")
    extra = set(fields) - set(CANONICAL_FIELDS)
    if extra:
        raise ValueError(f"unexpected canonical fields: {sorted(extra)}")

    ordered = {name: fields[name] for name in CANONICAL_FIELDS}
    return json.dumps(
        ordered,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def sign(data: bytes, key: SigningKey) -> str:
    return hmac.new(key.secret, data, hashlib.sha256).hexdigest()


def signatures_match(expected: str, claimed: str | None) -> bool:
    if not claimed or len(claimed) != SIGNATURE_HEX_LENGTH:
        return False
    # compare_digest on str requires ASCII; a non-ASCII claim can't match anyway.
    if not claimed.isascii():
        return False
    return hmac.compare_digest(expected, claimed)
