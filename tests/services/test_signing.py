from __future__ import annotations

import json
from uuid import UUID

import pytest

from credential_service.core.config import Settings
from credential_service.core.errors import SigningKeyUnavailable
from credential_service.services.signing import (
    CANONICAL_FIELDS,
    SigningKey,
    canonical_fields,
    canonicalize,
    sign,
    signatures_match,
)

CRED_ID = UUID("6f1c2b7e-0d7a-4c1e-9d2a-3b4c5d6e7f80")


def _fields(**overrides) -> dict[str, object]:
    values = dict(
        credential_id=CRED_ID,
        credential_number="MH12AB1234",
        subject_id="citizen-1",
        credential_type="VEHICLE",
        assigned_number="MH12AB1234",
        expires_at=None,
        public_fields={"chassis": "MA3EZDD1S00123456"},
    )
    values.update(overrides)
    return canonical_fields(**values)  # type: ignore[arg-type]


def _settings(signing_key: str | None) -> Settings:
    return Settings(  # type: ignore[arg-type]
        app_env="test",
        log_level="info",
        log_json=False,
        database_url=None,
        redis_url=None,
        signing_key=signing_key,
    )


# ---- canonical form ----


def test_canonical_key_order_is_fixed() -> None:
    data = canonicalize(_fields())
    assert list(json.loads(data)) == list(CANONICAL_FIELDS)


def test_canonical_form_is_compact() -> None:
    data = canonicalize(_fields())
    assert b" " not in data
    assert data.startswith(b'{"id":"6f1c2b7e-0d7a-4c1e-9d2a-3b4c5d6e7f80","number":')


def test_canonical_form_is_deterministic_across_public_key_order() -> None:
    a = canonicalize(_fields(public_fields={"b": "2", "a": "1"}))
    b = canonicalize(_fields(public_fields={"a": "1", "b": "2"}))
    assert a == b
    assert b'"public":{"a":"1","b":"2"}' in a


def test_canonical_form_keeps_non_ascii_as_utf8() -> None:
    data = canonicalize(_fields(subject_id="नागरिक-1"))
    assert "नागरिक-1".encode() in data


def test_expiry_is_an_integer_or_null() -> None:
    assert b'"expires":null' in canonicalize(_fields())
    assert b'"expires":2391000000' in canonicalize(_fields(expires_at=2_391_000_000))
    with pytest.raises(TypeError):
        _fields(expires_at=2_391_000_000.0)
    with pytest.raises(TypeError):
        _fields(expires_at=True)


def test_canonicalize_rejects_missing_or_extra_fields() -> None:
    fields = _fields()
    del fields["public"]
    with pytest.raises(ValueError, match="missing"):
        canonicalize(fields)
    with pytest.raises(ValueError, match="unexpected"):
        canonicalize({**_fields(), "extra": 1})


# ---- keyed digest ----


def test_signature_is_64_lowercase_hex(signing_key: SigningKey) -> None:
    sig = sign(canonicalize(_fields()), signing_key)
    assert len(sig) == 64
    assert sig == sig.lower()
    int(sig, 16)


def test_signature_depends_on_key() -> None:
    data = canonicalize(_fields())
    a = sign(data, SigningKey(secret=b"a" * 32))
    b = sign(data, SigningKey(secret=b"b" * 32))
    assert a != b


def test_signatures_match(signing_key: SigningKey) -> None:
    sig = sign(canonicalize(_fields()), signing_key)
    assert signatures_match(sig, sig)
    assert not signatures_match(sig, sig[:-1] + ("0" if sig[-1] != "0" else "1"))
    assert not signatures_match(sig, sig.upper())
    assert not signatures_match(sig, sig[:32])
    assert not signatures_match(sig, None)
    assert not signatures_match(sig, "é" * 64)


# ---- key handling ----


def test_short_key_is_rejected() -> None:
    with pytest.raises(SigningKeyUnavailable):
        SigningKey(secret=b"too-short")


def test_key_repr_is_redacted(signing_key: SigningKey) -> None:
    assert "test-only" not in repr(signing_key)
    assert "redacted" in repr(signing_key)


def test_key_from_settings() -> None:
    key = SigningKey.from_settings(_settings("k" * 48))
    assert key.secret == b"k" * 48


def test_missing_key_in_settings_is_fatal() -> None:
    with pytest.raises(SigningKeyUnavailable, match="not configured"):
        SigningKey.from_settings(_settings(None))
