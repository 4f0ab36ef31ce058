from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure repo root is on sys.path so `import credential_service` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credential_service.repos.registry import InMemoryCaseRegistry  # noqa: E402
from credential_service.services.issuer import CredentialIssuer  # noqa: E402
from credential_service.services.notifications import (  # noqa: E402
    NotificationDispatcher,
)
from credential_service.services.signing import SigningKey  # noqa: E402
from credential_service.services.task_queue import (  # noqa: E402
    InMemoryTaskQueue,
    task_queue,
)
from credential_service.services.verifier import Verifier  # noqa: E402
from credential_service.services.workflow import WorkflowEngine  # noqa: E402

TEST_SECRET = b"test-only-signing-key-0123456789abcdef"

# 2025-10-09T08:53:20Z
START = 1_760_000_000


class FakeClock:
    """Deterministic epoch-second clock shared by issuer, engine and verifier."""

    def __init__(self, now: int = START) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def vehicle_fields(**overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "vehicleType": "car",
        "make": "Maruti",
        "model": "Swift",
        "year": 2022,
        "color": "white",
        "engineNumber": "k12mn1234567",
        "chassisNumber": "ma3ezdd1s00123456",
        "fuelType": "petrol",
    }
    fields.update(overrides)
    return fields


def license_fields(**overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {"licenseType": "LMV"}
    fields.update(overrides)
    return fields


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    """Clear the module-level task queue between tests."""
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging() replaces root handlers; put them back for caplog."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signing_key() -> SigningKey:
    return SigningKey(secret=TEST_SECRET, key_id="test")


@pytest.fixture
def registry() -> InMemoryCaseRegistry:
    return InMemoryCaseRegistry()


@pytest.fixture
def queue() -> InMemoryTaskQueue:
    return InMemoryTaskQueue()


@pytest.fixture
def issuer(
    signing_key: SigningKey, registry: InMemoryCaseRegistry, clock: FakeClock
) -> CredentialIssuer:
    return CredentialIssuer(signing_key, registry, clock=clock)


@pytest.fixture
def engine(
    registry: InMemoryCaseRegistry,
    issuer: CredentialIssuer,
    queue: InMemoryTaskQueue,
    clock: FakeClock,
) -> WorkflowEngine:
    return WorkflowEngine(
        registry, issuer, NotificationDispatcher(queue), clock=clock
    )


@pytest.fixture
def verifier(
    signing_key: SigningKey, registry: InMemoryCaseRegistry, clock: FakeClock
) -> Verifier:
    return Verifier(signing_key, registry, clock=clock)
