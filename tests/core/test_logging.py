from __future__ import annotations

import logging

from credential_service.core.context import (
    OperationContextFilter,
    bind,
    operation_context,
    operation_context_var,
)
from credential_service.core.logging import _ContainerFormatter, setup_logging


def _record(level: int = logging.INFO, msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_setup_logging_sets_root_level() -> None:
    setup_logging("debug")
    assert logging.getLogger().level == logging.DEBUG

    setup_logging("warning")
    assert logging.getLogger().level == logging.WARNING


def test_setup_logging_defaults_to_info_for_unknown_level() -> None:
    setup_logging("nonexistent")
    assert logging.getLogger().level == logging.INFO


def test_setup_logging_quiets_sqlalchemy_at_debug() -> None:
    setup_logging("debug")
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_setup_logging_attaches_context_filter() -> None:
    setup_logging("info")
    handler = logging.getLogger().handlers[0]
    assert any(isinstance(f, OperationContextFilter) for f in handler.filters)


def test_formatter_excludes_location_for_info() -> None:
    output = _ContainerFormatter().format(_record())
    assert "hello" in output
    assert "[test.py:" not in output


def test_formatter_includes_location_for_warning() -> None:
    output = _ContainerFormatter().format(_record(logging.WARNING, "bad thing"))
    assert "bad thing" in output
    assert "[test.py:42]" in output


def test_filter_copies_operation_context_onto_record() -> None:
    record = _record()
    with operation_context("approve", case_id="c-1", actor="officer-7"):
        OperationContextFilter().filter(record)
    assert record.operation == "approve"  # type: ignore[attr-defined]
    assert record.case_id == "c-1"  # type: ignore[attr-defined]
    assert record.actor == "officer-7"  # type: ignore[attr-defined]
    assert record.credential_id is None  # type: ignore[attr-defined]


def test_context_is_reset_after_block() -> None:
    with operation_context("reject", case_id="c-2"):
        pass
    assert operation_context_var.get().operation is None


def test_bind_adds_fields_to_current_context() -> None:
    with operation_context("approve", case_id="c-3"):
        bind(credential_id="cred-9")
        ctx = operation_context_var.get()
        assert ctx.case_id == "c-3"
        assert ctx.credential_id == "cred-9"


def test_container_formatter_prefixes_operation_context() -> None:
    record = _record(msg="Case approved")
    with operation_context("approve", case_id="c-4", credential_id="cred-1"):
        OperationContextFilter().filter(record)
    output = _ContainerFormatter().format(record)
    assert "[approve case=c-4 credential=cred-1] Case approved" in output


def test_container_formatter_without_context_has_no_prefix() -> None:
    record = _record(msg="Worker started")
    OperationContextFilter().filter(record)
    output = _ContainerFormatter().format(record)
    assert output.endswith("test  Worker started")
