"""Operation context — tags every log line with the workflow operation.

WHY CONTEXT VARIABLES
-----------------------
Workflow operations run as concurrent coroutines on one event loop.
Two approvals racing on the same thread interleave their log lines:

  INFO  Case approved
  WARNING Conditional update lost the race
  INFO  Credential issued

Which case lost?  With the operation context attached to every record:

  INFO  [approve case=1f3c..] Case approved
  WARNING [approve case=9ab2..] Conditional update lost the race

``contextvars`` gives each asyncio task its own copy of the value, so
one operation's context never leaks into another's log lines.  A
thread-local would, because coroutines share the thread.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace


@dataclass(frozen=True, slots=True)
class OperationContext:
    operation: str | None = None
    case_id: str | None = None
    credential_id: str | None = None
    actor: str | None = None


operation_context_var: ContextVar[OperationContext] = ContextVar(
    "operation_context", default=OperationContext()
)


@contextmanager
def operation_context(operation: str, **fields: object) -> Iterator[OperationContext]:
    """Bind an operation name (plus case/credential/actor ids) for the block."""
    values = {k: str(v) for k, v in fields.items() if v is not None}
    ctx = OperationContext(operation=operation, **values)
    token = operation_context_var.set(ctx)
    try:
        yield ctx
    finally:
        operation_context_var.reset(token)


def bind(**fields: object) -> None:
    """Add fields to the current context (e.g. a credential id once issued)."""
    values = {k: str(v) for k, v in fields.items() if v is not None}
    operation_context_var.set(replace(operation_context_var.get(), **values))


class OperationContextFilter(logging.Filter):
    """Logging filter that injects the operation context into every LogRecord.

    A filter (not a formatter) because formatters can only read fields that
    already exist on the record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = operation_context_var.get()
        record.operation = ctx.operation  # type: ignore[attr-defined]
        record.case_id = ctx.case_id  # type: ignore[attr-defined]
        record.credential_id = ctx.credential_id  # type: ignore[attr-defined]
        record.actor = ctx.actor  # type: ignore[attr-defined]
        return True
