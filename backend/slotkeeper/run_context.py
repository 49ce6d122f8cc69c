# backend/slotkeeper/run_context.py
from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

run_id_ctx: ContextVar[str | None] = ContextVar("run_id", default=None)


def get_run_id() -> str | None:
    return run_id_ctx.get()


@contextmanager
def run_scope(run_id: str | None = None) -> Iterator[str]:
    """
    Sets a correlation id for one sweep / provisioning / CLI invocation.

    - Reuses an id handed in by the caller (e.g. the Celery task id)
    - Otherwise generates UUID4
    - Stored in a ContextVar so the JSON log formatter can stamp every line
    """
    rid = run_id or str(uuid.uuid4())
    token = run_id_ctx.set(rid)
    try:
        yield rid
    finally:
        run_id_ctx.reset(token)
