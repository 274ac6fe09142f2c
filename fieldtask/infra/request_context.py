from __future__ import annotations

import logging
from contextvars import ContextVar

org_id_ctx: ContextVar[str | None] = ContextVar("org_id", default=None)
actor_id_ctx: ContextVar[str | None] = ContextVar("actor_id", default=None)


def set_request_context(org_id: str | None, actor_id: str | None) -> None:
    org_id_ctx.set(org_id)
    actor_id_ctx.set(actor_id)


class RequestContextFilter(logging.Filter):
    """Stamp the caller's org and actor onto records that do not name them explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "org_id", None) is None:
            record.org_id = org_id_ctx.get()
        if getattr(record, "actor_id", None) is None:
            record.actor_id = actor_id_ctx.get()
        return True
