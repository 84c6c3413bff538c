from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_user_id_var: ContextVar[str | None] = ContextVar("actor_user_id", default=None)


@contextmanager
def bind_request_context(correlation_id: str | None, actor_user_id: str | None = None) -> Iterator[None]:
    """Expose the request's correlation id and actor to logs, audit entries and events."""
    correlation_token = correlation_id_var.set(correlation_id)
    actor_token = actor_user_id_var.set(actor_user_id)
    try:
        yield
    finally:
        actor_user_id_var.reset(actor_token)
        correlation_id_var.reset(correlation_token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_actor_user_id() -> str | None:
    return actor_user_id_var.get()
