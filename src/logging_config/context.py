"""Operation Context.

Binds the acting user, a correlation id and arbitrary workflow fields to
every log line emitted while an orchestration call runs. Uses contextvars
so concurrent threads keep separate contexts.
"""

import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any


_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
_actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_correlation_id() -> str:
    """Generate a unique correlation id."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_actor_id() -> str:
    return _actor_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """All bound context values, for merging into a log record."""
    ctx = {}
    corr_id = _correlation_id_var.get()
    if corr_id:
        ctx["correlation_id"] = corr_id
    actor_id = _actor_id_var.get()
    if actor_id:
        ctx["actor_id"] = actor_id
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


class OperationContext:
    """Context manager scoping log fields to one orchestration call.

    Example:
        with OperationContext(actor_id="emp_42", workflow_id="a1b2"):
            orchestrator.process_decision(...)  # every log line carries both
    """

    def __init__(self, actor_id: str = "", correlation_id: str = "", **extra: Any):
        self.actor_id = actor_id
        self.correlation_id = correlation_id or generate_correlation_id()
        self.extra = dict(extra)
        self.started_at = datetime.now(timezone.utc)
        self._tokens = []

    def __enter__(self) -> "OperationContext":
        self._tokens = [
            (_correlation_id_var, _correlation_id_var.set(self.correlation_id)),
            (_actor_id_var, _actor_id_var.set(self.actor_id)),
            (_extra_context_var, _extra_context_var.set({**_extra_context_var.get(), **self.extra})),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since the context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add fields to the active context."""
        _extra_context_var.set({**_extra_context_var.get(), **kwargs})
        self.extra.update(kwargs)
