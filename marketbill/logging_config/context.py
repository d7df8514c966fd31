"""Run Context Management.

Binds the billing run id and the store currently being processed to
every log entry using contextvars, so concurrent store pipelines keep
their own context.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


_run_id_var: ContextVar[str] = ContextVar("run_id", default="")
_store_id_var: ContextVar[str] = ContextVar("store_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_run_id() -> str:
    """Generate a unique run ID using UUID4."""
    return str(uuid.uuid4())


def get_run_id() -> str:
    """Get the current run ID from context."""
    return _run_id_var.get()


def get_store_id() -> str:
    """Get the store ID bound to the current context."""
    return _store_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    run_id = _run_id_var.get()
    if run_id:
        ctx["run_id"] = run_id
    store_id = _store_id_var.get()
    if store_id:
        ctx["store_id"] = store_id
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class RunContext:
    """Context manager for run-scoped logging context.

    Nested contexts inherit the outer run id, so a store context opened
    inside a run context logs both ids. The previous values are restored
    on exit.

    Example:
        with RunContext():
            with RunContext(store_id="store-1"):
                logger.info("closing cycle")  # includes run_id, store_id
    """

    run_id: str = ""
    store_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list[Token] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.run_id:
            self.run_id = get_run_id() or generate_run_id()

    def __enter__(self) -> "RunContext":
        self._tokens = [
            _run_id_var.set(self.run_id),
            _store_id_var.set(self.store_id or get_store_id()),
            _extra_context_var.set({**_extra_context_var.get(), **self.extra}),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        run_token, store_token, extra_token = self._tokens
        _extra_context_var.reset(extra_token)
        _store_id_var.reset(store_token)
        _run_id_var.reset(run_token)
        self._tokens = []

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the context."""
        current = _extra_context_var.get()
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)

