"""OpenTelemetry tracing helpers.

``create_span()`` opens a span as a context manager and ``@traced`` wraps a
function in one. Both record exceptions with a sanitized message so that
credentials leaking into error text never reach the trace backend.

Span names follow ``ferry.<area>.<operation>``, e.g. ``ferry.gate.health_check``.

Example:
    >>> with create_span("ferry.deploy", attributes={"environment": "test"}) as span:
    ...     span.set_attribute("generation", 3)
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

from ferry_core.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "ferry_core"

_tracer_override: Tracer | None = None


def get_tracer() -> Tracer:
    """Tracer used by ferry instrumentation.

    Resolved through the global TracerProvider unless set_tracer() installed
    an override.
    """
    if _tracer_override is not None:
        return _tracer_override
    return trace.get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Replace the ferry tracer; None restores the global provider (tests)."""
    global _tracer_override
    _tracer_override = tracer


def _record_error(span: Span, exc: Exception) -> None:
    sanitized = sanitize_error_message(str(exc))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(exc).__name__)
    span.set_attribute("exception.message", sanitized)


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically.

    Args:
        name: Span name.
        attributes: Attributes set on the span at start.

    Yields:
        The span, for setting further attributes.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator running the wrapped function inside a span.

    Usable bare (``@traced``) or with arguments
    (``@traced(name="ferry.build", attributes={"tool": "maven"})``).
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__qualname__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with create_span(span_name, attributes=dict(attributes or {})):
                return fn(*args, **kwargs)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


__all__ = ["create_span", "get_tracer", "set_tracer", "traced"]
