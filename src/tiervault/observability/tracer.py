"""
Tracing for tiervault components.

Every component takes an optional ``tracer`` and otherwise builds one with
``create_tracer(__name__, enable_tracing)``. Span names follow
``tiervault.<component>.<operation>``; attribute keys live in
``tiervault.observability.attributes``.

Spans are exported by whichever OpenTelemetry TracerProvider the process
installs. Without one, or with ``enable_tracing=False``, spans cost nothing.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span

Attributes = Mapping[str, Any]


def clean_attributes(attributes: Attributes | None) -> dict[str, Any]:
    """
    Drop None values and stringify enums.

    OpenTelemetry rejects None attribute values, and several tiervault
    attributes (target tier, backup kind) are optional.
    """
    if not attributes:
        return {}
    cleaned: dict[str, Any] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        cleaned[key] = getattr(value, "value", value)
    return cleaned


@runtime_checkable
class Tracer(Protocol):
    """Creates spans around engine calls, actions, backups and job runs."""

    def span(
        self,
        name: str,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[Span | None]: ...

    @property
    def enabled(self) -> bool: ...


class NullTracer:
    """Tracer used when tracing is disabled; spans yield None."""

    @contextlib.contextmanager
    def span(self, name: str, attributes: Attributes | None = None) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Exceptions escaping a span are recorded on it and mark it as an error,
    so a failed chunk action or dump shows up in the trace.

    Args:
        tracer_name: Instrumentation scope, usually the module __name__
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: Attributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            attributes=clean_attributes(attributes),
            record_exception=True,
            set_status_on_exception=True,
        )

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class RecordedSpan:
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None


class RecordingTracer:
    """
    Tracer that keeps every span in memory.

    Useful in tests to assert which operations a run performed:

        >>> tracer = RecordingTracer()
        >>> executor = ActionExecutor(engine, tracer=tracer)
        >>> await executor.execute_all(actions)
        >>> tracer.names("tiervault.executor.")
        ['tiervault.executor.execute_all', 'tiervault.executor.execute']
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(self, name: str, attributes: Attributes | None = None) -> Iterator[None]:
        recorded = RecordedSpan(name, clean_attributes(attributes))
        self.spans.append(recorded)
        try:
            yield None
        except BaseException as e:
            recorded.error = e
            raise

    @property
    def enabled(self) -> bool:
        return True

    def names(self, prefix: str = "") -> list[str]:
        """Span names in start order, optionally filtered by prefix."""
        return [s.name for s in self.spans if s.name.startswith(prefix)]

    def failed(self) -> list[RecordedSpan]:
        """Spans that an exception escaped from."""
        return [s for s in self.spans if s.error is not None]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """OpenTelemetryTracer when enabled, NullTracer otherwise."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Attributes",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "RecordingTracer",
    "clean_attributes",
    "create_tracer",
]
