"""Optional timing scopes and counters.

Off unless ``FISCAL_TELEMETRY=1`` (or ``DEBUG=1``) and at least one reporter
is given. The response handler opens a ``handler.<operation>`` scope per call
and the catalog service counts where each payload came from
(``catalog.source`` with ``source=cache|remote|legacy|stale``).
"""

from collections import defaultdict, deque
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from contextvars import ContextVar
import logging
import os
import time
from typing import Any, Protocol, runtime_checkable

log = logging.getLogger(__name__)

_scopes: ContextVar[tuple[str, ...]] = ContextVar("fiscal_telemetry_scopes", default=())


def telemetry_enabled() -> bool:
    return os.getenv("FISCAL_TELEMETRY") == "1" or os.getenv("DEBUG") == "1"


@runtime_checkable
class TelemetryReporter(Protocol):
    """Receives finished scopes and counter increments."""

    def record_timing(self, scope: str, duration: float, **metadata: Any) -> None: ...
    def record_metric(self, scope: str, value: Any, **metadata: Any) -> None: ...


class _DisabledTelemetry:
    __slots__ = ()

    def __call__(
        self, name: str, **metadata: Any  # noqa: ARG002
    ) -> AbstractContextManager[None]:
        return nullcontext()

    def count(self, name: str, increment: int = 1, **metadata: Any) -> None:
        pass


class _ReportingTelemetry:
    """Nests scopes per execution context and fans records out to reporters."""

    __slots__ = ("reporters",)

    def __init__(self, *reporters: TelemetryReporter):
        self.reporters = reporters

    @contextmanager
    def __call__(self, name: str, **metadata: Any) -> Iterator[None]:
        if not name or not isinstance(name, str):
            raise ValueError("Scope name must be a non-empty string")
        parents = _scopes.get()
        token = _scopes.set((*parents, name))
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - started
            _scopes.reset(token)
            self._emit("record_timing", ".".join((*parents, name)), elapsed, parents, metadata)

    def count(self, name: str, increment: int = 1, **metadata: Any) -> None:
        parents = _scopes.get()
        self._emit(
            "record_metric",
            ".".join((*parents, name)),
            increment,
            parents,
            {"metric_type": "counter", **metadata},
        )

    def _emit(
        self,
        method: str,
        path: str,
        value: Any,
        parents: tuple[str, ...],
        metadata: dict[str, Any],
    ) -> None:
        record = {"depth": len(parents), "parent_scope": ".".join(parents) or None, **metadata}
        for reporter in self.reporters:
            try:
                getattr(reporter, method)(path, value, **record)
            except Exception as e:
                # Reporter failures never reach the caller
                log.warning("Telemetry reporter %s failed: %s", type(reporter).__name__, e)


type TelemetryContextProtocol = _ReportingTelemetry | _DisabledTelemetry

_DISABLED = _DisabledTelemetry()


def TelemetryContext(*reporters: TelemetryReporter) -> TelemetryContextProtocol:  # noqa: N802
    """Reporting context, or the shared disabled one."""
    if telemetry_enabled() and reporters:
        return _ReportingTelemetry(*reporters)
    return _DISABLED


class SimpleReporter:
    """Keeps the latest records per scope in memory."""

    def __init__(self, max_entries_per_scope: int = 1000):
        self.timings: defaultdict[str, deque[tuple[float, dict[str, Any]]]] = defaultdict(
            lambda: deque(maxlen=max_entries_per_scope)
        )
        self.metrics: defaultdict[str, deque[tuple[Any, dict[str, Any]]]] = defaultdict(
            lambda: deque(maxlen=max_entries_per_scope)
        )

    def record_timing(self, scope: str, duration: float, **metadata: Any) -> None:
        self.timings[scope].append((duration, metadata))

    def record_metric(self, scope: str, value: Any, **metadata: Any) -> None:
        self.metrics[scope].append((value, metadata))

    def get_report(self) -> str:
        lines = ["scope | calls | total"]
        for scope, entries in sorted(self.timings.items()):
            total = sum(duration for duration, _ in entries)
            lines.append(f"{scope} | {len(entries)} | {total:.4f}s")
        for scope, entries in sorted(self.metrics.items()):
            lines.append(f"{scope} | {len(entries)} | {sum(v for v, _ in entries)}")
        return "\n".join(lines)
