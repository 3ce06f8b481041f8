"""OpenTelemetry spans and metrics for reconciliation passes.

Provides the Telemetry class as a thin facade over an OTel tracer and
meter.  By default it binds to the global providers, which stay no-op
until the host process installs an SDK, so instrumented code runs the
same with or without a telemetry backend.

Instruments (all tagged with ``reconciliation.type``):

* ``reconciliation.cycles.total``: one per completed pass.
* ``reconciliation.records_processed.total``: candidates examined.
* ``reconciliation.errors.total``: per-candidate errors and crashed
  passes, also tagged with ``error.type``.
* ``reconciliation.cycle_duration_ms``: pass wall time.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Generator

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

if TYPE_CHECKING:
    from ingestor.reconciliation.base import PassResult

INSTRUMENTATION_NAME = "ingestor.reconciliation"

RECONCILIATION_TYPE = "reconciliation.type"
RECORDS_PROCESSED = "reconciliation.records_processed"
ERROR_TYPE = "error.type"


class Telemetry:
    """Records one span and one set of measurements per reconciliation pass."""

    def __init__(self, tracer: trace.Tracer, meter: metrics.Meter) -> None:
        self._tracer = tracer
        self._cycles = meter.create_counter(
            "reconciliation.cycles.total", description="Reconciliation passes completed"
        )
        self._records = meter.create_counter(
            "reconciliation.records_processed.total", description="Candidates examined"
        )
        self._errors = meter.create_counter(
            "reconciliation.errors.total", description="Candidate errors and crashed passes"
        )
        self._duration = meter.create_histogram(
            "reconciliation.cycle_duration_ms", unit="ms", description="Pass wall time"
        )

    @contextmanager
    def pass_span(self, name: str) -> Generator[trace.Span, None, None]:
        """Open ``reconciliation.<name>.cycle`` as the current span.

        An exception leaving the block is recorded on the span and re-raised.
        """
        with self._tracer.start_as_current_span(
            f"reconciliation.{name}.cycle", attributes={RECONCILIATION_TYPE: name}
        ) as span:
            yield span

    def record_pass(self, result: PassResult) -> None:
        attributes = {RECONCILIATION_TYPE: result.name}
        self._cycles.add(1, attributes)
        self._records.add(result.examined, attributes)
        self._duration.record(result.duration_seconds * 1000, attributes)
        for error_type in result.error_types:
            self._errors.add(1, {**attributes, ERROR_TYPE: error_type})

    def record_crash(self, name: str, exc: BaseException) -> None:
        self._errors.add(1, {RECONCILIATION_TYPE: name, ERROR_TYPE: type(exc).__name__})

    @classmethod
    def default(cls) -> Telemetry:
        """Bind to the process-wide tracer and meter providers."""
        return cls(
            trace.get_tracer(INSTRUMENTATION_NAME), metrics.get_meter(INSTRUMENTATION_NAME)
        )

    @classmethod
    def for_testing(cls) -> tuple[Telemetry, InMemorySpanExporter, InMemoryMetricReader]:
        """Create a Telemetry instance backed by in-memory exporters.

        Returns:
            ``(Telemetry, InMemorySpanExporter, InMemoryMetricReader)``.  Call
            ``exporter.get_finished_spans()`` or ``reader.get_metrics_data()``
            after the code under test has run.
        """
        exporter = InMemorySpanExporter()
        tracer_provider = TracerProvider()
        tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))
        reader = InMemoryMetricReader()
        meter_provider = MeterProvider(metric_readers=[reader])
        telemetry = cls(
            tracer_provider.get_tracer(INSTRUMENTATION_NAME),
            meter_provider.get_meter(INSTRUMENTATION_NAME),
        )
        return telemetry, exporter, reader
