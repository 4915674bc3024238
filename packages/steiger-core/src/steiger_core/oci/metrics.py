"""OpenTelemetry instrumentation for image publishing.

Only the OpenTelemetry API is used: spans and instruments are no-ops
unless the embedding process installs an SDK and exporters.

Metrics Emitted:
    Counters:
        - steiger_oci_pushes_total: Image pushes by registry and outcome (pushed/skipped/failed)
        - steiger_oci_blob_operations_total: Blob probes and uploads by registry and result

    Histograms:
        - steiger_oci_push_duration_seconds: Image push duration
        - steiger_oci_blob_upload_bytes: Uploaded blob sizes

Trace Spans:
    - steiger.oci.push: Full image push
    - steiger.oci.upload_blob: Probe and (if needed) upload of one blob
    - steiger.oci.push_manifest: Manifest upload

Example:
    >>> metrics = PublishMetrics()
    >>> with metrics.create_span(PublishMetrics.SPAN_PUSH, {"registry": "registry.example"}):
    ...     result = await publisher.push(progress, reference, image)
    >>> metrics.record_push("registry.example", "pushed", duration_seconds=1.2)
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import metrics, trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.metrics import Counter, Histogram
    from opentelemetry.trace import Span, Tracer

logger = structlog.get_logger(__name__)


class PublishMetrics:
    """OpenTelemetry metrics and spans for registry publishing.

    Label Conventions:
        - registry: Registry host (e.g. registry.example)
        - outcome: pushed, skipped, failed
        - operation: probe, upload
        - result: present, missing, uploaded, failed
    """

    PUSHES_TOTAL = "steiger_oci_pushes_total"
    BLOB_OPERATIONS_TOTAL = "steiger_oci_blob_operations_total"
    PUSH_DURATION_SECONDS = "steiger_oci_push_duration_seconds"
    BLOB_UPLOAD_BYTES = "steiger_oci_blob_upload_bytes"

    SPAN_PUSH = "steiger.oci.push"
    SPAN_UPLOAD_BLOB = "steiger.oci.upload_blob"
    SPAN_PUSH_MANIFEST = "steiger.oci.push_manifest"

    def __init__(
        self,
        meter_name: str = "steiger.oci",
        meter_version: str = "1.0.0",
        tracer_name: str = "steiger.oci",
    ) -> None:
        self._meter = metrics.get_meter(meter_name, meter_version)
        self._tracer: Tracer = trace.get_tracer(tracer_name)

        self._pushes_counter: Counter | None = None
        self._blob_counter: Counter | None = None
        self._duration_histogram: Histogram | None = None
        self._upload_size_histogram: Histogram | None = None

    @property
    def pushes_counter(self) -> Counter:
        """Get or create the pushes counter."""
        if self._pushes_counter is None:
            self._pushes_counter = self._meter.create_counter(
                self.PUSHES_TOTAL,
                unit="1",
                description="Image pushes by registry and outcome",
            )
        return self._pushes_counter

    @property
    def blob_counter(self) -> Counter:
        """Get or create the blob operations counter."""
        if self._blob_counter is None:
            self._blob_counter = self._meter.create_counter(
                self.BLOB_OPERATIONS_TOTAL,
                unit="1",
                description="Blob probes and uploads by registry and result",
            )
        return self._blob_counter

    @property
    def duration_histogram(self) -> Histogram:
        """Get or create the push duration histogram."""
        if self._duration_histogram is None:
            self._duration_histogram = self._meter.create_histogram(
                self.PUSH_DURATION_SECONDS,
                unit="s",
                description="Duration of image pushes in seconds",
            )
        return self._duration_histogram

    @property
    def upload_size_histogram(self) -> Histogram:
        """Get or create the uploaded blob size histogram."""
        if self._upload_size_histogram is None:
            self._upload_size_histogram = self._meter.create_histogram(
                self.BLOB_UPLOAD_BYTES,
                unit="By",
                description="Size of uploaded blobs in bytes",
            )
        return self._upload_size_histogram

    def record_push(self, registry: str, outcome: str, *, duration_seconds: float | None = None) -> None:
        """Record a finished image push.

        Args:
            registry: Registry host.
            outcome: "pushed", "skipped" or "failed".
            duration_seconds: Push duration, if measured.
        """
        attributes: dict[str, Any] = {"registry": registry, "outcome": outcome}
        self.pushes_counter.add(1, attributes=attributes)
        if duration_seconds is not None:
            self.duration_histogram.record(duration_seconds, attributes=attributes)

        logger.debug("oci_push_recorded", registry=registry, outcome=outcome)

    def record_blob(self, registry: str, operation: str, result: str, *, size_bytes: int | None = None) -> None:
        """Record a blob probe or upload."""
        attributes: dict[str, Any] = {"registry": registry, "operation": operation, "result": result}
        self.blob_counter.add(1, attributes=attributes)
        if size_bytes is not None:
            self.upload_size_histogram.record(size_bytes, attributes={"registry": registry})

    @contextmanager
    def create_span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a trace span, recording any exception on it.

        Args:
            name: Span name (use SPAN_* constants).
            attributes: Optional span attributes.

        Yields:
            The created span for additional attribute setting.
        """
        with self._tracer.start_as_current_span(name) as span:
            if attributes:
                for key, value in attributes.items():
                    span.set_attribute(key, value)
            try:
                yield span
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise


__all__ = ["PublishMetrics"]
