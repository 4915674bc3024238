"""Unit tests for publish instrumentation.

With only the OpenTelemetry API installed every instrument is a no-op, so
these tests check that recording never fails and that spans propagate
exceptions.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from steiger_core.oci import PublishMetrics


class TestPublishMetrics:
    def test_instruments_created_lazily_once(self) -> None:
        metrics = PublishMetrics()

        assert metrics.pushes_counter is metrics.pushes_counter
        assert metrics.upload_size_histogram is metrics.upload_size_histogram

    def test_record_push_adds_counter_and_duration(self) -> None:
        metrics = PublishMetrics()
        counter = MagicMock()
        histogram = MagicMock()

        with (
            patch.object(PublishMetrics, "pushes_counter", counter),
            patch.object(PublishMetrics, "duration_histogram", histogram),
        ):
            metrics.record_push("registry.example", "pushed", duration_seconds=1.5)

        counter.add.assert_called_once_with(1, attributes={"registry": "registry.example", "outcome": "pushed"})
        histogram.record.assert_called_once_with(
            1.5, attributes={"registry": "registry.example", "outcome": "pushed"}
        )

    def test_record_blob_without_size(self) -> None:
        metrics = PublishMetrics()
        histogram = MagicMock()

        with patch.object(PublishMetrics, "upload_size_histogram", histogram):
            metrics.record_blob("registry.example", "probe", "present")

        histogram.record.assert_not_called()

    def test_span_reraises(self) -> None:
        metrics = PublishMetrics()

        with pytest.raises(RuntimeError, match="boom"):
            with metrics.create_span(PublishMetrics.SPAN_PUSH, {"registry": "registry.example"}):
                raise RuntimeError("boom")
