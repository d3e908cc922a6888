"""OpenTelemetry metrics instruments for record store saves.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around. Until a real provider is installed
(``init_metrics`` or the host application) every recording is a no-op.

Instruments
-----------
  recordstore.save_total          Counter  (label: outcome=inserted|updated|conflict|error)
      Save calls by outcome.

  recordstore.conflict_total      Counter
      Saves rejected because the caller's version was stale.

  recordstore.save_duration_ms    Histogram
      Wall time of a save, including the transaction round trips.

All instruments carry a ``table`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "recordstore"

OUTCOME_INSERTED = "inserted"
OUTCOME_UPDATED = "updated"
OUTCOME_CONFLICT = "conflict"
OUTCOME_ERROR = "error"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter. Otherwise the global no-op
    MeterProvider stays in place and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


class StoreMetrics:
    """Save-path instruments for one records table.

    Safe to construct before any MeterProvider is installed. Instruments are
    fetched from the global provider at recording time, so a provider set up
    later (or swapped in tests) is picked up.
    """

    def __init__(self, table: str) -> None:
        self._attrs = {"table": table}

    def _save_total(self) -> metrics.Counter:
        return get_meter().create_counter(
            name="recordstore.save_total",
            description="Record saves by outcome",
            unit="saves",
        )

    def _conflict_total(self) -> metrics.Counter:
        return get_meter().create_counter(
            name="recordstore.conflict_total",
            description="Saves rejected because the caller's version was stale",
            unit="conflicts",
        )

    def _save_duration_ms(self) -> metrics.Histogram:
        return get_meter().create_histogram(
            name="recordstore.save_duration_ms",
            description="Record save duration in milliseconds",
            unit="ms",
        )

    def record_save(self, outcome: str, duration_ms: float) -> None:
        """Record one finished save and its duration."""
        self._save_total().add(1, {**self._attrs, "outcome": outcome})
        self._save_duration_ms().record(duration_ms, self._attrs)
        if outcome == OUTCOME_CONFLICT:
            self._conflict_total().add(1, self._attrs)
