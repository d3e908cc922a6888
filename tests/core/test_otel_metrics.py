"""Unit tests for the OTel save metrics.

Covers:
- init_metrics: no-op when OTEL_EXPORTER_OTLP_ENDPOINT is not set
- StoreMetrics: counters and histogram record with the table label
- OptimisticStore: inserted / updated / conflict outcomes are recorded
"""

from __future__ import annotations

from typing import Any

import pytest
from conftest import sample_record
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from recordstore.core.metrics import StoreMetrics, init_metrics
from recordstore.core.optimistic import OptimisticStore
from recordstore.errors import ConflictError
from recordstore.memory import MemoryRepository

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider state for test isolation.

    The OTel SDK uses a ``Once`` guard that prevents ``set_meter_provider``
    from being called more than once per process.
    """
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    metrics.set_meter_provider(MeterProvider(metric_readers=[reader]))
    yield reader
    _reset_metrics_global_state()


def _collect_metrics(reader: InMemoryMetricReader) -> dict[str, Any]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    if data is None:
        return result
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


def _counts_by_outcome(points) -> dict[str, int]:
    return {p.attributes["outcome"]: p.value for p in points}


# ---------------------------------------------------------------------------
# init_metrics
# ---------------------------------------------------------------------------


def test_init_metrics_without_endpoint_returns_meter(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

    meter = init_metrics("recordstore-test")

    assert meter is not None


# ---------------------------------------------------------------------------
# StoreMetrics
# ---------------------------------------------------------------------------


def test_record_save_counts_outcomes(reader):
    store_metrics = StoreMetrics("records")

    store_metrics.record_save("inserted", 1.5)
    store_metrics.record_save("updated", 2.0)
    store_metrics.record_save("conflict", 3.0)
    store_metrics.record_save("conflict", 3.0)

    collected = _collect_metrics(reader)
    assert _counts_by_outcome(collected["recordstore.save_total"]) == {
        "inserted": 1,
        "updated": 1,
        "conflict": 2,
    }
    (conflicts,) = collected["recordstore.conflict_total"]
    assert conflicts.value == 2
    assert conflicts.attributes == {"table": "records"}
    (durations,) = collected["recordstore.save_duration_ms"]
    assert durations.count == 4
    assert durations.sum == pytest.approx(9.5)


def test_record_save_without_provider_is_noop():
    _reset_metrics_global_state()

    StoreMetrics("records").record_save("inserted", 1.0)


# ---------------------------------------------------------------------------
# OptimisticStore integration
# ---------------------------------------------------------------------------


async def test_optimistic_store_records_every_outcome(reader):
    store = OptimisticStore(MemoryRepository("orders"))
    record = sample_record()
    await store.save(record)
    stale = record.copy()
    await store.save(record)

    with pytest.raises(ConflictError):
        await store.save(stale)

    collected = _collect_metrics(reader)
    points = collected["recordstore.save_total"]
    assert {p.attributes["table"] for p in points} == {"orders"}
    assert _counts_by_outcome(points) == {"inserted": 1, "updated": 1, "conflict": 1}
