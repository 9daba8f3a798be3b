from __future__ import annotations

from collections import Counter

from prometheus_client import CollectorRegistry, Gauge

from meshstats_exporter.service import CycleResult


class CollectorMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self._known_decode_errors: set[tuple[str, str, str]] = set()

        self.cycle_success = Gauge(
            "meshstats_cycle_success",
            "Latest scan cycle status (1=success, 0=failure)",
            registry=self.registry,
        )
        self.cycle_duration_seconds = Gauge(
            "meshstats_cycle_duration_seconds",
            "Duration of the last scan cycle in seconds",
            registry=self.registry,
        )
        self.cycle_timestamp_seconds = Gauge(
            "meshstats_cycle_timestamp_seconds",
            "Unix timestamp of the last successful scan cycle",
            registry=self.registry,
        )
        self.nodes_decoded = Gauge(
            "meshstats_nodes_decoded",
            "Node snapshots decoded in the last scan cycle",
            registry=self.registry,
        )
        self.decode_errors = Gauge(
            "meshstats_decode_errors",
            "Node snapshots rejected in the last scan cycle",
            ["schema", "field", "reason"],
            registry=self.registry,
        )
        self.series_write_success = Gauge(
            "meshstats_series_write_success",
            "Latest write status per exported series (1=success, 0=failure)",
            ["series"],
            registry=self.registry,
        )
        self.series_points = Gauge(
            "meshstats_series_points",
            "Points in the latest batch per exported series",
            ["series"],
            registry=self.registry,
        )

    def apply_cycle_result(self, result: CycleResult) -> None:
        self.cycle_success.set(1.0 if result.success else 0.0)
        self.cycle_duration_seconds.set(result.duration_seconds)
        if result.success:
            self.cycle_timestamp_seconds.set(result.started_at)
        self.nodes_decoded.set(float(result.ingest.decoded))

        error_counts = Counter(
            (schema, error.field, error.reason) for schema, error in result.ingest.errors
        )
        for (schema, field, reason), count in error_counts.items():
            self.decode_errors.labels(schema=schema, field=field, reason=reason).set(float(count))
        current = set(error_counts)
        for stale_schema, stale_field, stale_reason in self._known_decode_errors - current:
            self.decode_errors.remove(stale_schema, stale_field, stale_reason)
        self._known_decode_errors = current

        if result.flush is not None:
            for series_result in result.flush.results:
                self.series_write_success.labels(series=series_result.series).set(
                    1.0 if series_result.success else 0.0
                )
                self.series_points.labels(series=series_result.series).set(float(series_result.points))
