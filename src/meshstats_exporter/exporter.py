from __future__ import annotations

import logging
from dataclasses import dataclass

from influxdb_client import Point

from meshstats_exporter.sink import MetricsSink, SinkConnectionError, SinkWriteError
from meshstats_exporter.stats import AggregateSnapshot, StatsAggregator


LOGGER = logging.getLogger("meshstats_exporter.exporter")

SERIES: tuple[str, ...] = (
    "general",
    "vpn_usage",
    "node_clients",
    "node_load",
    "node_memory",
    "nodes_versions",
    "nodes_communities",
    "nodes_gateway",
    "nodes_gateway_clients",
)


@dataclass(frozen=True)
class SeriesResult:
    series: str
    points: int
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class FlushReport:
    results: tuple[SeriesResult, ...]

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def failed_series(self) -> tuple[str, ...]:
        return tuple(result.series for result in self.results if not result.success)

    @property
    def points_written(self) -> int:
        return sum(result.points for result in self.results if result.success)


def build_series(snapshot: AggregateSnapshot) -> list[tuple[str, list[Point]]]:
    general = [Point(kind.measurement).field("value", value) for kind, value in snapshot.general_stats.items()]
    vpn = [
        Point("vpn_usage").tag("vpn", kind.vpn_id).field("usage", value)
        for kind, value in snapshot.vpn_usage.items()
    ]
    node_clients: list[Point] = []
    node_load: list[Point] = []
    node_memory: list[Point] = []
    for record in snapshot.nodes:
        node_tag = str(record.node_id)
        node_clients.append(Point("node_clients").tag("node", node_tag).field("value", record.clients))
        node_load.append(Point("node_load").tag("node", node_tag).field("value", float(record.load_avg)))
        node_memory.append(Point("node_memory").tag("node", node_tag).field("value", float(record.memory_usage)))
    versions = [
        Point("nodes_versions").tag("version", version).field("value", count)
        for version, count in snapshot.versions.items()
    ]
    communities = [
        Point("nodes_communities").tag("community", name).field("value", count)
        for name, count in snapshot.communities.items()
    ]
    gateways = [
        Point("nodes_gateway").tag("gateway", str(gateway)).field("value", count)
        for gateway, count in snapshot.gateway_usage.items()
    ]
    gateway_clients = [
        Point("nodes_gateway_clients").tag("gateway", str(gateway)).field("value", clients)
        for gateway, clients in snapshot.gateway_clients.items()
    ]
    return [
        ("general", general),
        ("vpn_usage", vpn),
        ("node_clients", node_clients),
        ("node_load", node_load),
        ("node_memory", node_memory),
        ("nodes_versions", versions),
        ("nodes_communities", communities),
        ("nodes_gateway", gateways),
        ("nodes_gateway_clients", gateway_clients),
    ]


class MetricsExporter:
    """Writes one batch per series from the aggregator's current state.

    A failed series is logged and reported; the remaining series are still
    written. Nothing is retried and the aggregator is left untouched.
    """

    def flush(self, aggregator: StatsAggregator, sink: MetricsSink) -> FlushReport:
        if not sink.is_connected():
            raise SinkConnectionError("metrics sink is not connected")

        results: list[SeriesResult] = []
        for series, points in build_series(aggregator.snapshot()):
            if not points:
                LOGGER.debug("series %s has no points, skipping", series)
                results.append(SeriesResult(series=series, points=0))
                continue
            try:
                sink.write(points)
            except SinkWriteError as error:
                LOGGER.warning("writing series %s failed (%d points): %s", series, len(points), error)
                results.append(SeriesResult(series=series, points=len(points), error=str(error)))
                continue
            LOGGER.debug("wrote series %s: %d points", series, len(points))
            results.append(SeriesResult(series=series, points=len(points)))
        return FlushReport(results=tuple(results))
