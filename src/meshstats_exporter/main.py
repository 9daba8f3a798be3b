from __future__ import annotations

import argparse
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from prometheus_client import start_http_server

from meshstats_exporter.exporter import MetricsExporter
from meshstats_exporter.publisher import CollectorMetricsPublisher
from meshstats_exporter.service import CycleConfig, CycleResult, run_cycle
from meshstats_exporter.sink import InfluxConfig, InfluxSink, MetricsSink, SinkConnectionError
from meshstats_exporter.stats import StatsAggregator


LOGGER = logging.getLogger("meshstats_exporter")


@dataclass(frozen=True)
class AppConfig:
    cycle: CycleConfig
    influx: InfluxConfig
    scan_interval_seconds: float
    listen_address: str
    listen_port: int
    run_once: bool
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mesh node statistics exporter for InfluxDB")
    parser.add_argument(
        "--spool-dir",
        default=os.getenv("MESHSTATS_SPOOL_DIR", "./data/snapshots"),
        help="directory of node snapshot *.json files written by the fetcher",
    )
    parser.add_argument(
        "--influx-url",
        default=os.getenv("MESHSTATS_INFLUX_URL", "http://localhost:8086"),
        help="influxdb base url",
    )
    parser.add_argument(
        "--influx-token",
        default=os.getenv("MESHSTATS_INFLUX_TOKEN"),
        required=os.getenv("MESHSTATS_INFLUX_TOKEN") is None,
        help="influxdb api token",
    )
    parser.add_argument(
        "--influx-org",
        default=os.getenv("MESHSTATS_INFLUX_ORG", "freifunk"),
        help="influxdb organization",
    )
    parser.add_argument(
        "--influx-bucket",
        default=os.getenv("MESHSTATS_INFLUX_BUCKET", "meshstats"),
        help="influxdb bucket receiving the statistics",
    )
    parser.add_argument(
        "--influx-timeout-ms",
        type=int,
        default=_int_env("MESHSTATS_INFLUX_TIMEOUT_MS", 10_000),
        help="deadline for each influxdb call in milliseconds",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=_int_env("MESHSTATS_WORKERS", 4),
        help="number of ingestion worker threads",
    )
    parser.add_argument(
        "--scan-interval-seconds",
        type=float,
        default=_float_env("MESHSTATS_SCAN_INTERVAL_SECONDS", 60.0),
        help="interval between scan cycles",
    )
    parser.add_argument(
        "--accumulate",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("MESHSTATS_ACCUMULATE", False),
        help="keep counters across cycles instead of resetting after each export",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("MESHSTATS_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for the collector /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("MESHSTATS_LISTEN_PORT", 9109),
        help="http bind port for the collector /metrics endpoint",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single scan cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("MESHSTATS_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    return AppConfig(
        cycle=CycleConfig(
            spool_dir=Path(args.spool_dir),
            workers=args.workers,
            accumulate=bool(args.accumulate),
        ),
        influx=InfluxConfig(
            url=args.influx_url,
            token=args.influx_token,
            org=args.influx_org,
            bucket=args.influx_bucket,
            timeout_ms=args.influx_timeout_ms,
        ),
        scan_interval_seconds=args.scan_interval_seconds,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        run_once=bool(args.once),
        log_level=args.log_level,
    )


def _run_scan_cycle(
    *,
    cycle_config: CycleConfig,
    aggregator: StatsAggregator,
    sink: MetricsSink,
    exporter: MetricsExporter,
    metrics: CollectorMetricsPublisher,
) -> CycleResult:
    if not sink.is_connected():
        try:
            sink.open()
        except SinkConnectionError as error:
            LOGGER.error("metrics store unavailable: %s", error)
    result = run_cycle(cycle_config, aggregator, sink, exporter)
    metrics.apply_cycle_result(result)
    if result.success:
        LOGGER.info(
            "scan cycle successful: %d nodes, %d decode errors, %d points",
            result.ingest.decoded,
            len(result.ingest.errors),
            result.flush.points_written if result.flush is not None else 0,
        )
    else:
        LOGGER.warning("scan cycle failed: %s", result.error)
    return result


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    aggregator = StatsAggregator()
    exporter = MetricsExporter()
    sink = InfluxSink(config.influx)
    metrics = CollectorMetricsPublisher()
    start_http_server(
        port=config.listen_port,
        addr=config.listen_address,
        registry=metrics.registry,
    )
    LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    def cycle() -> None:
        _run_scan_cycle(
            cycle_config=config.cycle,
            aggregator=aggregator,
            sink=sink,
            exporter=exporter,
            metrics=metrics,
        )

    try:
        if config.run_once:
            cycle()
            return

        LOGGER.info("running initial scan cycle on startup")
        cycle()
        next_cycle_at = time.monotonic() + config.scan_interval_seconds

        while True:
            sleep_for = max(0.0, next_cycle_at - time.monotonic())
            time.sleep(sleep_for)
            cycle()
            next_cycle_at += config.scan_interval_seconds
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        sink.close()


if __name__ == "__main__":
    main()
