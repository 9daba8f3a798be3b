from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from meshstats_exporter.exporter import FlushReport, MetricsExporter
from meshstats_exporter.models import DecodeError, GeneralStatType, NodeRecord, VpnKind
from meshstats_exporter.schemas import decode, detect_schema
from meshstats_exporter.sink import MetricsSink, SinkConnectionError
from meshstats_exporter.stats import StatsAggregator


LOGGER = logging.getLogger("meshstats_exporter.service")


@dataclass(frozen=True)
class CycleConfig:
    spool_dir: Path
    workers: int = 4
    accumulate: bool = False


@dataclass(frozen=True)
class IngestResult:
    decoded: int = 0
    vpn_samples: int = 0
    errors: tuple[tuple[str, DecodeError], ...] = ()


@dataclass(frozen=True)
class CycleResult:
    success: bool
    started_at: float
    duration_seconds: float
    ingest: IngestResult
    flush: FlushReport | None = None
    error: str | None = None


def parse_json_objects(output: str) -> list[Any]:
    decoder = json.JSONDecoder()
    values: list[Any] = []
    index = 0
    while index < len(output):
        while index < len(output) and output[index] not in "{[":
            index += 1
        if index >= len(output):
            break
        try:
            parsed, end_index = decoder.raw_decode(output, index)
        except json.JSONDecodeError:
            index += 1
            continue
        values.append(parsed)
        index = end_index
    return values


def load_snapshots(spool_dir: str | Path) -> list[dict[str, Any]]:
    spool = Path(spool_dir)
    if not spool.is_dir():
        LOGGER.warning("snapshot spool %s does not exist", spool)
        return []

    snapshots: list[dict[str, Any]] = []
    for path in sorted(spool.glob("*.json")):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.warning("skipping unreadable snapshot file %s: %s", path, error)
            continue
        for parsed in parse_json_objects(text):
            if isinstance(parsed, dict):
                snapshots.append(parsed)
            elif isinstance(parsed, list):
                snapshots.extend(entry for entry in parsed if isinstance(entry, dict))
    LOGGER.debug("loaded %d snapshots from %s", len(snapshots), spool)
    return snapshots


def _is_vpn_sample(payload: dict[str, Any]) -> bool:
    return "vpn" in payload and "usage" in payload and "id" not in payload


def _ingest_one(
    payload: dict[str, Any],
    aggregator: StatsAggregator,
) -> tuple[str, NodeRecord | None, DecodeError | None]:
    if _is_vpn_sample(payload):
        usage = payload["usage"]
        if isinstance(usage, bool) or not isinstance(usage, (int, float)):
            return "vpn", None, DecodeError("usage", "invalid", repr(usage))
        aggregator.record_vpn_usage(VpnKind.parse(payload["vpn"]), usage)
        return "vpn", None, None

    try:
        schema = detect_schema(payload)
    except DecodeError as error:
        return "unknown", None, error
    try:
        record = decode(payload, schema)
    except DecodeError as error:
        return schema, None, error
    aggregator.record_node(record)
    return schema, record, None


def ingest_snapshots(
    snapshots: Iterable[dict[str, Any]],
    aggregator: StatsAggregator,
    *,
    max_workers: int = 4,
) -> IngestResult:
    """Decode every snapshot on a worker pool and fold the records in.

    Each snapshot must describe a distinct node; a node seen twice is counted
    twice in the version, community and gateway distributions.
    """
    decoded = 0
    vpn_samples = 0
    errors: list[tuple[str, DecodeError]] = []
    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="ingest") as executor:
        outcomes = list(executor.map(lambda payload: _ingest_one(payload, aggregator), snapshots))

    for schema, record, error in outcomes:
        if error is not None:
            LOGGER.warning("dropping %s snapshot: %s", schema, error)
            errors.append((schema, error))
        elif record is not None:
            decoded += 1
        else:
            vpn_samples += 1
    return IngestResult(decoded=decoded, vpn_samples=vpn_samples, errors=tuple(errors))


def compute_general_stats(aggregator: StatsAggregator, ingest: IngestResult, duration_seconds: float) -> None:
    snapshot = aggregator.snapshot()
    aggregator.record_general_stat(GeneralStatType.NODES, float(len(snapshot.nodes)))
    aggregator.record_general_stat(
        GeneralStatType.NODES_ONLINE,
        float(sum(1 for record in snapshot.nodes if record.online)),
    )
    aggregator.record_general_stat(
        GeneralStatType.CLIENTS,
        float(sum(record.clients for record in snapshot.nodes)),
    )
    aggregator.record_general_stat(GeneralStatType.GATEWAYS, float(len(snapshot.gateway_usage)))
    aggregator.record_general_stat(GeneralStatType.DECODE_ERRORS, float(len(ingest.errors)))
    aggregator.record_general_stat(GeneralStatType.CYCLE_DURATION, round(duration_seconds, 6))


def run_cycle(
    config: CycleConfig,
    aggregator: StatsAggregator,
    sink: MetricsSink,
    exporter: MetricsExporter | None = None,
) -> CycleResult:
    if exporter is None:
        exporter = MetricsExporter()
    started_at = time.time()
    monotonic_start = time.monotonic()

    snapshots = load_snapshots(config.spool_dir)
    ingest = ingest_snapshots(snapshots, aggregator, max_workers=config.workers)
    compute_general_stats(aggregator, ingest, time.monotonic() - monotonic_start)

    try:
        flush = exporter.flush(aggregator, sink)
    except SinkConnectionError as error:
        duration = time.monotonic() - monotonic_start
        LOGGER.error("metrics export aborted: %s", error)
        return CycleResult(
            success=False,
            started_at=started_at,
            duration_seconds=duration,
            ingest=ingest,
            error=str(error),
        )
    finally:
        if not config.accumulate:
            aggregator.reset()

    duration = time.monotonic() - monotonic_start
    error = None
    if not flush.success:
        error = "series write failed: " + ", ".join(flush.failed_series)
    return CycleResult(
        success=flush.success,
        started_at=started_at,
        duration_seconds=duration,
        ingest=ingest,
        flush=flush,
        error=error,
    )
