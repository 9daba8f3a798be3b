from pathlib import Path

from prometheus_client import CollectorRegistry, generate_latest

from conftest import RecordingSink
from meshstats_exporter.exporter import MetricsExporter
from meshstats_exporter.main import _run_scan_cycle, load_config
from meshstats_exporter.publisher import CollectorMetricsPublisher
from meshstats_exporter.service import CycleConfig
from meshstats_exporter.stats import StatsAggregator


def test_load_config_reads_environment_defaults(monkeypatch) -> None:
    monkeypatch.setenv("MESHSTATS_INFLUX_TOKEN", "env-token")
    monkeypatch.setenv("MESHSTATS_WORKERS", "9")
    monkeypatch.setenv("MESHSTATS_ACCUMULATE", "yes")

    config = load_config(["--spool-dir", "/var/spool/meshstats", "--influx-bucket", "fleet"])

    assert config.influx.token == "env-token"
    assert config.influx.bucket == "fleet"
    assert config.cycle.spool_dir == Path("/var/spool/meshstats")
    assert config.cycle.workers == 9
    assert config.cycle.accumulate is True
    assert config.run_once is False


def test_load_config_flags_override_environment(monkeypatch) -> None:
    monkeypatch.setenv("MESHSTATS_ACCUMULATE", "1")

    config = load_config(["--influx-token", "cli-token", "--no-accumulate", "--once", "--influx-timeout-ms", "2500"])

    assert config.influx.token == "cli-token"
    assert config.influx.timeout_ms == 2500
    assert config.cycle.accumulate is False
    assert config.run_once is True


def test_scan_cycle_reopens_sink_and_publishes(tmp_path: Path, sink: RecordingSink) -> None:
    sink.connected = False
    registry = CollectorRegistry()
    metrics = CollectorMetricsPublisher(registry=registry)

    result = _run_scan_cycle(
        cycle_config=CycleConfig(spool_dir=tmp_path),
        aggregator=StatsAggregator(),
        sink=sink,
        exporter=MetricsExporter(),
        metrics=metrics,
    )

    assert sink.connected is True
    assert result.success is True
    assert "meshstats_cycle_success 1.0" in generate_latest(registry).decode("utf-8")
