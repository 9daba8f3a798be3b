from __future__ import annotations

from typing import Any

import pytest
from influxdb_client import Point

from meshstats_exporter.sink import SinkConnectionError, SinkWriteError


def measurement_of(point: Point) -> str:
    return point.to_line_protocol().split(" ", 1)[0].split(",", 1)[0]


class RecordingSink:
    def __init__(self) -> None:
        self.connected = True
        self.fail_measurements: set[str] = set()
        self.attempted: list[str] = []
        self.batches: list[list[Point]] = []

    def open(self) -> None:
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    def write(self, points: Any) -> None:
        if not self.connected:
            raise SinkConnectionError("sink closed")
        batch = [points] if isinstance(points, Point) else list(points)
        measurement = measurement_of(batch[0])
        self.attempted.append(measurement)
        if measurement in self.fail_measurements:
            raise SinkWriteError(f"write of {measurement} rejected")
        self.batches.append(batch)

    def close(self) -> None:
        self.connected = False

    def lines(self) -> list[str]:
        return [point.to_line_protocol() for batch in self.batches for point in batch]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


def sysinfo_payload(version: str = "13", **data_overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "common": {"node": "1001", "community": "Dresden"},
        "system": {
            "uptime": "21:10:01 up 3 days,  2:41,  load average: 0.42, 0.30, 0.25",
            "node_type": "mobile",
        },
        "gps": {"latitude": "51.0504", "longitude": "13.7373"},
        "statistic": {
            "accepted_user_count": "4",
            "client2g": {"15min": "3"},
            "client5g": {"15min": "2"},
            "meminfo_MemTotal": "60000 kB",
            "meminfo_MemFree": "15000 kB",
        },
        "firmware": {"version": "7.1.2"},
        "bmxd": {"gateways": {"selected": "10.200.0.3"}},
    }
    data.update(data_overrides)
    return {"version": version, "timestamp": "1700000000", "data": data}


def api_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": 51,
        "status": {"online": True, "clients": 7},
        "position": {"lat": 51.03, "long": 13.71},
        "firmware": {"version": "7.0.9"},
        "community": "Pirna",
        "role": "server",
        "gateway": 2,
        "system": {"load_avg": 1.5, "memory_usage": 0.4},
    }
    payload.update(overrides)
    return payload
