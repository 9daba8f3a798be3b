from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence, Union

from influxdb_client import InfluxDBClient, Point
from influxdb_client.client.write_api import SYNCHRONOUS, WriteApi
from influxdb_client.rest import ApiException
from urllib3.exceptions import HTTPError


LOGGER = logging.getLogger("meshstats_exporter.sink")

PointBatch = Union[Point, Sequence[Point]]


class SinkError(Exception):
    pass


class SinkWriteError(SinkError):
    pass


class SinkConnectionError(SinkError):
    pass


class MetricsSink(Protocol):
    def open(self) -> None: ...

    def is_connected(self) -> bool: ...

    def write(self, points: PointBatch) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class InfluxConfig:
    url: str
    token: str
    org: str
    bucket: str
    timeout_ms: int = 10_000


class InfluxSink:
    def __init__(self, config: InfluxConfig) -> None:
        self._config = config
        self._client: InfluxDBClient | None = None
        self._write_api: WriteApi | None = None

    def open(self) -> None:
        client = InfluxDBClient(
            url=self._config.url,
            token=self._config.token,
            org=self._config.org,
            timeout=self._config.timeout_ms,
        )
        try:
            reachable = client.ping()
        except (ApiException, HTTPError, OSError) as error:
            client.close()
            raise SinkConnectionError(f"connection to {self._config.url} failed: {error}") from error
        if not reachable:
            client.close()
            raise SinkConnectionError(f"connection to {self._config.url} failed")
        self._client = client
        self._write_api = client.write_api(write_options=SYNCHRONOUS)
        LOGGER.info("connected to influxdb at %s (bucket %s)", self._config.url, self._config.bucket)

    def is_connected(self) -> bool:
        return self._client is not None and self._write_api is not None

    def write(self, points: PointBatch) -> None:
        if self._write_api is None:
            raise SinkConnectionError("influxdb sink is not open")
        record = points if isinstance(points, Point) else list(points)
        try:
            self._write_api.write(bucket=self._config.bucket, org=self._config.org, record=record)
        except (ApiException, HTTPError, OSError) as error:
            raise SinkWriteError(str(error)) from error

    def close(self) -> None:
        if self._write_api is not None:
            self._write_api.close()
            self._write_api = None
        if self._client is not None:
            self._client.close()
            self._client = None
