from __future__ import annotations

import ipaddress
import re
from typing import Any, Callable

from meshstats_exporter.models import Community, DecodeError, NodeRecord, NodeRole, lookup_community


FieldRule = Callable[[dict[str, Any]], Any]

FIELDS: tuple[str, ...] = (
    "node_id",
    "clients",
    "position",
    "online",
    "role",
    "firmware_version",
    "community",
    "gateway",
    "load_avg",
    "memory_usage",
)

# Each chain lists its markers oldest first; a marker inherits every rule of
# the markers before it unless it defines its own.
SCHEMA_CHAINS: dict[str, tuple[str, ...]] = {
    "sysinfo": ("10", "11", "12", "13", "14"),
    "api": ("api",),
}

_SHORT_MAX = 32767
_MESH_NETWORK = ipaddress.ip_network("10.200.0.0/16")
_LOAD_AVERAGE = re.compile(r"load average:\s*([0-9]+(?:\.[0-9]+)?)")
_LEADING_NUMBER = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)")
_MISSING = object()


def normalize_marker(raw: object) -> str:
    return str(raw).strip().lower()


def _lookup(tree: Any, *path: str) -> Any:
    current = tree
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    if current is None:
        return _MISSING
    return current


def _sysinfo_data(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, dict):
        return data
    return payload


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise DecodeError(field, "invalid", repr(value))
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise DecodeError(field, "invalid", repr(value))


def _as_short(value: Any, field: str) -> int:
    number = _as_int(value, field)
    if number < 0 or number > _SHORT_MAX:
        raise DecodeError(field, "invalid", f"{number} outside short range")
    return number


def _as_float(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise DecodeError(field, "invalid", repr(value))
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    raise DecodeError(field, "invalid", repr(value))


def _require(tree: Any, field: str, *path: str) -> Any:
    value = _lookup(tree, *path)
    if value is _MISSING:
        raise DecodeError(field, "missing", ".".join(path))
    return value


def _clamp_fraction(value: float) -> float:
    return min(1.0, max(0.0, value))


def _parse_coordinates(lat: Any, lon: Any) -> tuple[float, float] | None:
    if lat is _MISSING or lon is _MISSING:
        return None
    if isinstance(lat, str) and not lat.strip():
        return None
    if isinstance(lon, str) and not lon.strip():
        return None
    return _as_float(lat, "position"), _as_float(lon, "position")


def mesh_ip_to_node_id(raw: Any) -> int | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        address = ipaddress.ip_address(raw.strip())
    except ValueError:
        return None
    if address not in _MESH_NETWORK:
        return None
    third, fourth = address.packed[2], address.packed[3]
    if fourth == 0:
        return None
    return third * 255 + (fourth - 1)


def _meminfo_kb(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        matched = _LEADING_NUMBER.match(raw)
        if matched:
            return float(matched.group(1))
    return None


# sysinfo 10: the oldest layout, every field has a rule here


def _sysinfo_node_id(payload: dict[str, Any]) -> int:
    return _as_int(_require(_sysinfo_data(payload), "node_id", "common", "node"), "node_id")


def _sysinfo_clients_v10(payload: dict[str, Any]) -> int:
    raw = _require(_sysinfo_data(payload), "clients", "statistic", "accepted_user_count")
    return _as_short(raw, "clients")


def _sysinfo_position_v10(payload: dict[str, Any]) -> tuple[float, float] | None:
    raise DecodeError("position", "unsupported", "sysinfo 10 carries no gps section")


def _sysinfo_online(payload: dict[str, Any]) -> bool:
    # sysinfo is served by the node itself
    return True


def _sysinfo_role_v10(payload: dict[str, Any]) -> NodeRole:
    return NodeRole.STANDARD


def _sysinfo_firmware(payload: dict[str, Any]) -> str:
    value = _lookup(_sysinfo_data(payload), "firmware", "version")
    if value is _MISSING:
        return ""
    return str(value).strip()


def _sysinfo_community(payload: dict[str, Any]) -> Community:
    value = _lookup(_sysinfo_data(payload), "common", "community")
    return lookup_community(None if value is _MISSING else value)


def _sysinfo_gateway(payload: dict[str, Any]) -> int | None:
    value = _lookup(_sysinfo_data(payload), "bmxd", "gateways", "selected")
    if value is _MISSING:
        return None
    return mesh_ip_to_node_id(value)


def _sysinfo_load(payload: dict[str, Any]) -> float:
    uptime = _lookup(_sysinfo_data(payload), "system", "uptime")
    if not isinstance(uptime, str):
        return 0.0
    matched = _LOAD_AVERAGE.search(uptime)
    if not matched:
        return 0.0
    return float(matched.group(1))


def _sysinfo_memory(payload: dict[str, Any]) -> float:
    statistic = _lookup(_sysinfo_data(payload), "statistic")
    if statistic is _MISSING:
        return 0.0
    total = _meminfo_kb(_lookup(statistic, "meminfo_MemTotal"))
    free = _meminfo_kb(_lookup(statistic, "meminfo_MemFree"))
    if total is None or free is None or total <= 0:
        return 0.0
    return _clamp_fraction(1.0 - free / total)


# sysinfo 11: gps section, client counter moved to per-band statistics


def _sysinfo_clients_v11(payload: dict[str, Any]) -> int:
    raw = _require(_sysinfo_data(payload), "clients", "statistic", "client2g", "15min")
    return _as_short(raw, "clients")


def _sysinfo_position_v11(payload: dict[str, Any]) -> tuple[float, float] | None:
    gps = _lookup(_sysinfo_data(payload), "gps")
    if gps is _MISSING:
        return None
    return _parse_coordinates(_lookup(gps, "latitude"), _lookup(gps, "longitude"))


# sysinfo 13: node_type


def _sysinfo_role_v13(payload: dict[str, Any]) -> NodeRole:
    value = _lookup(_sysinfo_data(payload), "system", "node_type")
    return NodeRole.parse(None if value is _MISSING else value)


# sysinfo 14: 5 GHz clients reported separately


def _sysinfo_clients_v14(payload: dict[str, Any]) -> int:
    data = _sysinfo_data(payload)
    clients = _as_short(_require(data, "clients", "statistic", "client2g", "15min"), "clients")
    band_5g = _lookup(data, "statistic", "client5g", "15min")
    if band_5g is not _MISSING:
        clients += _as_short(band_5g, "clients")
    return _as_short(clients, "clients")


# api


def _api_node_id(payload: dict[str, Any]) -> int:
    return _as_int(_require(payload, "node_id", "id"), "node_id")


def _api_clients(payload: dict[str, Any]) -> int:
    return _as_short(_require(payload, "clients", "status", "clients"), "clients")


def _api_position(payload: dict[str, Any]) -> tuple[float, float] | None:
    position = _lookup(payload, "position")
    if position is _MISSING:
        return None
    return _parse_coordinates(_lookup(position, "lat"), _lookup(position, "long"))


def _api_online(payload: dict[str, Any]) -> bool:
    value = _require(payload, "online", "status", "online")
    if not isinstance(value, bool):
        raise DecodeError("online", "invalid", repr(value))
    return value


def _api_role(payload: dict[str, Any]) -> NodeRole:
    value = _lookup(payload, "role")
    return NodeRole.parse(None if value is _MISSING else value)


def _api_firmware(payload: dict[str, Any]) -> str:
    value = _lookup(payload, "firmware", "version")
    if value is _MISSING:
        return ""
    return str(value).strip()


def _api_community(payload: dict[str, Any]) -> Community:
    value = _lookup(payload, "community")
    return lookup_community(None if value is _MISSING else value)


def _api_gateway(payload: dict[str, Any]) -> int | None:
    value = _lookup(payload, "gateway")
    if value is _MISSING:
        return None
    try:
        return _as_int(value, "gateway")
    except DecodeError:
        return None


def _api_load(payload: dict[str, Any]) -> float:
    value = _lookup(payload, "system", "load_avg")
    if value is _MISSING:
        return 0.0
    return max(0.0, _as_float(value, "load_avg"))


def _api_memory(payload: dict[str, Any]) -> float:
    value = _lookup(payload, "system", "memory_usage")
    if value is _MISSING:
        return 0.0
    return _clamp_fraction(_as_float(value, "memory_usage"))


_RULES: dict[str, dict[str, FieldRule]] = {
    "10": {
        "node_id": _sysinfo_node_id,
        "clients": _sysinfo_clients_v10,
        "position": _sysinfo_position_v10,
        "online": _sysinfo_online,
        "role": _sysinfo_role_v10,
        "firmware_version": _sysinfo_firmware,
        "community": _sysinfo_community,
        "gateway": _sysinfo_gateway,
        "load_avg": _sysinfo_load,
        "memory_usage": _sysinfo_memory,
    },
    "11": {
        "clients": _sysinfo_clients_v11,
        "position": _sysinfo_position_v11,
    },
    "13": {
        "role": _sysinfo_role_v13,
    },
    "14": {
        "clients": _sysinfo_clients_v14,
    },
    "api": {
        "node_id": _api_node_id,
        "clients": _api_clients,
        "position": _api_position,
        "online": _api_online,
        "role": _api_role,
        "firmware_version": _api_firmware,
        "community": _api_community,
        "gateway": _api_gateway,
        "load_avg": _api_load,
        "memory_usage": _api_memory,
    },
}


def supported_schemas() -> tuple[str, ...]:
    return tuple(marker for chain in SCHEMA_CHAINS.values() for marker in chain)


def schema_lineage(version: str) -> tuple[str, ...]:
    """Return the markers consulted for ``version``, most specific first."""
    marker = normalize_marker(version)
    for chain in SCHEMA_CHAINS.values():
        if marker in chain:
            return tuple(reversed(chain[: chain.index(marker) + 1]))
    raise DecodeError("version", "unrecognized", marker)


def resolve_rule(version: str, field: str) -> FieldRule:
    if field not in FIELDS:
        raise ValueError(f"unknown node field: {field}")
    for marker in schema_lineage(version):
        rule = _RULES.get(marker, {}).get(field)
        if rule is not None:
            return rule
    raise DecodeError(field, "unsupported", normalize_marker(version))


def detect_schema(payload: dict[str, Any]) -> str:
    schema = payload.get("schema")
    if isinstance(schema, str) and schema.strip():
        return normalize_marker(schema)
    version = payload.get("version")
    if version is None and isinstance(payload.get("data"), dict):
        version = payload["data"].get("version")
    if version is not None and not isinstance(version, (bool, dict, list)):
        return normalize_marker(version)
    if "id" in payload and isinstance(payload.get("status"), dict):
        return "api"
    raise DecodeError("version", "missing")


def extract_field(payload: dict[str, Any], version: str, field: str) -> Any:
    return resolve_rule(version, field)(payload)


def decode(payload: Any, declared_version: str | None = None) -> NodeRecord:
    if not isinstance(payload, dict):
        raise DecodeError("payload", "invalid", type(payload).__name__)
    version = detect_schema(payload) if declared_version is None else normalize_marker(declared_version)
    schema_lineage(version)

    try:
        position = extract_field(payload, version, "position")
    except DecodeError as error:
        if error.reason != "unsupported":
            raise
        position = None
    latitude, longitude = position if position is not None else (None, None)

    return NodeRecord(
        node_id=extract_field(payload, version, "node_id"),
        clients=extract_field(payload, version, "clients"),
        online=extract_field(payload, version, "online"),
        community=extract_field(payload, version, "community"),
        role=extract_field(payload, version, "role"),
        firmware_version=extract_field(payload, version, "firmware_version"),
        latitude=latitude,
        longitude=longitude,
        gateway=extract_field(payload, version, "gateway"),
        load_avg=extract_field(payload, version, "load_avg"),
        memory_usage=extract_field(payload, version, "memory_usage"),
        schema=version,
    )
