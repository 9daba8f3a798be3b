from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DecodeError(Exception):
    def __init__(self, field: str, reason: str, detail: str | None = None) -> None:
        self.field = field
        self.reason = reason
        self.detail = detail
        message = f"{field}: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class NodeRole(Enum):
    STANDARD = "node"
    MOBILE = "mobile"
    SERVER = "server"

    @classmethod
    def parse(cls, raw: object) -> NodeRole:
        if isinstance(raw, str):
            token = raw.strip().lower()
            for role in cls:
                if role.value == token:
                    return role
        return cls.STANDARD


class VpnKind(Enum):
    VTUN = "vtun"
    FASTD = "fastd"
    WIREGUARD = "wireguard"
    UNKNOWN = "unknown"

    @property
    def vpn_id(self) -> str:
        return self.value

    @classmethod
    def parse(cls, raw: object) -> VpnKind:
        if isinstance(raw, str):
            token = raw.strip().lower()
            if token == "wg":
                return cls.WIREGUARD
            for kind in cls:
                if kind.value == token:
                    return kind
        return cls.UNKNOWN


class GeneralStatType(Enum):
    NODES = "nodes"
    NODES_ONLINE = "nodes_online"
    CLIENTS = "clients"
    GATEWAYS = "gateways"
    DECODE_ERRORS = "decode_errors"
    CYCLE_DURATION = "cycle_duration"

    @property
    def measurement(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Community:
    name: str


DEFAULT_COMMUNITY = Community("Dresden")

_COMMUNITY_CATALOG: dict[str, Community] = {
    "dresden": DEFAULT_COMMUNITY,
    "dd": DEFAULT_COMMUNITY,
    "meissen": Community("Meißen"),
    "meißen": Community("Meißen"),
    "pirna": Community("Pirna"),
    "freiberg": Community("Freiberg"),
    "radebeul": Community("Radebeul"),
    "ol": Community("OL"),
    "leipzig": Community("Leipzig"),
}


def lookup_community(raw: object) -> Community:
    if not isinstance(raw, str) or not raw.strip():
        return DEFAULT_COMMUNITY
    name = raw.strip()
    return _COMMUNITY_CATALOG.get(name.lower(), Community(name))


@dataclass(frozen=True)
class NodeRecord:
    node_id: int
    clients: int
    online: bool
    community: Community = DEFAULT_COMMUNITY
    role: NodeRole = NodeRole.STANDARD
    firmware_version: str = ""
    latitude: float | None = None
    longitude: float | None = None
    gateway: int | None = None
    load_avg: float = 0.0
    memory_usage: float = 0.0
    schema: str = ""

    @property
    def has_gateway(self) -> bool:
        return self.gateway is not None and self.gateway >= 0

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None
