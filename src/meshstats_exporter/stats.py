from __future__ import annotations

import threading
from dataclasses import dataclass, field

from meshstats_exporter.models import GeneralStatType, NodeRecord, VpnKind


@dataclass(frozen=True)
class AggregateSnapshot:
    nodes: tuple[NodeRecord, ...] = ()
    versions: dict[str, int] = field(default_factory=dict)
    communities: dict[str, int] = field(default_factory=dict)
    vpn_usage: dict[VpnKind, float] = field(default_factory=dict)
    gateway_usage: dict[int, int] = field(default_factory=dict)
    gateway_clients: dict[int, int] = field(default_factory=dict)
    general_stats: dict[GeneralStatType, float] = field(default_factory=dict)

    @property
    def node_ids(self) -> tuple[int, ...]:
        return tuple(record.node_id for record in self.nodes)


class StatsAggregator:
    """Accumulates one scan cycle of node records and sampled scalars.

    Every mapping is guarded by its own lock, so concurrent workers never block
    each other on unrelated mappings. A reader may observe one mapping updated
    and another not yet; callers snapshot only after ingestion has finished.

    ``record_node`` must be called exactly once per node per cycle: the node id
    set ignores repeats but the version, community and gateway counters do not.
    """

    def __init__(self) -> None:
        self._nodes: dict[int, NodeRecord] = {}
        self._nodes_lock = threading.Lock()
        self._versions: dict[str, int] = {}
        self._versions_lock = threading.Lock()
        self._communities: dict[str, int] = {}
        self._communities_lock = threading.Lock()
        self._vpn_usage: dict[VpnKind, float] = {}
        self._vpn_lock = threading.Lock()
        self._gateway_usage: dict[int, int] = {}
        self._gateway_usage_lock = threading.Lock()
        self._gateway_clients: dict[int, int] = {}
        self._gateway_clients_lock = threading.Lock()
        self._general_stats: dict[GeneralStatType, float] = {}
        self._general_lock = threading.Lock()

    @property
    def node_count(self) -> int:
        with self._nodes_lock:
            return len(self._nodes)

    def record_node(self, record: NodeRecord) -> None:
        with self._nodes_lock:
            self._nodes[record.node_id] = record
        self.add_version(record.firmware_version)
        self.add_community(record.community.name)
        self.add_gateway_usage(record.gateway)
        self.add_gateway_clients(record.gateway, record.clients)

    def record_general_stat(self, kind: GeneralStatType, value: float) -> None:
        with self._general_lock:
            self._general_stats[kind] = float(value)

    def record_vpn_usage(self, kind: VpnKind, value: float) -> None:
        with self._vpn_lock:
            self._vpn_usage[kind] = float(value)

    def add_version(self, version: str) -> None:
        # an empty version means the node has not reported one yet
        if not version:
            return
        with self._versions_lock:
            self._versions[version] = self._versions.get(version, 0) + 1

    def add_community(self, name: str) -> None:
        with self._communities_lock:
            self._communities[name] = self._communities.get(name, 0) + 1

    def add_gateway_usage(self, gateway: int | None) -> None:
        if gateway is None or gateway < 0:
            return
        with self._gateway_usage_lock:
            self._gateway_usage[gateway] = self._gateway_usage.get(gateway, 0) + 1

    def add_gateway_clients(self, gateway: int | None, clients: int) -> None:
        if gateway is None or gateway < 0:
            return
        with self._gateway_clients_lock:
            self._gateway_clients[gateway] = self._gateway_clients.get(gateway, 0) + clients

    def snapshot(self) -> AggregateSnapshot:
        with self._nodes_lock:
            nodes = tuple(self._nodes.values())
        with self._versions_lock:
            versions = dict(self._versions)
        with self._communities_lock:
            communities = dict(self._communities)
        with self._vpn_lock:
            vpn_usage = dict(self._vpn_usage)
        with self._gateway_usage_lock:
            gateway_usage = dict(self._gateway_usage)
        with self._gateway_clients_lock:
            gateway_clients = dict(self._gateway_clients)
        with self._general_lock:
            general_stats = dict(self._general_stats)
        return AggregateSnapshot(
            nodes=nodes,
            versions=versions,
            communities=communities,
            vpn_usage=vpn_usage,
            gateway_usage=gateway_usage,
            gateway_clients=gateway_clients,
            general_stats=general_stats,
        )

    def reset(self) -> None:
        with self._nodes_lock:
            self._nodes.clear()
        with self._versions_lock:
            self._versions.clear()
        with self._communities_lock:
            self._communities.clear()
        with self._vpn_lock:
            self._vpn_usage.clear()
        with self._gateway_usage_lock:
            self._gateway_usage.clear()
        with self._gateway_clients_lock:
            self._gateway_clients.clear()
        with self._general_lock:
            self._general_stats.clear()
