import threading

from meshstats_exporter.models import Community, GeneralStatType, NodeRecord, VpnKind
from meshstats_exporter.stats import StatsAggregator


def _node(node_id: int, *, clients: int = 0, gateway: int | None = None, version: str = "7.1.2") -> NodeRecord:
    return NodeRecord(
        node_id=node_id,
        clients=clients,
        online=True,
        community=Community("Dresden"),
        firmware_version=version,
        gateway=gateway,
    )


def test_gateway_usage_and_client_sums() -> None:
    aggregator = StatsAggregator()
    aggregator.record_node(_node(7, clients=3, gateway=2))
    aggregator.record_node(_node(8, clients=5, gateway=2))
    aggregator.record_node(_node(2, clients=1))

    snapshot = aggregator.snapshot()
    assert snapshot.gateway_usage == {2: 2}
    assert snapshot.gateway_clients == {2: 8}
    assert snapshot.node_ids == (7, 8, 2)


def test_nodes_without_gateway_are_never_counted() -> None:
    aggregator = StatsAggregator()
    aggregator.record_node(_node(1, clients=4, gateway=-1))
    aggregator.record_node(_node(2, clients=4, gateway=None))
    aggregator.add_gateway_usage(-5)
    aggregator.add_gateway_clients(-5, 10)

    snapshot = aggregator.snapshot()
    assert snapshot.gateway_usage == {}
    assert snapshot.gateway_clients == {}


def test_empty_version_is_skipped() -> None:
    aggregator = StatsAggregator()
    aggregator.record_node(_node(1, version="1.2.3"))
    aggregator.record_vpn_usage(VpnKind.FASTD, 3)
    aggregator.record_node(_node(2, version="1.2.3"))
    aggregator.record_node(_node(3, version=""))

    assert aggregator.snapshot().versions == {"1.2.3": 2}


def test_record_node_twice_keeps_one_id_but_counts_twice() -> None:
    aggregator = StatsAggregator()
    record = _node(9, clients=2, gateway=4)
    aggregator.record_node(record)
    aggregator.record_node(record)

    snapshot = aggregator.snapshot()
    assert aggregator.node_count == 1
    assert snapshot.versions == {"7.1.2": 2}
    assert snapshot.communities == {"Dresden": 2}
    assert snapshot.gateway_usage == {4: 2}
    assert snapshot.gateway_clients == {4: 4}


def test_general_stats_and_vpn_usage_overwrite() -> None:
    aggregator = StatsAggregator()
    aggregator.record_general_stat(GeneralStatType.NODES, 10)
    aggregator.record_general_stat(GeneralStatType.NODES, 12)
    aggregator.record_vpn_usage(VpnKind.VTUN, 5)
    aggregator.record_vpn_usage(VpnKind.VTUN, 2)

    snapshot = aggregator.snapshot()
    assert snapshot.general_stats == {GeneralStatType.NODES: 12.0}
    assert snapshot.vpn_usage == {VpnKind.VTUN: 2}


def test_snapshot_is_detached_and_reset_clears_everything() -> None:
    aggregator = StatsAggregator()
    aggregator.record_node(_node(1, clients=1, gateway=3))
    aggregator.record_vpn_usage(VpnKind.WIREGUARD, 1)
    aggregator.record_general_stat(GeneralStatType.CLIENTS, 1)

    before = aggregator.snapshot()
    aggregator.record_node(_node(2, clients=1, gateway=3))
    assert before.gateway_usage == {3: 1}

    aggregator.reset()
    after = aggregator.snapshot()
    assert aggregator.node_count == 0
    assert after.nodes == ()
    assert after.versions == {}
    assert after.communities == {}
    assert after.vpn_usage == {}
    assert after.gateway_usage == {}
    assert after.gateway_clients == {}
    assert after.general_stats == {}


def test_concurrent_workers_on_disjoint_nodes() -> None:
    aggregator = StatsAggregator()
    workers = 8
    per_worker = 250

    def work(offset: int) -> None:
        for index in range(per_worker):
            node_id = offset * per_worker + index
            aggregator.record_node(_node(node_id, clients=1, gateway=1000 + node_id % 3))
            aggregator.record_general_stat(GeneralStatType.NODES, node_id)

    threads = [threading.Thread(target=work, args=(offset,)) for offset in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = aggregator.snapshot()
    total = workers * per_worker
    assert aggregator.node_count == total
    assert snapshot.versions == {"7.1.2": total}
    assert snapshot.communities == {"Dresden": total}
    assert sum(snapshot.gateway_usage.values()) == total
    assert sum(snapshot.gateway_clients.values()) == total
    assert set(snapshot.gateway_usage) == {1000, 1001, 1002}


def test_mappings_lock_independently() -> None:
    aggregator = StatsAggregator()
    finished = threading.Event()

    def update_other_mappings() -> None:
        aggregator.record_vpn_usage(VpnKind.FASTD, 4)
        aggregator.record_general_stat(GeneralStatType.GATEWAYS, 1)
        aggregator.add_community("Pirna")
        finished.set()

    # holding the version lock must not stall updates to unrelated mappings
    with aggregator._versions_lock:
        worker = threading.Thread(target=update_other_mappings)
        worker.start()
        assert finished.wait(timeout=5.0)
    worker.join()

    snapshot = aggregator.snapshot()
    assert snapshot.vpn_usage == {VpnKind.FASTD: 4}
    assert snapshot.communities == {"Pirna": 1}
    assert snapshot.versions == {}


def test_record_node_keeps_latest_record_per_id() -> None:
    aggregator = StatsAggregator()
    aggregator.record_node(_node(51, clients=7))
    aggregator.record_node(_node(52, clients=1))
    aggregator.record_node(NodeRecord(node_id=51, clients=1, online=False))

    snapshot = aggregator.snapshot()
    assert snapshot.node_ids == (51, 52)
    assert snapshot.nodes[0].clients == 1
    assert snapshot.nodes[0].online is False


def test_vpn_usage_is_stored_as_float() -> None:
    aggregator = StatsAggregator()
    aggregator.record_vpn_usage(VpnKind.VTUN, 3)

    value = aggregator.snapshot().vpn_usage[VpnKind.VTUN]
    assert isinstance(value, float)
    assert value == 3.0
