import threading
from datetime import datetime, timedelta, timezone

import pytest

from optinfra.pms import pms_metrics
from optinfra.pms.network import Network, NodeState, schedule
from optinfra.pms.p2p_client import Connectedness, P2PClientError, PeerDump, PeerInfo
from optinfra.pms.pms_config import Config, NetworkConfig, NodeConfig


def _peer(peer_id, connectedness=Connectedness.NOT_CONNECTED, addresses=None):
    return PeerInfo(peer_id=peer_id, connectedness=connectedness, addresses=addresses or [])


def _dump(*peers):
    return PeerDump(peers={p.peer_id: p for p in peers})


def _three_node_state(network, connectedness=Connectedness.NOT_CONNECTED):
    network.state.nodes = {
        "p1": NodeState(self_info=_peer("peer_id_1"), peers=_dump(_peer("peer_id_2", connectedness))),
        "p2": NodeState(self_info=_peer("peer_id_2"), peers=_dump(_peer("peer_id_1", connectedness))),
        "p3": NodeState(self_info=_peer("peer_id_3"), peers=PeerDump()),
    }
    network.state.nodes_by_peer_id = {"peer_id_1": "p1", "peer_id_2": "p2", "peer_id_3": "p3"}


class FakeClient:
    def __init__(self, name, calls, self_info=None, peers=None, fail_on=None):
        self.name = name
        self.calls = calls
        self._self_info = self_info
        self._peers = peers
        self.fail_on = fail_on

    def _record(self, method, arg):
        self.calls.append((self.name, method, arg))
        if method == self.fail_on:
            raise P2PClientError("boom")

    def self_info(self):
        if self.fail_on == "self_info":
            raise P2PClientError("boom")
        return self._self_info

    def peers(self, connected):
        return self._peers

    def connect_peer(self, addr):
        self._record("connect_peer", addr)

    def disconnect_peer(self, peer_id):
        self._record("disconnect_peer", peer_id)

    def unblock_peer(self, peer_id):
        self._record("unblock_peer", peer_id)

    def protect_peer(self, peer_id):
        self._record("protect_peer", peer_id)

    def unprotect_peer(self, peer_id):
        self._record("unprotect_peer", peer_id)


def _factory(clients):
    return lambda config, network, node_name, rpc_url: clients[node_name]


def test_cleanup_removes_expired_state():
    network = Network(
        Config(node_state_expiration=timedelta(hours=10)), "net", NetworkConfig(), {}
    )
    now = datetime.now(timezone.utc)
    network.state.nodes = {
        "clean_me": NodeState(self_info=_peer("clean_me"), updated_at=now - timedelta(hours=11)),
        "keep_me": NodeState(self_info=_peer("keep_me"), updated_at=now),
    }
    network.state.nodes_by_peer_id = {"clean_me": "clean_me", "keep_me": "keep_me"}
    assert len(network.state.nodes) == 2
    network.cleanup()
    assert list(network.state.nodes) == ["keep_me"]
    assert network.state.nodes_by_peer_id == {"keep_me": "keep_me"}


def test_update_graph_with_known_peers():
    network = Network(Config(), "net", NetworkConfig(), {})
    _three_node_state(network)
    network.update_graph()
    assert len(network.state.nodes) == 3
    assert network.state.nodes["p1"].known_peers == ["p2"]
    assert network.state.nodes["p2"].known_peers == ["p1"]
    assert network.state.nodes["p3"].known_peers == []


def test_resolve_state_connects_to_known_peers():
    calls = set()
    network = Network(
        Config(),
        "net",
        NetworkConfig(members=["p1", "p2", "p3"]),
        {},
        connect_peer_override=lambda node, peer: calls.add((node, peer)),
    )
    _three_node_state(network)
    network.resolve_state()
    assert len(network.state.nodes) == 3
    assert {("p1", "p3"), ("p2", "p3"), ("p3", "p1"), ("p3", "p2")} <= calls


def test_resolve_state_skips_connected_peers():
    calls = set()
    network = Network(
        Config(),
        "net",
        NetworkConfig(members=["p1", "p2", "p3"]),
        {},
        connect_peer_override=lambda node, peer: calls.add((node, peer)),
    )
    _three_node_state(network, Connectedness.CONNECTED)
    network.resolve_state()
    assert calls == {("p1", "p3"), ("p2", "p3"), ("p3", "p1"), ("p3", "p2")}


def test_poll_node_stores_state_and_handles_peer_id_change():
    calls = []
    client = FakeClient("p1", calls, self_info=_peer("id_a"), peers=_dump(_peer("id_b")))
    network = Network(Config(), "net", NetworkConfig(), {}, client_factory=_factory({"p1": client}))
    network.poll_node("p1", NodeConfig(rpc_address="http://p1.example.com"))
    assert network.state.nodes["p1"].self_info.peer_id == "id_a"
    assert network.state.nodes_by_peer_id == {"id_a": "p1"}

    client._self_info = _peer("id_c")
    network.poll_node("p1", NodeConfig(rpc_address="http://p1.example.com"))
    assert network.state.nodes_by_peer_id == {"id_c": "p1"}
    assert list(network.state.nodes["p1"].peers.peers) == ["id_b"]


def test_poll_node_error_leaves_state_untouched():
    client = FakeClient("p1", [], fail_on="self_info")
    network = Network(Config(), "net", NetworkConfig(), {}, client_factory=_factory({"p1": client}))
    network.poll_node("p1", NodeConfig(rpc_address="http://p1.example.com"))
    assert network.state.nodes == {}


def _connect_setup(node_cfg, peer_cfg, fail_on=None, peer_addresses=None):
    calls = []
    clients = {
        "p1": FakeClient("p1", calls, fail_on=fail_on),
        "p2": FakeClient("p2", calls),
    }
    network = Network(
        Config(),
        "net-connect",
        NetworkConfig(members=["p1", "p2"]),
        {"p1": node_cfg, "p2": peer_cfg},
        client_factory=_factory(clients),
    )
    network.state.nodes = {
        "p1": NodeState(self_info=_peer("peer_id_1")),
        "p2": NodeState(self_info=_peer("peer_id_2", addresses=peer_addresses)),
    }
    return network, calls


def test_connect_peer_full_sequence_with_placeholder():
    network, calls = _connect_setup(
        NodeConfig(rpc_address="http://p1.example.com", cluster="a"),
        NodeConfig(
            rpc_address="http://p2.example.com",
            cluster="a",
            peer_address="/dns4/p2.example.com/tcp/9222/p2p/{peer_id}",
            peer_address_local="/dns4/p2.local/tcp/9222/p2p/{peer_id}",
        ),
    )
    labels = ("net-connect", "p1", "p2", "peer_id_2", "/dns4/p2.local/tcp/9222/p2p/peer_id_2")
    before = pms_metrics.RESOLVED_STATE.value(labels)
    network.connect_peer("p1", "p2")
    assert calls == [
        ("p1", "unprotect_peer", "peer_id_2"),
        ("p2", "unprotect_peer", "peer_id_1"),
        ("p1", "unblock_peer", "peer_id_2"),
        ("p2", "unblock_peer", "peer_id_1"),
        ("p1", "disconnect_peer", "peer_id_2"),
        ("p2", "disconnect_peer", "peer_id_1"),
        ("p1", "connect_peer", "/dns4/p2.local/tcp/9222/p2p/peer_id_2"),
        ("p1", "protect_peer", "peer_id_2"),
    ]
    assert pms_metrics.RESOLVED_STATE.value(labels) == before + 1


def test_connect_peer_falls_back_to_discovered_address():
    network, calls = _connect_setup(
        NodeConfig(rpc_address="http://p1.example.com", cluster="a"),
        NodeConfig(rpc_address="http://p2.example.com", cluster="b", peer_address_local="/ignored"),
        peer_addresses=["/ip4/10.0.0.2/tcp/9222/p2p/peer_id_2"],
    )
    network.connect_peer("p1", "p2")
    assert ("p1", "connect_peer", "/ip4/10.0.0.2/tcp/9222/p2p/peer_id_2") in calls


def test_connect_peer_stops_on_error():
    network, calls = _connect_setup(
        NodeConfig(rpc_address="http://p1.example.com"),
        NodeConfig(rpc_address="http://p2.example.com", peer_address="/ip4/10.0.0.2"),
        fail_on="unprotect_peer",
    )
    network.connect_peer("p1", "p2")
    assert calls == [("p1", "unprotect_peer", "peer_id_2")]


@pytest.mark.parametrize(
    "node_cfg, peer_cfg",
    [
        (
            NodeConfig(rpc_address="http://p1.example.com", prevent_outbound=True),
            NodeConfig(rpc_address="http://p2.example.com", peer_address="/ip4/10.0.0.2"),
        ),
        (
            NodeConfig(rpc_address="http://p1.example.com"),
            NodeConfig(rpc_address="http://p2.example.com", peer_address="/ip4/10.0.0.2", prevent_inbound=True),
        ),
    ],
)
def test_connect_peer_respects_prevent_flags(node_cfg, peer_cfg):
    network, calls = _connect_setup(node_cfg, peer_cfg)
    network.connect_peer("p1", "p2")
    assert calls == []


def test_report_metrics_healthness():
    network = Network(Config(), "net-report", NetworkConfig(members=["p1", "p2", "p3"]), {})
    _three_node_state(network, Connectedness.CONNECTED)
    network.report_metrics()
    assert pms_metrics.NETWORK_MEMBER_COUNT.value(("net-report",)) == 3
    assert pms_metrics.NETWORK_PEER_HEALTHNESS.value(("net-report",)) == pytest.approx(2 / 6)
    assert pms_metrics.PEER_STATE_CONNECTEDNESS.value(
        ("net-report", "p1", "peer_id_1", "known", "connected")
    ) == 1
    assert pms_metrics.PEER_STATE_CONNECTEDNESS.value(
        ("net-report", "p3", "peer_id_3", "known", "connected")
    ) == 0


def test_tick_polls_and_reports_without_connecting_in_dry_run():
    connects = []
    calls = []
    clients = {
        "p1": FakeClient("p1", calls, self_info=_peer("id_1"), peers=_dump(_peer("id_2", Connectedness.CONNECTED))),
        "p2": FakeClient("p2", calls, self_info=_peer("id_2"), peers=_dump(_peer("id_1", Connectedness.CONNECTED))),
    }
    nodes = {
        "p1": NodeConfig(rpc_address="http://p1.example.com"),
        "p2": NodeConfig(rpc_address="http://p2.example.com"),
    }
    network = Network(
        Config(dry_run=True, node_state_expiration=timedelta(hours=1)),
        "net-tick",
        NetworkConfig(members=["p1", "p2"]),
        nodes,
        client_factory=_factory(clients),
        connect_peer_override=lambda node, peer: connects.append((node, peer)),
    )
    network.tick()
    assert network.state.nodes["p1"].known_peers == ["p2"]
    assert network.state.nodes["p2"].known_peers == ["p1"]
    assert pms_metrics.NETWORK_PEER_HEALTHNESS.value(("net-tick",)) == 1.0
    assert connects == []


def test_schedule_runs_until_stopped():
    stop = threading.Event()
    count = []

    def handler():
        count.append(1)
        if len(count) == 3:
            stop.set()

    thread = schedule(0.01, handler, stop)
    thread.join(timeout=2)
    assert not thread.is_alive()
    assert len(count) == 3