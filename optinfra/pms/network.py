"""Peer graph of one network: polling, reporting and reconnecting its members."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Protocol

from optinfra.pms import pms_metrics as metrics
from optinfra.pms.p2p_client import (
    Connectedness,
    InstrumentedP2PClient,
    P2PClientError,
    PeerDump,
    PeerInfo,
)
from optinfra.pms.pms_config import Config, NetworkConfig, NodeConfig

log = logging.getLogger(__name__)

PEER_ID_PLACEHOLDER = "{peer_id}"
_KNOWNNESS = ("known", "unknown")
_CONNECTEDNESS = ("notconnected", "connected", "canconnect", "cannotconnect")


class _P2PClient(Protocol):
    def self_info(self) -> PeerInfo: ...
    def peers(self, connected: bool) -> PeerDump: ...
    def connect_peer(self, addr: str) -> None: ...
    def disconnect_peer(self, peer_id: str) -> None: ...
    def unblock_peer(self, peer_id: str) -> None: ...
    def protect_peer(self, peer_id: str) -> None: ...
    def unprotect_peer(self, peer_id: str) -> None: ...


ClientFactory = Callable[[Config, str, str, str], _P2PClient]
ConnectPeerOverride = Callable[[str, str], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _seconds(interval: timedelta | float) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


def schedule(
    interval: timedelta | float,
    handler: Callable[[], None],
    stop_event: threading.Event,
) -> threading.Thread:
    """Run ``handler`` every ``interval`` in a daemon thread until ``stop_event`` is set."""
    period = _seconds(interval)

    def loop() -> None:
        while True:
            started = time.monotonic()
            try:
                handler()
            except Exception:  # keep the schedule alive
                log.exception("scheduled handler failed")
            remaining = max(0.0, period - (time.monotonic() - started))
            if stop_event.wait(remaining):
                return

    thread = threading.Thread(target=loop, name="pms-schedule", daemon=True)
    thread.start()
    return thread


@dataclass
class NodeState:
    """Last known state of one node."""

    self_info: PeerInfo
    peers: PeerDump = field(default_factory=PeerDump)
    known_peers: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class NetworkState:
    """Node states by node name, and node names by peer id."""

    nodes: dict[str, NodeState] = field(default_factory=dict)
    nodes_by_peer_id: dict[str, str] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


def _default_client_factory(
    config: Config, network: str, node_name: str, rpc_url: str
) -> _P2PClient:
    return InstrumentedP2PClient(config, network, node_name, rpc_url)


class Network:
    """Keeps the members of one network connected to each other."""

    def __init__(
        self,
        config: Config,
        name: str,
        network_config: NetworkConfig,
        nodes_config: Mapping[str, NodeConfig],
        client_factory: ClientFactory | None = None,
        connect_peer_override: ConnectPeerOverride | None = None,
    ):
        self.config = config
        self.name = name
        self.network_config = network_config
        self.nodes_config = dict(nodes_config)
        self.state = NetworkState()
        self._client_factory = client_factory or _default_client_factory
        self._connect_peer_override = connect_peer_override
        self._stop_event: threading.Event | None = None

    def start(self) -> None:
        """Start ticking every poll interval in the background."""
        self._stop_event = threading.Event()
        schedule(self.config.poll_interval, self.tick, self._stop_event)

    def shutdown(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def tick(self) -> None:
        log.debug("tick network=%s", self.name)
        self.cleanup()
        self.poll()
        self.update_graph()
        self.report_metrics()
        if not self.config.dry_run:
            self.resolve_state()
        log.debug("tick done")

    def cleanup(self) -> None:
        """Forget nodes whose state is older than the expiration period."""
        now = _now()
        for node_name, node_state in list(self.state.nodes.items()):
            if now - node_state.updated_at > self.config.node_state_expiration:
                peer_id = node_state.self_info.peer_id
                log.warning(
                    "node state expired node=%s node_peer_id=%s updated_at=%s",
                    node_name,
                    peer_id,
                    node_state.updated_at,
                )
                with self.state.lock:
                    self.state.nodes.pop(node_name, None)
                    self.state.nodes_by_peer_id.pop(peer_id, None)

    def poll(self) -> None:
        for node_name, node_config in self.nodes_config.items():
            self.poll_node(node_name, node_config)

    def _client(self, node_name: str, rpc_url: str) -> _P2PClient | None:
        try:
            return self._client_factory(self.config, self.name, node_name, rpc_url)
        except P2PClientError:
            return None

    def poll_node(self, node_name: str, node_config: NodeConfig) -> None:
        """Fetch a node's identity and peers and store them."""
        log.debug("polling node name=%s rpc=%s", node_name, node_config.rpc_address)
        client = self._client(node_name, node_config.rpc_address)
        if client is None:
            return

        try:
            self_info = client.self_info()
        except P2PClientError as exc:
            log.error("cant get self node=%s err=%s", node_name, exc)
            return
        log.debug("got self node=%s peer_id=%s", node_name, self_info.peer_id)

        try:
            peers = client.peers(False)
        except P2PClientError as exc:
            log.error("cant get peers node=%s err=%s", node_name, exc)
            return
        log.debug("got peers node=%s peer_id=%s count=%d", node_name, self_info.peer_id, len(peers.peers))

        node_state = NodeState(self_info=self_info, peers=peers, updated_at=_now())
        new_peer_id = self_info.peer_id
        with self.state.lock:
            previous = self.state.nodes.get(node_name)
            if previous is not None:
                old_peer_id = previous.self_info.peer_id
                if old_peer_id != new_peer_id:
                    self.state.nodes_by_peer_id.pop(old_peer_id, None)
                    log.warning(
                        "peer id changed node=%s old_peer_id=%s new_peer_id=%s",
                        node_name,
                        old_peer_id,
                        new_peer_id,
                    )
            self.state.nodes[node_name] = node_state
            self.state.nodes_by_peer_id[new_peer_id] = node_name

    def update_graph(self) -> None:
        """Name each node's peers that are members of this network."""
        for node_state in list(self.state.nodes.values()):
            own_id = node_state.self_info.peer_id
            known_peers = [
                self.state.nodes_by_peer_id[peer_id]
                for peer_id in node_state.peers.peers
                if peer_id != own_id and peer_id in self.state.nodes_by_peer_id
            ]
            with self.state.lock:
                node_state.known_peers = known_peers

        log.info("network mapping map=%s", self.state.nodes_by_peer_id)
        for node_name, node_state in self.state.nodes.items():
            log.info(
                "node state node=%s node_peer_id=%s peers=%s",
                node_name,
                node_state.self_info.peer_id,
                node_state.known_peers,
            )

    def _is_healthy(self, peer: PeerInfo, known: bool) -> bool:
        return known and str(peer.connectedness).lower() == "connected"

    def report_metrics(self) -> None:
        log.debug("network state network=%s nodes=%d", self.name, len(self.state.nodes))
        healthy_peers = 0

        for node_name, node_state in list(self.state.nodes.items()):
            node_peer_id = node_state.self_info.peer_id
            counts: dict[tuple[str, str], int] = {}

            for peer_peer_id, peer_state in node_state.peers.peers.items():
                if peer_peer_id == node_peer_id:
                    continue
                peer_name = self.state.nodes_by_peer_id.get(peer_peer_id)
                known = peer_name is not None
                knownness = "known" if known else "unknown"
                connectedness = str(peer_state.connectedness).lower()

                if self._is_healthy(peer_state, known):
                    healthy_peers += 1
                    metrics.record_known_peer_state_latency(
                        self.name,
                        node_name,
                        node_peer_id,
                        peer_name,
                        peer_peer_id,
                        peer_state.latency,
                    )
                key = (knownness, connectedness)
                counts[key] = counts.get(key, 0) + 1

            for knownness in _KNOWNNESS:
                for connectedness in _CONNECTEDNESS:
                    metrics.record_peer_state_connectedness(
                        self.name, node_name, node_peer_id, knownness, connectedness, 0
                    )
            for (knownness, connectedness), count in counts.items():
                metrics.record_peer_state_connectedness(
                    self.name, node_name, node_peer_id, knownness, connectedness, count
                )

        members = len(self.network_config.members)
        metrics.record_network_member_count(self.name, members)

        # N fully connected members show N * (N - 1) connections
        expected = float(members * (members - 1))
        if expected:
            percentage = healthy_peers / expected
        else:
            percentage = math.nan if healthy_peers == 0 else math.inf
        metrics.record_network_peer_healthness(self.name, percentage)

    def resolve_state(self) -> None:
        """Connect every node to each expected member it is not connected to."""
        for node_name, node_state in list(self.state.nodes.items()):
            expected = {
                member: False
                for member in self.network_config.members
                if member != node_name
            }
            for peer_peer_id, peer in node_state.peers.peers.items():
                peer_name = self.state.nodes_by_peer_id.get(peer_peer_id)
                if self._is_healthy(peer, peer_name is not None):
                    expected[peer_name] = True
            for peer_name, connected in expected.items():
                if not connected:
                    self.connect_peer(node_name, peer_name)

    def connect_peer(self, node_name: str, peer_name: str) -> None:
        """Reset the link between two nodes and connect the first to the second."""
        if self._connect_peer_override is not None:
            self._connect_peer_override(node_name, peer_name)
            return

        node_state = self.state.nodes.get(node_name)
        node_config = self.nodes_config.get(node_name)
        peer_state = self.state.nodes.get(peer_name)
        peer_config = self.nodes_config.get(peer_name)

        if node_state is None:
            log.error("node state not found network=%s node=%s", self.name, node_name)
            return
        if node_config is None:
            log.error("node config not found network=%s node=%s", self.name, node_name)
            return
        if peer_state is None:
            log.error(
                "peer state not found network=%s node=%s peer=%s", self.name, node_name, peer_name
            )
            return
        if peer_config is None:
            log.error(
                "peer config not found network=%s node=%s peer=%s", self.name, node_name, peer_name
            )
            return
        if node_config.prevent_outbound:
            log.debug("node has outbound disabled network=%s node=%s", self.name, node_name)
            return
        if peer_config.prevent_inbound:
            log.debug("peer has inbound disabled network=%s peer=%s", self.name, peer_name)
            return

        client = self._client(node_name, node_config.rpc_address)
        if client is None:
            return
        peer_client = self._client(peer_name, peer_config.rpc_address)
        if peer_client is None:
            return

        # configured addresses win over discovered ones
        peer_addr = peer_config.peer_address
        if node_config.cluster == peer_config.cluster and peer_config.peer_address_local:
            peer_addr = peer_config.peer_address_local
        if not peer_addr:
            if not peer_state.self_info.addresses:
                log.error(
                    "no address known for peer network=%s node=%s peer=%s",
                    self.name,
                    node_name,
                    peer_name,
                )
                return
            peer_addr = peer_state.self_info.addresses[0]

        peer_id = peer_config.peer_id or peer_state.self_info.peer_id

        if peer_addr.startswith("/dns4/") and peer_addr.endswith("/p2p/" + PEER_ID_PLACEHOLDER):
            peer_addr = peer_addr[: -len(PEER_ID_PLACEHOLDER)] + peer_id

        metrics.record_resolved_state(self.name, node_name, peer_name, peer_id, peer_addr)
        log.info(
            "connecting to peer network=%s node=%s node_cluster=%s rpc_address=%s peer=%s "
            "peer_id=%s peer_cluster=%s peer_addr=%s",
            self.name,
            node_name,
            node_config.cluster,
            node_config.rpc_address,
            peer_name,
            peer_id,
            peer_config.cluster,
            peer_addr,
        )

        remote_id = peer_state.self_info.peer_id
        local_id = node_state.self_info.peer_id
        steps = (
            ("cant unprotect peer", client.unprotect_peer, remote_id),
            ("cant unprotect peer (reverse)", peer_client.unprotect_peer, local_id),
            ("cant unblock peer", client.unblock_peer, remote_id),
            ("cant unblock peer (reverse)", peer_client.unblock_peer, local_id),
            ("cant disconnect peer", client.disconnect_peer, remote_id),
            ("cant disconnect peer (reverse)", peer_client.disconnect_peer, local_id),
            ("cant connect to peer", client.connect_peer, peer_addr),
            ("cant protect peer", client.protect_peer, remote_id),
        )
        for message, call, argument in steps:
            try:
                call(argument)
            except P2PClientError as exc:
                log.error(
                    "%s network=%s node=%s peer=%s peer_addr=%s peer_id=%s err=%s",
                    message,
                    self.name,
                    node_name,
                    peer_name,
                    peer_addr,
                    peer_id,
                    exc,
                )
                return

        log.info(
            "connected to peer network=%s node=%s rpc_address=%s peer=%s peer_addr=%s peer_id=%s",
            self.name,
            node_name,
            node_config.rpc_address,
            peer_name,
            peer_addr,
            peer_id,
        )