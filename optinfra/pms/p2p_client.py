"""Instrumented JSON-RPC client for a node's peer-to-peer admin API."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Mapping, TypeVar
from urllib.parse import urlparse

import requests

from optinfra.pms.pms_config import Config
from optinfra.pms.pms_metrics import record_network_error_details, record_rpc_latency

log = logging.getLogger(__name__)

T = TypeVar("T")


class Connectedness(IntEnum):
    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3

    def __str__(self) -> str:
        return _CONNECTEDNESS_NAMES[self]

    @classmethod
    def _parse(cls, value: Any) -> "Connectedness":
        if value is None:
            return cls.NOT_CONNECTED
        if isinstance(value, str):
            for member, name in _CONNECTEDNESS_NAMES.items():
                if name.lower() == value.lower():
                    return member
            raise ValueError(f"unknown connectedness {value!r}")
        return cls(int(value))


_CONNECTEDNESS_NAMES = {
    Connectedness.NOT_CONNECTED: "NotConnected",
    Connectedness.CONNECTED: "Connected",
    Connectedness.CAN_CONNECT: "CanConnect",
    Connectedness.CANNOT_CONNECT: "CannotConnect",
}


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


@dataclass
class PeerInfo:
    """What a node reports about itself or one of its peers."""

    peer_id: str = ""
    node_id: str = ""
    user_agent: str = ""
    protocol_version: str = ""
    enr: str = ""
    addresses: list[str] = field(default_factory=list)
    protocols: list[str] = field(default_factory=list)
    connectedness: Connectedness = Connectedness.NOT_CONNECTED
    direction: int = 0
    protected: bool = False
    chain_id: int = 0
    latency: float = 0.0  # seconds

    @classmethod
    def from_json(cls, data: Any) -> "PeerInfo":
        data = _require_mapping(data, "peer info")
        return cls(
            peer_id=str(data.get("peerID") or ""),
            node_id=str(data.get("nodeID") or ""),
            user_agent=str(data.get("userAgent") or ""),
            protocol_version=str(data.get("protocolVersion") or ""),
            enr=str(data.get("ENR") or ""),
            addresses=list(data.get("addresses") or []),
            protocols=list(data.get("protocols") or []),
            connectedness=Connectedness._parse(data.get("connectedness")),
            direction=int(data.get("direction") or 0),
            protected=bool(data.get("protected", False)),
            chain_id=int(data.get("chainID") or 0),
            latency=int(data.get("latency") or 0) / 1e9,
        )


@dataclass
class PeerDump:
    """A node's view of all its peers."""

    total_connected: int = 0
    peers: dict[str, PeerInfo] = field(default_factory=dict)
    banned_peers: list[str] = field(default_factory=list)
    banned_ips: list[str] = field(default_factory=list)
    banned_subnets: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "PeerDump":
        data = _require_mapping(data, "peer dump")
        peers = _require_mapping(data.get("peers") or {}, "peers")
        return cls(
            total_connected=int(data.get("totalConnected") or 0),
            peers={str(pid): PeerInfo.from_json(info) for pid, info in peers.items()},
            banned_peers=list(data.get("bannedPeers") or []),
            banned_ips=list(data.get("bannedIPS") or []),
            banned_subnets=list(data.get("bannedSubnets") or []),
        )


class P2PClientError(Exception):
    """Raised when a peer-to-peer RPC call fails."""


def _identity(value: Any) -> Any:
    return value


class InstrumentedP2PClient:
    """Calls a node's peer-to-peer API and records errors and latency per call."""

    def __init__(
        self,
        config: Config,
        network: str,
        node_name: str,
        rpc_url: str,
        session: requests.Session | None = None,
    ):
        self.network = network
        self.node = node_name
        self.rpc_url = rpc_url

        parsed = urlparse(rpc_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            reason = f'no known transport for URL scheme "{parsed.scheme}"'
            record_network_error_details(network, node_name, "opp2p.New", reason)
            log.error("cant create opp2p client: %s", reason)
            raise P2PClientError(
                f"failed to create p2p rpc client with network [{network}], "
                f"nodeName [{node_name}], rpcUrl [{rpc_url}]: {reason}"
            )

        seconds = config.rpc_timeout.total_seconds()
        self._timeout = seconds if seconds > 0 else None
        self._session = session if session is not None else requests.Session()
        self._ids = itertools.count(1)

    def _request(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = self._session.post(self.rpc_url, json=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            raise P2PClientError(str(exc)) from exc
        if not 200 <= response.status_code < 300:
            raise P2PClientError(f"{response.status_code} {response.reason}: {response.text}")
        try:
            body = response.json()
        except ValueError as exc:
            raise P2PClientError(f"invalid JSON-RPC response: {exc}") from exc
        if not isinstance(body, Mapping):
            raise P2PClientError("invalid JSON-RPC response: not an object")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else None
            raise P2PClientError(str(message or error))
        return body.get("result")

    def _call(
        self,
        label: str,
        method: str,
        params: list[Any],
        parse: Callable[[Any], T] = _identity,
    ) -> T:
        start = time.monotonic()
        log.debug("%s rpc_address=%s params=%s", label, self.rpc_url, params)
        try:
            try:
                result = parse(self._request(method, params))
            except (TypeError, ValueError, KeyError) as exc:
                raise P2PClientError(f"malformed {method} result: {exc}") from exc
        except P2PClientError as exc:
            record_network_error_details(self.network, self.node, label, exc)
            raise
        record_rpc_latency(self.network, self.node, label, time.monotonic() - start)
        return result

    def self_info(self) -> PeerInfo:
        return self._call("opp2p.Self", "opp2p_self", [], PeerInfo.from_json)

    def peers(self, connected: bool) -> PeerDump:
        return self._call("opp2p.Peers", "opp2p_peers", [bool(connected)], PeerDump.from_json)

    def peer_stats(self) -> dict[str, Any]:
        return self._call(
            "opp2p.PeerStats",
            "opp2p_peerStats",
            [],
            lambda result: dict(_require_mapping(result, "peer stats")),
        )

    def connect_peer(self, addr: str) -> None:
        self._call("opp2p.ConnectPeer", "opp2p_connectPeer", [addr])

    def disconnect_peer(self, peer_id: str) -> None:
        self._call("opp2p.DisconnectPeer", "opp2p_disconnectPeer", [peer_id])

    def unblock_peer(self, peer_id: str) -> None:
        self._call("opp2p.UnblockPeer", "opp2p_unblockPeer", [peer_id])

    def protect_peer(self, peer_id: str) -> None:
        self._call("opp2p.ProtectPeer", "opp2p_protectPeer", [peer_id])

    def unprotect_peer(self, peer_id: str) -> None:
        self._call("opp2p.UnprotectPeer", "opp2p_unprotectPeer", [peer_id])