"""Metrics of the peer management service, in Prometheus text format."""

from __future__ import annotations

import logging
import re
import threading
from datetime import timedelta
from typing import Iterable, Sequence

log = logging.getLogger(__name__)

METRICS_NAMESPACE = "pms"

_NON_ALPHA = re.compile(r"[^a-zA-Z ]+")
_KINDS = ("counter", "gauge")

_debug = False


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _format_value(value: float) -> str:
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


class Metric:
    """A labelled counter or gauge."""

    def __init__(self, name: str, help_text: str, kind: str, label_names: Iterable[str]):
        if kind not in _KINDS:
            raise ValueError(f"unknown metric kind {kind!r}")
        self.name = name
        self.help = help_text
        self.kind = kind
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Sequence[object]) -> tuple[str, ...]:
        key = tuple(str(value) for value in labels)
        if len(key) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(key)}"
            )
        return key

    def inc(self, labels: Sequence[object] = (), amount: float = 1.0) -> None:
        if self.kind == "counter" and amount < 0:
            raise ValueError(f"{self.name}: counter cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def set(self, labels: Sequence[object], value: float) -> None:
        if self.kind != "gauge":
            raise ValueError(f"{self.name}: only gauges can be set")
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, labels: Sequence[object] = ()) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> str:
        lines = [
            f"# HELP {self.name} {_escape_help(self.help)}",
            f"# TYPE {self.name} {self.kind}",
        ]
        with self._lock:
            samples = sorted(self._values.items())
        for key, value in samples:
            labels = ""
            if key:
                pairs = ",".join(
                    f'{name}="{_escape_label(val)}"' for name, val in zip(self.label_names, key)
                )
                labels = "{" + pairs + "}"
            lines.append(f"{self.name}{labels} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class Registry:
    """A named collection of metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: Metric) -> Metric:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metric {metric.name!r}")
            self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        with self._lock:
            metrics = [self._metrics[name] for name in sorted(self._metrics)]
        return "".join(metric.render() for metric in metrics)


REGISTRY = Registry()


def _metric(name: str, help_text: str, kind: str, labels: Sequence[str]) -> Metric:
    return REGISTRY.register(Metric(f"{METRICS_NAMESPACE}_{name}", help_text, kind, labels))


ERRORS_TOTAL = _metric(
    "errors_total", "Count of errors", "counter", ("error", "method", "network", "node")
)
RPC_LATENCY = _metric(
    "rpc_latency",
    "RPC latency per network, node and method (ms)",
    "gauge",
    ("network", "node", "method"),
)
NETWORK_MEMBER_COUNT = _metric(
    "network_member_count", "Member count per network", "gauge", ("network",)
)
NETWORK_KNOWN_PEER_COUNT = _metric(
    "network_known_peer_count", "Known peer count per network", "gauge", ("network",)
)
NETWORK_PEER_HEALTHNESS = _metric(
    "network_peer_healthness",
    "Percentage of health peer in the network",
    "gauge",
    ("network",),
)
KNOWN_PEER_STATE_LATENCY = _metric(
    "known_peer_state_latency",
    "Known peer state latency per network, node and peer (ms)",
    "gauge",
    ("network", "node", "node_peer_id", "peer", "peer_id"),
)
PEER_STATE_CONNECTEDNESS = _metric(
    "peer_state_connectedness",
    "Peer state connectedness per network, node, knownness, connectedness",
    "gauge",
    ("network", "node", "node_peer_id", "knowness", "connectedness"),
)
RESOLVED_STATE = _metric(
    "resolved_state",
    "Count of resolved state events",
    "counter",
    ("network", "node", "node_peer_id", "peer", "peer_peer_id"),
)


def set_debug(enabled: bool) -> None:
    """Turn logging of every metric update on or off."""
    global _debug
    _debug = bool(enabled)


def _milliseconds(latency: float | timedelta) -> int:
    if isinstance(latency, timedelta):
        latency = latency.total_seconds()
    return int(round(latency * 1_000_000) / 1000)


def err_label(err: object) -> str:
    """Turn an error message into a label made of letters and underscores."""
    cleaned = _NON_ALPHA.sub("", str(err))
    cleaned = cleaned.replace(" ", "_")
    return cleaned.replace("__", "_")


def record_error(error: str) -> None:
    if _debug:
        log.debug("metric inc m=errors_total error=%s", error)
    ERRORS_TOTAL.inc((error, "", "", ""))


def record_error_details(label: str, err: object) -> None:
    """Count an error whose label is the given label joined with the error text."""
    record_error(f"{label}.{err_label(err)}")


def record_network_error_details(network: str, node: str, method: str, err: object) -> None:
    if _debug:
        log.debug(
            "metric inc m=errors_total network=%s node=%s error=%s",
            network,
            node,
            err_label(err),
        )
    ERRORS_TOTAL.inc((err_label(err), method, network, node))


def record_rpc_latency(network: str, node: str, method: str, latency: float | timedelta) -> None:
    """Record an RPC latency given in seconds (or as a timedelta), stored in ms."""
    if _debug:
        log.debug(
            "metric set m=rpc_latency network=%s node=%s method=%s latency=%s",
            network,
            node,
            method,
            latency,
        )
    RPC_LATENCY.set((network, node, method), _milliseconds(latency))


def record_network_member_count(network: str, count: int) -> None:
    if _debug:
        log.debug("metric set m=network_member_count network=%s count=%s", network, count)
    NETWORK_MEMBER_COUNT.set((network,), count)


def record_network_peer_healthness(network: str, percentage: float) -> None:
    if _debug:
        log.debug(
            "metric set m=network_peer_healthness network=%s percentage=%s", network, percentage
        )
    NETWORK_PEER_HEALTHNESS.set((network,), percentage)


def record_known_peer_state_latency(
    network: str,
    node: str,
    node_peer_id: str,
    peer: str,
    peer_peer_id: str,
    latency: float | timedelta,
) -> None:
    if _debug:
        log.debug(
            "metric set m=known_peer_state_latency network=%s node=%s node_peer_id=%s "
            "peer=%s peer_peer_id=%s latency=%s",
            network,
            node,
            node_peer_id,
            peer,
            peer_peer_id,
            latency,
        )
    KNOWN_PEER_STATE_LATENCY.set(
        (network, node, node_peer_id, peer, peer_peer_id), _milliseconds(latency)
    )


def record_peer_state_connectedness(
    network: str,
    node: str,
    node_peer_id: str,
    knowness: str,
    connectedness: str,
    count: int,
) -> None:
    if _debug:
        log.debug(
            "metric set m=peer_state_connectedness network=%s node=%s node_peer_id=%s "
            "knowness=%s connectedness=%s count=%s",
            network,
            node,
            node_peer_id,
            knowness,
            connectedness,
            count,
        )
    PEER_STATE_CONNECTEDNESS.set((network, node, node_peer_id, knowness, connectedness), count)


def record_resolved_state(
    network: str, node_name: str, peer_name: str, peer_id: str, peer_addr: str
) -> None:
    if _debug:
        log.debug(
            "metric inc m=resolved_state network=%s node=%s peer=%s peer_id=%s peer_addr=%s",
            network,
            node_name,
            peer_name,
            peer_id,
            peer_addr,
        )
    RESOLVED_STATE.inc((network, node_name, peer_name, peer_id, peer_addr))