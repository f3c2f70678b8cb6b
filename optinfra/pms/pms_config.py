"""Configuration for the peer management service."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping

import yaml

log = logging.getLogger(__name__)

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"([0-9]*(?:\.[0-9]*)?)(ns|us|µs|μs|ms|s|m|h)")


class ConfigError(ValueError):
    """Raised when a configuration cannot be read or is invalid."""


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"15s"`` or ``"300ms"``."""
    if not isinstance(text, str):
        raise ConfigError(f"invalid duration {text!r}")
    body = text
    negative = body.startswith("-")
    if body[:1] in ("-", "+"):
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ConfigError(f'time: invalid duration "{text}"')

    total = Decimal(0)
    pos = 0
    while pos < len(body):
        match = _COMPONENT.match(body, pos)
        if match is None or match.group(1) in ("", "."):
            raise ConfigError(f'time: invalid duration "{text}"')
        try:
            total += Decimal(match.group(1)) * _UNIT_NANOSECONDS[match.group(2)]
        except InvalidOperation as exc:
            raise ConfigError(f'time: invalid duration "{text}"') from exc
        pos = match.end()

    microseconds = int(total) / 1000
    return timedelta(microseconds=-microseconds if negative else microseconds)


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        raise ConfigError(f"expected a scalar, got {value!r}")
    return str(value)


def _as_bool(value: Any) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"expected a boolean, got {value!r}")
    return value


def _as_duration(value: Any) -> timedelta:
    if value is None:
        return timedelta(0)
    return parse_duration(value)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"section {key!r} must be a mapping")
    return value


@dataclass
class MetricsConfig:
    enabled: bool = False
    debug: bool = False
    host: str = ""
    port: str = ""


@dataclass
class HealthzConfig:
    enabled: bool = False
    host: str = ""
    port: str = ""


@dataclass
class NodeConfig:
    rpc_address: str = ""
    peer_id: str = ""
    peer_address: str = ""
    peer_address_local: str = ""
    cluster: str = ""
    prevent_inbound: bool = False
    prevent_outbound: bool = False


@dataclass
class NetworkConfig:
    members: list[str] = field(default_factory=list)


def _node_from(data: Mapping[str, Any]) -> NodeConfig:
    return NodeConfig(
        rpc_address=_as_str(data.get("rpc_address")),
        peer_id=_as_str(data.get("peer_id")),
        peer_address=_as_str(data.get("peer_address")),
        peer_address_local=_as_str(data.get("peer_address_local")),
        cluster=_as_str(data.get("cluster")),
        prevent_inbound=_as_bool(data.get("prevent_inbound")),
        prevent_outbound=_as_bool(data.get("prevent_outbound")),
    )


def _network_from(data: Mapping[str, Any]) -> NetworkConfig:
    members = data.get("members") or []
    if not isinstance(members, list):
        raise ConfigError("network members must be a list")
    return NetworkConfig(members=[_as_str(member) for member in members])


@dataclass
class Config:
    log_level: str = ""
    dry_run: bool = False
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    healthz: HealthzConfig = field(default_factory=HealthzConfig)
    poll_interval: timedelta = timedelta(0)
    node_state_expiration: timedelta = timedelta(0)
    rpc_timeout: timedelta = timedelta(0)
    nodes: dict[str, NodeConfig] = field(default_factory=dict)
    networks: dict[str, NetworkConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Config":
        """Build a configuration from a parsed YAML document."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError("configuration document must be a mapping")

        metrics = _section(data, "metrics")
        healthz = _section(data, "healthz")
        return cls(
            log_level=_as_str(data.get("log_level")),
            dry_run=_as_bool(data.get("dry_run")),
            metrics=MetricsConfig(
                enabled=_as_bool(metrics.get("enabled")),
                debug=_as_bool(metrics.get("debug")),
                host=_as_str(metrics.get("host")),
                port=_as_str(metrics.get("port")),
            ),
            healthz=HealthzConfig(
                enabled=_as_bool(healthz.get("enabled")),
                host=_as_str(healthz.get("host")),
                port=_as_str(healthz.get("port")),
            ),
            poll_interval=_as_duration(data.get("poll_interval")),
            node_state_expiration=_as_duration(data.get("node_state_expiration")),
            rpc_timeout=_as_duration(data.get("rpc_timeout")),
            nodes={
                str(name): _node_from(node or {})
                for name, node in _section(data, "nodes").items()
            },
            networks={
                str(name): _network_from(network or {})
                for name, network in _section(data, "networks").items()
            },
        )

    def validate(self) -> None:
        """Check the configuration, raising ConfigError on the first problem."""
        if self.metrics.enabled and (not self.metrics.host or not self.metrics.port):
            raise ConfigError("metrics is enabled but host or port are missing")
        if self.healthz.enabled and (not self.healthz.host or not self.healthz.port):
            raise ConfigError("healthz is enabled but host or port are missing")
        if not self.nodes:
            raise ConfigError("no nodes configured")
        if not self.networks:
            raise ConfigError("no networks configured")

        for name, node in self.nodes.items():
            if not node.rpc_address:
                raise ConfigError(f"node [{name}] rpc address is missing")

        for name, network in self.networks.items():
            if len(network.members) < 2:
                raise ConfigError(f"network [{name}] has less than 2 members")
            for member in network.members:
                if member not in self.nodes:
                    raise ConfigError(
                        f"network [{name}] member [{member}] is not configured"
                    )

        if not self.log_level:
            self.log_level = "debug"


def load_config(path: str | Path) -> Config:
    """Read a YAML configuration file.

    A file that cannot be read is reported and treated as empty.
    """
    try:
        contents = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        log.error("error reading config file: %s", exc)
        contents = ""
    try:
        data = yaml.safe_load(contents)
    except yaml.YAMLError as exc:
        raise ConfigError(str(exc)) from exc
    return Config.from_dict(data)