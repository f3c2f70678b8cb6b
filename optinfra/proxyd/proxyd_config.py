"""Configuration of the JSON-RPC proxy, read from TOML."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable, Mapping

from optinfra.pms.pms_config import ConfigError, parse_duration

log = logging.getLogger(__name__)

Parser = Callable[[Any, str], Any]


def parse_go_duration(text: str) -> timedelta:
    """Parse a duration such as ``"10s"`` or ``"1h30m"``."""
    return parse_duration(text)


def _mismatch(where: str, expected: str, value: Any) -> ConfigError:
    return ConfigError(f"{where}: expected {expected}, got {type(value).__name__}")


def _str(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise _mismatch(where, "a string", value)
    return value


def _int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _mismatch(where, "an integer", value)
    return value


def _uint(value: Any, where: str) -> int:
    number = _int(value, where)
    if number < 0:
        raise ConfigError(f"{where}: must not be negative")
    return number


def _bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise _mismatch(where, "a boolean", value)
    return value


def _float(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _mismatch(where, "a number", value)
    return float(value)


def _duration(value: Any, where: str) -> timedelta:
    if not isinstance(value, str):
        raise _mismatch(where, "a duration string", value)
    try:
        return parse_go_duration(value)
    except ConfigError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


def _big_int(value: Any, where: str) -> int:
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"{where}: invalid integer {value!r}") from exc
    return _int(value, where)


def _list_of(item: Parser) -> Parser:
    def parse(value: Any, where: str) -> list[Any]:
        if not isinstance(value, list):
            raise _mismatch(where, "an array", value)
        return [item(entry, f"{where}[{i}]") for i, entry in enumerate(value)]

    return parse


def _map_of(item: Parser) -> Parser:
    def parse(value: Any, where: str) -> dict[str, Any]:
        if not isinstance(value, Mapping):
            raise _mismatch(where, "a table", value)
        return {str(key): item(entry, f"{where}.{key}") for key, entry in value.items()}

    return parse


def _table(cls: type) -> Parser:
    return lambda value, where: _from_mapping(cls, value, where)


def _setting(parse: Parser, default: Any = None, *, key: str | None = None, factory: Any = None):
    metadata = {"parse": parse, "key": key}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def _from_mapping(cls: type, data: Any, where: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise _mismatch(where or "configuration", "a table", data)
    kwargs = {}
    for spec in fields(cls):
        key = spec.metadata.get("key") or spec.name
        if key in data:
            path = f"{where}.{key}" if where else key
            kwargs[spec.name] = spec.metadata["parse"](data[key], path)
    return cls(**kwargs)


class RoutingStrategy(StrEnum):
    CONSENSUS_AWARE = "consensus_aware"
    MULTICALL = "multicall"
    FALLBACK = "fallback"


@dataclass
class ServerConfig:
    rpc_host: str = _setting(_str, "")
    rpc_port: int = _setting(_int, 0)
    ws_host: str = _setting(_str, "")
    ws_port: int = _setting(_int, 0)
    max_body_size_bytes: int = _setting(_int, 0)
    max_concurrent_rpcs: int = _setting(_int, 0)
    log_level: str = _setting(_str, "")
    timeout_seconds: int = _setting(_int, 0)
    max_upstream_batch_size: int = _setting(_int, 0)
    enable_request_log: bool = _setting(_bool, False)
    max_request_body_log_len: int = _setting(_int, 0)
    enable_pprof: bool = _setting(_bool, False)
    enable_served_by_header: bool = _setting(_bool, False)
    allow_all_origins: bool = _setting(_bool, False)


@dataclass
class CacheConfig:
    enabled: bool = _setting(_bool, False)
    ttl: timedelta = _setting(_duration, timedelta(0))


@dataclass
class RedisConfig:
    url: str = _setting(_str, "")
    namespace: str = _setting(_str, "")
    read_url: str = _setting(_str, "")


@dataclass
class MetricsConfig:
    enabled: bool = _setting(_bool, False)
    host: str = _setting(_str, "")
    port: int = _setting(_int, 0)


@dataclass
class RateLimitMethodOverride:
    limit: int = _setting(_int, 0)
    interval: timedelta = _setting(_duration, timedelta(0))
    global_: bool = _setting(_bool, False, key="global")


@dataclass
class RateLimitConfig:
    use_redis: bool = _setting(_bool, False)
    base_rate: int = _setting(_int, 0)
    base_interval: timedelta = _setting(_duration, timedelta(0))
    exempt_origins: list[str] = _setting(_list_of(_str), factory=list)
    exempt_user_agents: list[str] = _setting(_list_of(_str), factory=list)
    error_message: str = _setting(_str, "")
    method_overrides: dict[str, RateLimitMethodOverride] = _setting(
        _map_of(_table(RateLimitMethodOverride)), factory=dict
    )
    ip_header_override: str = _setting(_str, "")


@dataclass
class BackendOptions:
    response_timeout_seconds: int = _setting(_int, 0)
    max_response_size_bytes: int = _setting(_int, 0)
    max_retries: int = _setting(_int, 0)
    out_of_service_seconds: int = _setting(_int, 0)
    max_degraded_latency_threshold: timedelta = _setting(_duration, timedelta(0))
    max_latency_threshold: timedelta = _setting(_duration, timedelta(0))
    max_error_rate_threshold: float = _setting(_float, 0.0)


@dataclass
class BackendConfig:
    username: str = _setting(_str, "")
    password: str = _setting(_str, "")
    rpc_url: str = _setting(_str, "")
    ws_url: str = _setting(_str, "")
    ws_port: int = _setting(_int, 0)
    max_rps: int = _setting(_int, 0)
    max_ws_conns: int = _setting(_int, 0)
    ca_file: str = _setting(_str, "")
    client_cert_file: str = _setting(_str, "")
    client_key_file: str = _setting(_str, "")
    strip_trailing_xff: bool = _setting(_bool, False)
    headers: dict[str, str] = _setting(_map_of(_str), factory=dict)
    weight: int = _setting(_int, 0)
    consensus_skip_peer_count: bool = _setting(_bool, False)
    consensus_forced_candidate: bool = _setting(_bool, False)
    consensus_receipts_target: str = _setting(_str, "")


@dataclass
class BackendGroupConfig:
    backends: list[str] = _setting(_list_of(_str), factory=list)
    weighted_routing: bool = _setting(_bool, False)
    routing_strategy: str = _setting(_str, "")
    multicall_rpc_error_check: bool = _setting(_bool, False)
    # deprecated: use routing_strategy = "consensus_aware"
    consensus_aware: bool = _setting(_bool, False)
    consensus_async_handler: str = _setting(_str, "", key="consensus_handler")
    consensus_poller_interval: timedelta = _setting(_duration, timedelta(0))
    consensus_ban_period: timedelta = _setting(_duration, timedelta(0))
    consensus_max_update_threshold: timedelta = _setting(_duration, timedelta(0))
    consensus_max_block_lag: int = _setting(_uint, 0)
    consensus_max_block_range: int = _setting(_uint, 0)
    consensus_min_peer_count: int = _setting(_int, 0)
    consensus_ha: bool = _setting(_bool, False)
    consensus_ha_heartbeat_interval: timedelta = _setting(_duration, timedelta(0))
    consensus_ha_lock_period: timedelta = _setting(_duration, timedelta(0))
    consensus_ha_redis: RedisConfig = _setting(_table(RedisConfig), factory=RedisConfig)
    fallbacks: list[str] = _setting(_list_of(_str), factory=list)

    def validate_routing_strategy(self, bg_name: str) -> bool:
        """Settle the routing strategy; False if it is unknown.

        Raises ConfigError when both consensus_aware and routing_strategy are set.
        """
        if self.consensus_aware and self.routing_strategy:
            log.warning(
                "consensus_aware is now deprecated, please use routing_strategy = consensus_aware"
            )
            log.critical(
                "Exiting consensus_aware and routing strategy are mutually exclusive, "
                "they cannot both be defined"
            )
            raise ConfigError(
                f"backend group {bg_name}: consensus_aware and routing strategy "
                "are mutually exclusive"
            )

        if self.consensus_aware:
            self.routing_strategy = RoutingStrategy.CONSENSUS_AWARE
            log.info(
                "consensus_aware is now deprecated, please use "
                "routing_strategy = consenus_aware in the future"
            )

        if self.routing_strategy == "":
            log.info(
                "Empty routing strategy provided for backend_group, using fallback strategy "
                "name=%s",
                bg_name,
            )
            self.routing_strategy = RoutingStrategy.FALLBACK
            return True
        try:
            self.routing_strategy = RoutingStrategy(self.routing_strategy)
        except ValueError:
            return False
        return True


@dataclass
class BatchConfig:
    max_size: int = _setting(_int, 0)
    error_message: str = _setting(_str, "")


@dataclass
class SenderRateLimitConfig:
    """Sender-based limits for eth_sendRawTransaction; chain id 0 admits pre-EIP-155."""

    enabled: bool = _setting(_bool, False)
    interval: timedelta = _setting(_duration, timedelta(0))
    limit: int = _setting(_int, 0)
    allowed_chain_ids: list[int] = _setting(_list_of(_big_int), factory=list)


@dataclass
class Config:
    ws_backend_group: str = _setting(_str, "")
    server: ServerConfig = _setting(_table(ServerConfig), factory=ServerConfig)
    cache: CacheConfig = _setting(_table(CacheConfig), factory=CacheConfig)
    redis: RedisConfig = _setting(_table(RedisConfig), factory=RedisConfig)
    metrics: MetricsConfig = _setting(_table(MetricsConfig), factory=MetricsConfig)
    rate_limit: RateLimitConfig = _setting(_table(RateLimitConfig), factory=RateLimitConfig)
    backend_options: BackendOptions = _setting(
        _table(BackendOptions), factory=BackendOptions, key="backend"
    )
    backends: dict[str, BackendConfig] = _setting(_map_of(_table(BackendConfig)), factory=dict)
    batch: BatchConfig = _setting(_table(BatchConfig), factory=BatchConfig)
    authentication: dict[str, str] = _setting(_map_of(_str), factory=dict)
    backend_groups: dict[str, BackendGroupConfig] = _setting(
        _map_of(_table(BackendGroupConfig)), factory=dict
    )
    rpc_method_mappings: dict[str, str] = _setting(_map_of(_str), factory=dict)
    ws_method_whitelist: list[str] = _setting(_list_of(_str), factory=list)
    whitelist_error_message: str = _setting(_str, "")
    sender_rate_limit: SenderRateLimitConfig = _setting(
        _table(SenderRateLimitConfig), factory=SenderRateLimitConfig
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Config":
        """Build a configuration from a parsed TOML document."""
        return _from_mapping(cls, data, "")


def read_from_env_or_config(value: str) -> str:
    """Resolve ``$NAME`` from the environment and unescape a leading backslash."""
    if value.startswith("$"):
        env_value = os.environ.get(value[1:], "")
        if not env_value:
            raise ValueError(f"config env var {value} not found")
        return env_value
    if value.startswith("\\"):
        return value[1:]
    return value


def load_config(path: str | Path) -> Config:
    """Read a TOML configuration file."""
    try:
        with open(path, "rb") as handle:
            data = tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"error reading config file: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"error reading config file: {exc}") from exc
    return Config.from_dict(data)