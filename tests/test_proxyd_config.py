from datetime import timedelta

import pytest

from optinfra.proxyd.proxyd_config import (
    BackendGroupConfig,
    Config,
    RoutingStrategy,
    load_config,
    parse_go_duration,
    read_from_env_or_config,
)

EXAMPLE = """
ws_backend_group = "main"
ws_method_whitelist = ["eth_subscribe"]

[server]
rpc_host = "0.0.0.0"
rpc_port = 8080
timeout_seconds = 30
enable_served_by_header = true

[backend]
response_timeout_seconds = 5
max_latency_threshold = "10s"
max_error_rate_threshold = 0.25

[backends.alpha]
rpc_url = "http://alpha.example.com"
weight = 3
consensus_skip_peer_count = true
headers = { "X-Test" = "yes" }

[backend_groups.main]
backends = ["alpha"]
routing_strategy = "multicall"
consensus_handler = "noop"
consensus_max_block_lag = 4
consensus_ha_redis = { url = "redis://localhost:6379", namespace = "ns" }

[rate_limit.method_overrides.eth_call]
limit = 5
interval = "1s"
global = true

[sender_rate_limit]
enabled = true
interval = "1s"
limit = 100
allowed_chain_ids = [0, 10]
"""


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "proxyd.toml"
    path.write_text(EXAMPLE)
    return load_config(path)


def test_load_top_level_and_server(config):
    assert config.ws_backend_group == "main"
    assert config.ws_method_whitelist == ["eth_subscribe"]
    assert config.server.rpc_port == 8080
    assert config.server.enable_served_by_header is True
    assert config.server.ws_port == 0


def test_load_backend_options(config):
    assert config.backend_options.response_timeout_seconds == 5
    assert config.backend_options.max_latency_threshold == parse_go_duration("10s")
    assert config.backend_options.max_error_rate_threshold == 0.25


def test_load_backends_and_groups(config):
    backend = config.backends["alpha"]
    assert backend.rpc_url == "http://alpha.example.com"
    assert backend.weight == 3
    assert backend.consensus_skip_peer_count is True
    assert backend.headers == {"X-Test": "yes"}
    group = config.backend_groups["main"]
    assert group.backends == ["alpha"]
    assert group.consensus_async_handler == "noop"
    assert group.consensus_max_block_lag == 4
    assert group.consensus_ha_redis.namespace == "ns"


def test_load_rate_limit_and_sender_limit(config):
    override = config.rate_limit.method_overrides["eth_call"]
    assert override.limit == 5
    assert override.global_ is True
    assert override.interval == timedelta(seconds=1)
    assert config.sender_rate_limit.enabled is True
    assert config.sender_rate_limit.limit == 100
    assert config.sender_rate_limit.allowed_chain_ids == [0, 10]


def test_from_dict_empty_gives_defaults():
    cfg = Config.from_dict({})
    assert cfg.backends == {}
    assert cfg.server.rpc_port == 0
    assert cfg.backend_options.max_latency_threshold == timedelta(0)


def test_from_dict_rejects_wrong_types():
    with pytest.raises(ValueError, match="server.rpc_port"):
        Config.from_dict({"server": {"rpc_port": "8080"}})


def test_from_dict_rejects_bad_duration():
    with pytest.raises(ValueError, match="cache.ttl"):
        Config.from_dict({"cache": {"ttl": "soon"}})


def test_from_dict_ignores_unknown_keys():
    cfg = Config.from_dict({"unknown": 1, "server": {"rpc_host": "h", "nope": True}})
    assert cfg.server.rpc_host == "h"


def test_load_config_reports_bad_toml(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text("[server\n")
    with pytest.raises(ValueError, match="error reading config file"):
        load_config(path)


def test_parse_go_duration_compound():
    assert parse_go_duration("1h30m") == timedelta(hours=1, minutes=30)


def test_routing_strategy_empty_defaults_to_fallback():
    group = BackendGroupConfig()
    assert group.validate_routing_strategy("main") is True
    assert group.routing_strategy == RoutingStrategy.FALLBACK


def test_routing_strategy_consensus_aware_flag():
    group = BackendGroupConfig(consensus_aware=True)
    assert group.validate_routing_strategy("main") is True
    assert group.routing_strategy == "consensus_aware"


@pytest.mark.parametrize("strategy", ["multicall", "fallback", "consensus_aware"])
def test_routing_strategy_known_values(strategy):
    group = BackendGroupConfig(routing_strategy=strategy)
    assert group.validate_routing_strategy("main") is True
    assert group.routing_strategy == RoutingStrategy(strategy)


def test_routing_strategy_unknown_value():
    group = BackendGroupConfig(routing_strategy="round_robin")
    assert group.validate_routing_strategy("main") is False


def test_routing_strategy_conflict_raises():
    group = BackendGroupConfig(consensus_aware=True, routing_strategy="multicall")
    with pytest.raises(ValueError, match="mutually exclusive"):
        group.validate_routing_strategy("main")


def test_read_from_env(monkeypatch):
    monkeypatch.setenv("PROXYD_TEST_URL", "http://node.example.com")
    assert read_from_env_or_config("$PROXYD_TEST_URL") == "http://node.example.com"


def test_read_from_env_missing(monkeypatch):
    monkeypatch.delenv("PROXYD_TEST_MISSING", raising=False)
    with pytest.raises(ValueError, match=r"config env var \$PROXYD_TEST_MISSING not found"):
        read_from_env_or_config("$PROXYD_TEST_MISSING")


def test_read_escaped_and_plain_values():
    assert read_from_env_or_config("\\$literal") == "$literal"
    assert read_from_env_or_config("plain") == "plain"