# optinfra

A library for keeping op-node peer-to-peer networks connected, and a few
building blocks for a JSON-RPC proxy in front of Ethereum-style backends.

- `optinfra.pms` — peer management: configuration, metrics, an instrumented
  client for a node's p2p admin RPC, the per-network poller that reconnects
  members, and small HTTP servers for a health check and for metrics.
- `optinfra.proxyd` — proxy configuration loading, log level names, error
  wrapping and frontend rate limiters (in memory or in Redis).

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Peer management

### Configuration

`optinfra.pms.pms_config.load_config(path)` reads a YAML file and returns a
`Config`; `Config.validate()` raises `ConfigError` on the first problem.

```yaml
log_level: info
dry_run: false

metrics:
  enabled: true
  debug: false
  host: 0.0.0.0
  port: "7300"

healthz:
  enabled: true
  host: 0.0.0.0
  port: "8080"

poll_interval: 30s
node_state_expiration: 1h
rpc_timeout: 15s

nodes:
  op-node-0:
    rpc_address: http://op-node-0:9545
  op-node-1:
    rpc_address: http://op-node-1:9545
    cluster: east
    peer_address: /dns4/op-node-1/tcp/9222/p2p/{peer_id}
    prevent_inbound: false
    prevent_outbound: false

networks:
  network_name:
    members:
      - op-node-0
      - op-node-1
```

Durations use the `300ms`, `30s`, `5m`, `1h30m` notation (`parse_duration`).
Validation rejects a configuration that

- enables metrics or healthz without both a host and a port,
- has no nodes or no networks,
- has a node without `rpc_address`,
- has a network with fewer than two members, or a member that is not among
  the nodes.

After a successful validation an empty `log_level` becomes `debug`. A file
that cannot be read is logged and treated as empty.

```python
from optinfra.pms.pms_config import ConfigError, load_config

config = load_config("config.yaml")
try:
    config.validate()
except ConfigError as err:
    print(f"invalid config: {err}")
```

### Running a network

`optinfra.pms.network.Network` looks after one network. Each `tick()`

1. forgets nodes whose state is older than `node_state_expiration`,
2. polls every node for its own identity and its peers,
3. names each node's peers that are members of the network,
4. updates the metrics,
5. unless `dry_run` is set, reconnects every node to each member it is not
   connected to (unprotect, unblock and disconnect both ways, then connect
   and protect).

```python
from optinfra.pms.network import Network

name, network_config = next(iter(config.networks.items()))
nodes = {member: config.nodes[member] for member in network_config.members}
network = Network(config, name, network_config, nodes)
network.start()      # ticks every poll_interval in a daemon thread
...
network.shutdown()
```

`client_factory` and `connect_peer_override` let callers replace the RPC
client or the reconnect step. A configured `peer_address` wins over the
address the peer reports; `peer_address_local` is used between nodes of the
same `cluster`. A `/dns4/` address ending in `/p2p/{peer_id}` gets the
placeholder replaced with the peer's ID.

`optinfra.pms.p2p_client.InstrumentedP2PClient` is the JSON-RPC client
used by default (`self_info`, `peers`, `peer_stats`, `connect_peer`,
`disconnect_peer`, `unblock_peer`, `protect_peer`, `unprotect_peer`); it
raises `P2PClientError` and records errors and latency for every call.

### Metrics and HTTP endpoints

`optinfra.pms.pms_metrics` keeps `pms_*` counters and gauges in a
`Registry` and renders them in the Prometheus text format
(`REGISTRY.render()`). `set_debug(True)` logs every update.

`optinfra.pms.servers` has `HealthzServer`, which answers `GET /healthz`
with `OK` and allows any CORS origin, and `MetricsServer`, which serves the
registry. `start(host, port)` blocks until `shutdown()` is called from
another thread:

```python
import threading
from optinfra.pms.servers import HealthzServer

server = HealthzServer()
threading.Thread(target=server.start, args=("127.0.0.1", 8080), daemon=True).start()
server.wait_ready(5)
...
server.shutdown()
```

## Proxy building blocks

Loading the TOML configuration and resolving values that may come from the
environment:

```python
from optinfra.proxyd.proxyd_config import load_config, read_from_env_or_config

config = load_config("proxyd.toml")
for name, group in config.backend_groups.items():
    if not group.validate_routing_strategy(name):
        raise SystemExit(f"unknown routing strategy in {name}")

read_from_env_or_config("$BACKEND_URL")   # value of BACKEND_URL; ValueError if unset
read_from_env_or_config("\\$literal")     # "$literal"
read_from_env_or_config("plain")          # "plain"
```

An empty routing strategy becomes `fallback`; the deprecated
`consensus_aware = true` becomes `consensus_aware`, and setting it together
with `routing_strategy` raises `ConfigError`.

Log level names, ignoring case:

```python
from optinfra.proxyd.levels import level_from_string

level_from_string("DBUG")   # logging.DEBUG; "trace" gives levels.TRACE
```

Frontend rate limiters count requests per key within fixed windows;
`take(key)` answers whether the request is still within the limit:

```python
from datetime import timedelta
from optinfra.proxyd.rate_limiter import MemoryFrontendRateLimiter

limiter = MemoryFrontendRateLimiter(timedelta(seconds=2), 2)
limiter.take("foo")   # True, True, then False until the next window
```

`RedisFrontendRateLimiter(client, duration, limit, prefix)` does the same in
Redis with any client offering `pipeline()` with `incr`, `pexpire` and
`execute`, such as one from the `redis` package, which is not installed with
this package. `NoopFrontendRateLimiter` never limits.
`optinfra.proxyd.errors.wrap_error(err, msg)` returns a `ProxydError`
reading `"<msg> <err>"`.

## What it does not do

- There is no command-line program or signal handling: an application
  loads the configuration, creates the `Network` objects and servers and
  stops them itself.
- The proxy part has no request forwarding, backends, response cache or
  block consensus tracking; only configuration, log levels, error wrapping
  and rate limiting are provided.