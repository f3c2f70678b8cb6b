"""Peer management: configuration, metrics, p2p RPC client, network poller and HTTP endpoints."""