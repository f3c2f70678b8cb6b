"""Peer management for op-node networks and JSON-RPC proxy building blocks."""

__version__ = "0.1.0"