"""Relay that runs on the remote host and serves file system and terminal requests."""

from outpost.relay.server import Connection, RelayServer

__all__ = ["Connection", "RelayServer"]
