"""Persistence layer."""

from qqbridge.storage.bridge_store import BridgeStore

__all__ = ["BridgeStore"]
