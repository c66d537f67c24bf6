"""
Exception hierarchy for the harvester.

Transport failures are transient and retried by the bridge with a bounded
backoff. Device, validation and RPC failures are fatal and surface to the
caller. SupersededError is control flow only: the bridge consumes it when a
newer template arrives mid-search.
"""

from __future__ import annotations


class HarvesterError(Exception):
    """Base exception class for all harvester errors."""
    pass


class TransportError(HarvesterError):
    """Raised when the notification feed, template fetch or submission cannot reach its endpoint."""

    def __init__(self, endpoint: str, message: str = "Connection failed"):
        self.endpoint = endpoint
        super().__init__(f"{endpoint}: {message}")


class RpcError(HarvesterError):
    """Raised when the node answers a JSON-RPC call with an error object."""

    def __init__(self, method: str, code: int | None, message: str):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed ({code}): {message}")


class DeviceError(HarvesterError):
    """Raised when work submission or readback on a compute device fails."""
    pass


class ValidationError(HarvesterError):
    """Raised when host re-verification rejects a nonce reported by a device."""

    def __init__(self, nonce: int, message: str = "hash does not meet target"):
        self.nonce = nonce
        super().__init__(f"nonce {nonce:#010x}: {message}")


class SupersededError(HarvesterError):
    """Raised inside the search loop when its generation is no longer current."""

    def __init__(self, generation: int, current: int):
        self.generation = generation
        self.current = current
        super().__init__(f"generation {generation} superseded by {current}")


class ConfigurationError(HarvesterError):
    """Raised for configuration-related errors."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Configuration error for '{key}': {message}")
