"""Exceptions raised by the sync engine.

Copyright (c) Bryn Gwalad 2025
"""


class SyncError(Exception):
    """Base exception for sync engine operations."""


class InvalidMutation(SyncError):
    """A mutation violates an entity invariant. Never retried automatically."""


class InvalidEndpoint(SyncError):
    """A user-supplied webhook URL was rejected."""


class TransportError(SyncError):
    """A write could not be dispatched at all. The mutation is rolled back."""


class RemoteUnavailable(SyncError):
    """A best-effort read failed (network, HTTP status or payload)."""


class NotConfigured(RemoteUnavailable):
    """No webhook endpoint is configured; the engine runs cache-only."""
