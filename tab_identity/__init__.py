"""Durable tab identities on top of volatile host tab ids."""

from __future__ import annotations

from .errors import (
    ConsistencyError,
    HostError,
    InconsistentError,
    InvalidPartitionError,
    NotFoundError,
    RegistryError,
)
from .records import IdentityRecord, Observation
from .registry import Lookup, TabRegistry

__all__ = [
    "ConsistencyError",
    "HostError",
    "IdentityRecord",
    "InconsistentError",
    "InvalidPartitionError",
    "Lookup",
    "NotFoundError",
    "Observation",
    "RegistryError",
    "TabRegistry",
]
