"""Error taxonomy for the tab identity registry.

- ConsistencyError: the host broke volatile-id uniqueness. Fatal, never retried.
- NotFoundError / InconsistentError: expected misses on public lookups.
- InvalidPartitionError: programming error (unknown partition name).
- HostError: transport or host-side failure (extension gone, bad RPC reply).
"""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base class for registry errors."""

    kind = "registry_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


class ConsistencyError(RegistryError):
    kind = "consistency"


class NotFoundError(RegistryError):
    kind = "not_found"


class InconsistentError(RegistryError):
    kind = "inconsistent"


class InvalidPartitionError(RegistryError):
    kind = "invalid_partition"


class HostError(RegistryError):
    kind = "host"
