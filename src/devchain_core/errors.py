"""Error kinds raised by the storage layer.

Callers (HTTP controllers, sync workers) map these onto their own responses:
- NotFoundError: referenced id does not exist
- ValidationError: malformed input or broken invariant
- ConflictError: duplicate key, referential conflict or stale version
- StorageError: the underlying store could not do what was asked
"""
from typing import Any, Optional


class DevchainError(Exception):
    """Base class for all storage layer errors."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(DevchainError):
    """Raised when an entity lookup by id finds nothing."""

    def __init__(self, entity: str, entity_id: Optional[str]):
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(DevchainError, ValueError):
    """Raised when input breaks a domain invariant."""


class ConflictError(DevchainError):
    """Raised on duplicate keys and referential conflicts."""


class OptimisticLockError(ConflictError):
    """Raised when the caller's expected version is stale."""

    def __init__(self, entity: str, entity_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"{entity} {entity_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            entity=entity,
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StorageError(DevchainError):
    """Raised on infrastructure failures of the underlying store."""
