"""Exception hierarchy for the sync subsystem."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class NotAuthenticatedError(SyncError):
    """No valid token is available for the remote service."""
    pass


class AdapterError(SyncError):
    """A remote adapter call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConflictResolutionError(SyncError):
    """A conflict could not be resolved automatically."""
    pass


class ManualResolutionRequired(ConflictResolutionError):
    """The configured strategy needs a person to pick the outcome."""

    def __init__(self, conflict_id: Optional[str] = None):
        super().__init__("Manual resolution requires user interaction")
        self.conflict_id = conflict_id


class UnknownStrategyError(ConflictResolutionError, ValueError):
    """Resolution strategy is not one the engine knows."""
    pass


class ConflictNotFoundError(SyncError, KeyError):
    """No open conflict exists with the given id."""

    def __init__(self, conflict_id: str):
        super().__init__(f"Conflict not found: {conflict_id}")
        self.conflict_id = conflict_id

    def __str__(self) -> str:
        return self.args[0]
