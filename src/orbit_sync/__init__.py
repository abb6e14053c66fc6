"""Orbit Sync - bidirectional sync of planner entities with external services."""

__version__ = "0.1.0"
__author__ = "Orbit Team"

from .models import (
    Conflict,
    EntityType,
    ExternalService,
    Friend,
    Objective,
    ResolutionStrategy,
    SyncMetadata,
    SyncStatus,
    Task,
    TimeSlot,
)
from .orchestrator import SyncOrchestrator

__all__ = [
    "Conflict",
    "EntityType",
    "ExternalService",
    "Friend",
    "Objective",
    "ResolutionStrategy",
    "SyncMetadata",
    "SyncOrchestrator",
    "SyncStatus",
    "Task",
    "TimeSlot",
    "__version__",
]
