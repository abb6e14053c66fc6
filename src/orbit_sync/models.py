"""Data models and structures for the sync subsystem.

This module contains the core data structures shared by the queue, the
conflict engines and the import flow: sync metadata attached to every
syncable entity, the entity variants themselves, conflict records and
queue items.
"""

import copy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from .utils.datetime import ensure_aware, now_utc, parse_timestamp, to_iso_string


class EntityType(Enum):
    """Syncable entity categories."""
    TASK = "task"
    TIME_SLOT = "timeSlot"
    OBJECTIVE = "objective"
    FRIEND = "friend"


class SyncStatus(Enum):
    """Per-entity sync state."""
    SYNCED = "synced"
    PENDING = "pending"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"


class SyncDirection(Enum):
    """Sync direction options."""
    EXPORT = "export"
    IMPORT = "import"
    BIDIRECTIONAL = "bidirectional"


class ExternalService(Enum):
    """Remote integrations entities are mirrored into."""
    GOOGLE_TASKS = "google_tasks"
    GOOGLE_CALENDAR = "google_calendar"
    GOOGLE_CONTACTS = "google_contacts"


class ResolutionStrategy(Enum):
    """Conflict resolution strategies."""
    APP_WINS = "app_wins"
    EXTERNAL_WINS = "external_wins"
    LAST_WRITE_WINS = "last_write_wins"
    MERGE = "merge"
    MANUAL = "manual"


class ConflictPriority(Enum):
    """How urgently a conflict needs attention."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FieldType(Enum):
    """Declared type of a differing field."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"


class QueueAction(Enum):
    """Kinds of outbound change."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


_METADATA_TIMESTAMPS = ("last_synced_at", "app_last_modified", "external_last_modified")


@dataclass
class SyncMetadata:
    """Per-entity sync bookkeeping."""

    external_service: ExternalService
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None
    external_id: Optional[str] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    app_last_modified: Optional[datetime] = None
    external_last_modified: Optional[datetime] = None
    conflict_details: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None

    def __post_init__(self):
        """Ensure datetime fields are timezone-aware."""
        for field_name in _METADATA_TIMESTAMPS:
            setattr(self, field_name, ensure_aware(getattr(self, field_name)))

    def copy(self, **changes) -> "SyncMetadata":
        """Return a copy with the given fields replaced."""
        clone = replace(self, **changes)
        if clone.conflict_details is not None and "conflict_details" not in changes:
            clone.conflict_details = dict(clone.conflict_details)
        return clone

    def is_app_modified(self) -> bool:
        """Local side changed since the last reconciliation."""
        if self.last_synced_at is None or self.app_last_modified is None:
            return False
        return self.app_last_modified > self.last_synced_at

    def is_external_modified(self) -> bool:
        """Remote side changed since the last reconciliation."""
        if self.last_synced_at is None or self.external_last_modified is None:
            return False
        return self.external_last_modified > self.last_synced_at

    def mark_synced(self, at: datetime, external_id: Optional[str] = None):
        """Record a successful export or reconciliation."""
        self.sync_status = SyncStatus.SYNCED
        self.last_synced_at = ensure_aware(at)
        if external_id:
            self.external_id = external_id
        self.conflict_details = None
        self.last_error = None

    def mark_conflict(self, conflict: "Conflict"):
        """Point this metadata at an open conflict."""
        self.sync_status = SyncStatus.CONFLICT
        self.conflict_details = {
            "conflict_id": conflict.id,
            "fields": conflict.field_names(),
            "priority": conflict.priority.value,
            "detected_at": conflict.detected_at.isoformat(),
        }

    def mark_error(self, message: Optional[str]):
        """Record that an export was given up on."""
        self.sync_status = SyncStatus.ERROR
        self.last_error = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "external_service": self.external_service.value,
            "sync_status": self.sync_status.value,
            "last_synced_at": to_iso_string(self.last_synced_at),
            "external_id": self.external_id,
            "sync_direction": self.sync_direction.value,
            "app_last_modified": to_iso_string(self.app_last_modified),
            "external_last_modified": to_iso_string(self.external_last_modified),
            "conflict_details": dict(self.conflict_details) if self.conflict_details else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMetadata":
        """Create from dictionary representation."""
        data = dict(data)
        data["external_service"] = ExternalService(data["external_service"])
        if "sync_status" in data:
            data["sync_status"] = SyncStatus(data["sync_status"])
        if "sync_direction" in data:
            data["sync_direction"] = SyncDirection(data["sync_direction"])
        for field_name in _METADATA_TIMESTAMPS:
            if field_name in data:
                data[field_name] = parse_timestamp(data[field_name])
        return cls(**data)


class SyncableEntity:
    """Behaviour shared by every entity variant.

    Variants are dataclasses that declare ``entity_type`` and end with a
    ``sync_metadata`` field. Snapshots (``to_dict``) exclude the metadata
    and render datetimes as ISO strings.
    """

    entity_type: ClassVar[EntityType]
    # Fields the import merge takes from the remote side whenever it has a value.
    SCHEDULING_FIELDS: ClassVar[Tuple[str, ...]] = ()
    DATETIME_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @property
    def display_title(self) -> str:
        return getattr(self, "title", "")

    @property
    def schedule_key(self) -> Optional[str]:
        return None

    def content_fields(self) -> List[str]:
        """Names of all fields except id and sync metadata."""
        return [f.name for f in fields(self) if f.name not in ("id", "sync_metadata")]

    def to_dict(self, include_metadata: bool = False) -> Dict[str, Any]:
        """Convert to a snapshot dictionary."""
        data = {}
        for f in fields(self):
            if f.name == "sync_metadata":
                continue
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = to_iso_string(value)
            data[f.name] = copy.deepcopy(value)

        if include_metadata:
            data["sync_metadata"] = self.sync_metadata.to_dict() if self.sync_metadata else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from a snapshot dictionary; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {key: copy.deepcopy(value) for key, value in data.items() if key in known}

        for field_name in cls.DATETIME_FIELDS:
            if field_name in values:
                values[field_name] = parse_timestamp(values[field_name])

        metadata = values.get("sync_metadata")
        if isinstance(metadata, dict):
            values["sync_metadata"] = SyncMetadata.from_dict(metadata)

        return cls(**values)

    def with_values(self, values: Dict[str, Any]):
        """Return a copy with snapshot values applied, keeping id and metadata."""
        data = self.to_dict()
        data.update({key: value for key, value in values.items() if key not in ("id", "sync_metadata")})
        entity = type(self).from_dict(data)
        entity.sync_metadata = self.sync_metadata.copy() if self.sync_metadata else None
        return entity


@dataclass
class Task(SyncableEntity):
    """A to-do item, mirrored to Google Tasks."""

    entity_type: ClassVar[EntityType] = EntityType.TASK
    SCHEDULING_FIELDS: ClassVar[Tuple[str, ...]] = ("scheduled_date", "scheduled_time", "duration")
    DATETIME_FIELDS: ClassVar[Tuple[str, ...]] = ("completed_at",)

    id: str
    title: str
    tag: str = ""
    completed: bool = False
    completed_at: Optional[datetime] = None
    priority: bool = False
    scheduled_date: Optional[str] = None  # YYYY-MM-DD
    scheduled_time: Optional[str] = None  # HH:MM
    duration: Optional[int] = None  # minutes
    description: str = ""
    tags: List[str] = field(default_factory=list)
    objective_id: Optional[str] = None
    life_area_id: Optional[str] = None
    sync_metadata: Optional[SyncMetadata] = None

    def __post_init__(self):
        self.completed_at = ensure_aware(self.completed_at)

    @property
    def schedule_key(self) -> Optional[str]:
        return self.scheduled_date


@dataclass
class TimeSlot(SyncableEntity):
    """A scheduled block of time, mirrored to Google Calendar."""

    entity_type: ClassVar[EntityType] = EntityType.TIME_SLOT
    SCHEDULING_FIELDS: ClassVar[Tuple[str, ...]] = ("date", "start_time", "end_time", "recurring")

    id: str
    title: str
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    type: str = "personal"
    description: str = ""
    objective_id: Optional[str] = None
    life_area_id: Optional[str] = None
    recurring: Optional[Dict[str, Any]] = None
    sync_metadata: Optional[SyncMetadata] = None

    @property
    def schedule_key(self) -> Optional[str]:
        return self.date


@dataclass
class Objective(SyncableEntity):
    """A goal whose deadline is mirrored to Google Calendar."""

    entity_type: ClassVar[EntityType] = EntityType.OBJECTIVE
    SCHEDULING_FIELDS: ClassVar[Tuple[str, ...]] = ("due_date",)

    id: str
    title: str
    description: str = ""
    owner: str = ""
    status: str = "On Track"
    category: str = "personal"
    due_date: Optional[str] = None
    progress: int = 0
    sync_metadata: Optional[SyncMetadata] = None

    @property
    def schedule_key(self) -> Optional[str]:
        return self.due_date


@dataclass
class Friend(SyncableEntity):
    """A contact, mirrored to Google Contacts."""

    entity_type: ClassVar[EntityType] = EntityType.FRIEND

    id: str
    name: str
    role: str = ""
    role_type: str = "friend"
    email: str = ""
    phone: str = ""
    image: str = ""
    location: str = ""
    sync_metadata: Optional[SyncMetadata] = None

    @property
    def display_title(self) -> str:
        return self.name


Entity = Union[Task, TimeSlot, Objective, Friend]

ENTITY_CLASSES: Dict[EntityType, Type[SyncableEntity]] = {
    EntityType.TASK: Task,
    EntityType.TIME_SLOT: TimeSlot,
    EntityType.OBJECTIVE: Objective,
    EntityType.FRIEND: Friend,
}


def entity_from_dict(entity_type: EntityType, data: Dict[str, Any]) -> Entity:
    """Build the entity variant for ``entity_type`` from a snapshot."""
    return ENTITY_CLASSES[entity_type].from_dict(data)


@dataclass
class FieldDifference:
    """One field whose value differs between the two sides."""

    field: str
    app_value: Any
    external_value: Any
    field_type: FieldType
    can_merge: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "app_value": self.app_value,
            "external_value": self.external_value,
            "field_type": self.field_type.value,
            "can_merge": self.can_merge,
        }


@dataclass
class ConflictResolution:
    """Outcome of resolving a conflict."""

    strategy: ResolutionStrategy
    resolved_by: str
    resolved_at: datetime
    final_value: Dict[str, Any]
    merged_fields: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat(),
            "final_value": self.final_value,
            "merged_fields": self.merged_fields,
        }


@dataclass
class Conflict:
    """A detected divergence between the local and remote copy of an entity."""

    id: str
    entity_type: EntityType
    entity_id: str
    service: ExternalService
    app_value: Dict[str, Any]
    external_value: Dict[str, Any]
    conflict_fields: List[FieldDifference]
    app_last_modified: datetime
    external_last_modified: datetime
    detected_at: datetime
    priority: ConflictPriority
    external_raw: Dict[str, Any] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None
    resolution: Optional[ConflictResolution] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def field_names(self) -> List[str]:
        return [diff.field for diff in self.conflict_fields]

    def attach_resolution(self, resolution: ConflictResolution):
        """Stamp the conflict with its resolution."""
        self.resolution = resolution
        self.resolved_at = resolution.resolved_at

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        title = self.app_value.get("title") or self.app_value.get("name") or self.entity_id
        return (
            f"{self.entity_type.value} '{title}' changed on both sides "
            f"({', '.join(self.field_names())})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "service": self.service.value,
            "app_value": self.app_value,
            "external_value": self.external_value,
            "external_raw": self.external_raw,
            "conflict_fields": [diff.to_dict() for diff in self.conflict_fields],
            "app_last_modified": self.app_last_modified.isoformat(),
            "external_last_modified": self.external_last_modified.isoformat(),
            "detected_at": self.detected_at.isoformat(),
            "priority": self.priority.value,
            "resolved_at": to_iso_string(self.resolved_at),
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }


@dataclass
class QueueItemView:
    """Redacted view of a queue item, safe for status polling."""

    id: str
    type: EntityType
    action: QueueAction
    entity_id: str
    retries: int
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "action": self.action.value,
            "entity_id": self.entity_id,
            "retries": self.retries,
            "last_error": self.last_error,
        }


@dataclass
class SyncQueueItem:
    """A pending outbound change."""

    id: str
    type: EntityType
    action: QueueAction
    entity_id: str
    entity: Optional[Entity] = None  # None for delete
    timestamp: datetime = field(default_factory=now_utc)
    retries: int = 0
    last_error: Optional[str] = None
    external_id: Optional[str] = None

    @property
    def key(self) -> Tuple[EntityType, str]:
        return (self.type, self.entity_id)

    def view(self) -> QueueItemView:
        return QueueItemView(
            id=self.id,
            type=self.type,
            action=self.action,
            entity_id=self.entity_id,
            retries=self.retries,
            last_error=self.last_error,
        )


@dataclass
class QueueStatus:
    """Snapshot of the outbound queue."""

    queue_length: int
    is_draining: bool
    items: List[QueueItemView] = field(default_factory=list)
    dropped: List[QueueItemView] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "is_draining": self.is_draining,
            "items": [item.to_dict() for item in self.items],
            "dropped": [item.to_dict() for item in self.dropped],
        }


@dataclass
class DrainResult:
    """Result of one drain pass."""

    processed: int = 0
    retried: int = 0
    dropped: int = 0
    skipped: bool = False
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def complete(self, at: Optional[datetime] = None):
        """Mark the pass as completed and calculate duration."""
        self.completed_at = at or now_utc()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()


@dataclass
class ImportSummary:
    """Counts from one import cycle."""

    imported: int = 0
    updated: int = 0
    conflicts: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"imported": self.imported, "updated": self.updated, "conflicts": self.conflicts}
