"""Conflict detection between local entities and remote snapshots.

A conflict exists only when both sides changed since the last successful
reconciliation and at least one mapped field actually holds a different
value. A one-sided edit is never a conflict: that side is the new truth.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .models import (
    Conflict,
    ConflictPriority,
    Entity,
    EntityType,
    ExternalService,
    FieldDifference,
    FieldType,
    SyncMetadata,
)
from .utils.datetime import clock_time, date_part, is_iso_datetime, now_utc, parse_timestamp


logger = logging.getLogger(__name__)

CRITICAL_FIELDS = frozenset([
    "title", "completed", "scheduled_date", "scheduled_time",
    "date", "start_time", "end_time", "status",
])
IMPORTANT_FIELDS = frozenset(["description", "tag", "priority"])

NON_MERGEABLE_FIELDS = frozenset(["id", "completed", "status", "sync_metadata"])
DESCRIPTIVE_MARKERS = ("description", "notes", "title")

DEADLINE_PREFIX = "Deadline: "


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _is_completed(value: Any) -> bool:
    return value == "completed"


def _event_date(start: Any) -> Optional[str]:
    if not isinstance(start, dict):
        return None
    return start.get("date") or date_part(start.get("dateTime"))


def _deadline_title(summary: Any) -> str:
    summary = _text(summary)
    if summary.startswith(DEADLINE_PREFIX):
        return summary[len(DEADLINE_PREFIX):]
    return summary


@dataclass(frozen=True)
class FieldMapping:
    """Local field name, remote dotted path, and conversion into local shape."""

    local_field: str
    remote_path: str
    to_local: Optional[Callable[[Any], Any]] = None

    def extract(self, remote: Dict[str, Any]) -> Any:
        value = get_nested_value(remote, self.remote_path)
        if self.to_local is not None:
            return self.to_local(value)
        return value


FIELD_MAPPINGS: Dict[Tuple[ExternalService, EntityType], List[FieldMapping]] = {
    (ExternalService.GOOGLE_TASKS, EntityType.TASK): [
        FieldMapping("title", "title", _text),
        FieldMapping("completed", "status", _is_completed),
        FieldMapping("scheduled_date", "due", date_part),
        FieldMapping("description", "notes", _text),
    ],
    (ExternalService.GOOGLE_CALENDAR, EntityType.TIME_SLOT): [
        FieldMapping("title", "summary", _text),
        FieldMapping("date", "start", _event_date),
        FieldMapping("start_time", "start.dateTime", clock_time),
        FieldMapping("end_time", "end.dateTime", clock_time),
        FieldMapping("description", "description", _text),
    ],
    (ExternalService.GOOGLE_CALENDAR, EntityType.OBJECTIVE): [
        FieldMapping("title", "summary", _deadline_title),
        FieldMapping("due_date", "start", _event_date),
    ],
    (ExternalService.GOOGLE_CONTACTS, EntityType.FRIEND): [
        FieldMapping("name", "names.0.displayName", _text),
        FieldMapping("email", "emailAddresses.0.value", _text),
        FieldMapping("phone", "phoneNumbers.0.value", _text),
        FieldMapping("role", "biographies.0.value", _text),
    ],
}


def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve a dotted path such as ``start.dateTime`` or ``names.0.displayName``."""
    current = obj
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, list):
            if not key.isdigit() or int(key) >= len(current):
                return None
            current = current[int(key)]
        elif isinstance(current, dict):
            current = current.get(key)
        else:
            return None
    return current


def _is_instant(value: Any) -> bool:
    return isinstance(value, datetime) or is_iso_datetime(value)


def values_equal(a: Any, b: Any) -> bool:
    """Compare two field values the way sync cares about.

    Datetimes compare by instant, date-only strings lexicographically, and
    composite values structurally.
    """
    if a is None or b is None:
        return a is None and b is None

    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b

    if a == b:
        return True

    if _is_instant(a) and _is_instant(b):
        a_time, b_time = parse_timestamp(a), parse_timestamp(b)
        if a_time is not None and b_time is not None:
            return a_time == b_time

    return False


def field_type_of(value: Any) -> FieldType:
    if isinstance(value, (datetime, date)):
        return FieldType.DATE
    if isinstance(value, (list, tuple, set)):
        return FieldType.ARRAY
    if isinstance(value, dict):
        return FieldType.OBJECT
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, (int, float)):
        return FieldType.NUMBER
    return FieldType.STRING


def can_merge_field(field_name: str, app_value: Any, external_value: Any) -> bool:
    """Decide whether both values of a field can be combined."""
    if field_name in NON_MERGEABLE_FIELDS:
        return False

    if isinstance(app_value, list) and isinstance(external_value, list):
        return True

    if isinstance(app_value, str) and isinstance(external_value, str):
        return any(marker in field_name for marker in DESCRIPTIVE_MARKERS)

    return False


def calculate_priority(differences: Iterable[FieldDifference]) -> ConflictPriority:
    names = {diff.field for diff in differences}
    if names & CRITICAL_FIELDS:
        return ConflictPriority.HIGH
    if names & IMPORTANT_FIELDS:
        return ConflictPriority.MEDIUM
    return ConflictPriority.LOW


class ConflictDetectionEngine:
    """Detects conflicts between local entities and their remote counterparts."""

    def __init__(self, mappings: Optional[Dict[Tuple[ExternalService, EntityType], List[FieldMapping]]] = None,
                 clock: Callable[[], datetime] = now_utc):
        """Initialize the engine.

        Args:
            mappings: Field mappings keyed by (service, entity type); defaults
                to the built-in Google mappings
            clock: Source of "now" for detection timestamps
        """
        self.mappings = mappings if mappings is not None else FIELD_MAPPINGS
        self.clock = clock

    def mappings_for(self, service: ExternalService, entity_type: EntityType) -> List[FieldMapping]:
        return self.mappings.get((service, entity_type), [])

    def project_remote(self, entity: Entity, remote: Dict[str, Any],
                       service: ExternalService) -> Dict[str, Any]:
        """Local snapshot overlaid with every mapped remote field in local shape."""
        projected = entity.to_dict()
        for mapping in self.mappings_for(service, entity.entity_type):
            projected[mapping.local_field] = mapping.extract(remote)
        return projected

    def compare_fields(self, entity: Entity, remote: Dict[str, Any],
                       service: ExternalService) -> List[FieldDifference]:
        """List every mapped field whose values differ, in mapping order."""
        differences = []
        snapshot = entity.to_dict()

        for mapping in self.mappings_for(service, entity.entity_type):
            app_value = snapshot.get(mapping.local_field)
            external_value = mapping.extract(remote)

            if values_equal(app_value, external_value):
                continue

            differences.append(FieldDifference(
                field=mapping.local_field,
                app_value=app_value,
                external_value=external_value,
                field_type=field_type_of(app_value if app_value is not None else external_value),
                can_merge=can_merge_field(mapping.local_field, app_value, external_value),
            ))

        return differences

    def detect(self, entity: Entity, remote: Dict[str, Any],
               metadata: SyncMetadata) -> Optional[Conflict]:
        """Detect a conflict between a local entity and its remote snapshot.

        Args:
            entity: Current local entity
            remote: Raw remote payload for the same entity
            metadata: Sync metadata to judge modification times against

        Returns:
            The conflict, or None when there is nothing to reconcile
        """
        if metadata.last_synced_at is None:
            return None

        if not (metadata.is_app_modified() and metadata.is_external_modified()):
            return None

        service = metadata.external_service
        differences = self.compare_fields(entity, remote, service)
        if not differences:
            logger.debug(f"{entity.entity_type.value} {entity.id} changed on both sides but converged")
            return None

        now = self.clock()
        conflict = Conflict(
            id=f"conflict-{entity.id}-{uuid.uuid4().hex[:8]}",
            entity_type=entity.entity_type,
            entity_id=entity.id,
            service=service,
            app_value=entity.to_dict(),
            external_value=self.project_remote(entity, remote, service),
            external_raw=dict(remote),
            conflict_fields=differences,
            app_last_modified=metadata.app_last_modified or now,
            external_last_modified=metadata.external_last_modified or now,
            detected_at=now,
            priority=calculate_priority(differences),
        )
        logger.warning(
            f"Conflict detected for {entity.entity_type.value} {entity.id}: "
            f"{', '.join(conflict.field_names())} ({conflict.priority.value})"
        )
        return conflict

    def detect_batch(self, entities: Iterable[Entity], remote_by_external_id: Dict[str, Dict[str, Any]],
                     metadata_by_id: Dict[str, SyncMetadata]) -> List[Conflict]:
        """Detect conflicts for many entities at once.

        Entities without metadata, without an external id or without a
        remote snapshot are skipped.
        """
        conflicts = []

        for entity in entities:
            metadata = metadata_by_id.get(entity.id)
            if metadata is None or not metadata.external_id:
                continue

            remote = remote_by_external_id.get(metadata.external_id)
            if remote is None:
                continue

            conflict = self.detect(entity, remote, metadata)
            if conflict:
                conflicts.append(conflict)

        logger.info(f"Batch detection found {len(conflicts)} conflicts")
        return conflicts
