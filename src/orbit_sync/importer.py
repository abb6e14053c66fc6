"""Reconciliation of a remote collection against local entities.

The reconciler is pure: it works out which imported items create new
entities, which update an existing one and which open a conflict. The
orchestrator applies the outcome to the entity store.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .adapter import RemoteAdapter
from .detection import ConflictDetectionEngine
from .models import (
    Conflict,
    Entity,
    ImportSummary,
    SyncDirection,
    SyncMetadata,
    SyncStatus,
)
from .utils.datetime import now_utc, parse_timestamp


logger = logging.getLogger(__name__)


def _normalize(title: Optional[str]) -> str:
    return (title or "").strip().casefold()


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


@dataclass
class ImportOutcome:
    """What one import pass wants done to the entity store."""

    created: List[Entity] = field(default_factory=list)
    updated: List[Entity] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)

    def summary(self) -> ImportSummary:
        return ImportSummary(
            imported=len(self.created),
            updated=len(self.updated),
            conflicts=len(self.conflicts),
        )


class ImportReconciler:
    """Matches imported items to local entities and merges or flags them."""

    def __init__(self, detector: Optional[ConflictDetectionEngine] = None,
                 clock: Callable[[], datetime] = now_utc):
        self.detector = detector or ConflictDetectionEngine(clock=clock)
        self.clock = clock

    def reconcile(self, adapter: RemoteAdapter, remote_items: Iterable[Dict[str, Any]],
                  local_entities: List[Entity]) -> ImportOutcome:
        """Reconcile every remote item against the local entities.

        Args:
            adapter: Adapter that produced the items, used for mapping
            remote_items: Raw remote payloads
            local_entities: Current local entities of the adapter's type

        Returns:
            Entities to create, entities to replace and conflicts to open
        """
        outcome = ImportOutcome()
        claimed: Set[str] = set()
        now = self.clock()

        for remote in remote_items:
            remote_id = adapter.remote_id(remote)
            remote_modified = adapter.remote_modified(remote)
            imported = adapter.to_local(remote)

            local = self.match(imported, remote_id, local_entities, claimed)
            if local is None:
                imported.sync_metadata = SyncMetadata(
                    external_service=adapter.service,
                    sync_status=SyncStatus.SYNCED,
                    last_synced_at=now,
                    external_id=remote_id,
                    sync_direction=SyncDirection.IMPORT,
                    external_last_modified=remote_modified,
                )
                outcome.created.append(imported)
                logger.debug(f"New {adapter.entity_type.value} from {adapter.provider_name}: {remote_id}")
                continue

            claimed.add(local.id)

            if local.sync_metadata is not None:
                metadata = local.sync_metadata.copy()
            else:
                metadata = SyncMetadata(external_service=adapter.service)
            if remote_modified is not None:
                metadata.external_last_modified = remote_modified
            if not metadata.external_id:
                metadata.external_id = remote_id

            conflict = self.detector.detect(local, remote, metadata)
            if conflict:
                outcome.conflicts.append(conflict)
                continue

            merged = self.merge(local, imported, metadata, adapter)
            merged.sync_metadata = metadata.copy(
                sync_status=SyncStatus.SYNCED,
                last_synced_at=now,
                conflict_details=None,
                last_error=None,
            )
            outcome.updated.append(merged)

        summary = outcome.summary()
        logger.info(
            f"Reconciled {adapter.entity_type.value} import: {summary.imported} new, "
            f"{summary.updated} updated, {summary.conflicts} conflicts"
        )
        return outcome

    def match(self, imported: Entity, remote_id: Optional[str], candidates: List[Entity],
              claimed: Set[str]) -> Optional[Entity]:
        """Find the local counterpart of an imported entity.

        Tiers, first hit wins: same external id; same normalized title and
        schedule date; same normalized title. Entities already claimed by an
        earlier item, or linked to a different remote id, are not candidates
        for the title tiers.
        """
        available = [e for e in candidates if e.id not in claimed]

        if remote_id:
            for entity in available:
                if entity.sync_metadata and entity.sync_metadata.external_id == remote_id:
                    return entity

        title = _normalize(imported.display_title)
        if not title:
            return None

        unlinked = [
            e for e in available
            if not (e.sync_metadata and e.sync_metadata.external_id)
        ]
        same_title = [e for e in unlinked if _normalize(e.display_title) == title]

        for entity in same_title:
            if entity.schedule_key == imported.schedule_key:
                return entity

        return same_title[0] if same_title else None

    def merge(self, local: Entity, imported: Entity, metadata: SyncMetadata,
              adapter: RemoteAdapter) -> Entity:
        """Fold an imported entity into its local counterpart.

        Completion is sticky, scheduling comes from the import when present,
        lists are unioned. Other mapped fields follow the remote only when
        the remote alone changed; empty local values are always backfilled.
        """
        prefer_remote = metadata.is_external_modified() and not metadata.is_app_modified()
        mapped = {
            m.local_field
            for m in self.detector.mappings_for(adapter.service, local.entity_type)
        }

        local_data = local.to_dict()
        imported_data = imported.to_dict()
        merged = dict(local_data)

        for name in local.content_fields():
            local_value = local_data.get(name)
            imported_value = imported_data.get(name)

            if name == "completed":
                merged[name] = bool(local_value) or bool(imported_value)
            elif name == "completed_at":
                merged[name] = _latest(local_value, imported_value)
            elif name in local.SCHEDULING_FIELDS:
                if imported_value is not None:
                    merged[name] = imported_value
            elif isinstance(local_value, list) and isinstance(imported_value, list):
                merged[name] = local_value + [v for v in imported_value if v not in local_value]
            elif _is_empty(imported_value):
                continue
            elif prefer_remote and name in mapped:
                merged[name] = imported_value
            elif _is_empty(local_value):
                merged[name] = imported_value

        return local.with_values(merged)


def _latest(first: Any, second: Any) -> Any:
    first_time, second_time = parse_timestamp(first), parse_timestamp(second)
    if first_time is None:
        return second
    if second_time is None:
        return first
    return first if first_time >= second_time else second
