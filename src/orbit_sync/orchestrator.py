"""Main orchestration class for outbound sync, conflicts and imports.

``SyncOrchestrator`` owns the outbound queue and the set of open conflicts,
and coordinates the adapters, the conflict engines and the entity store.
Everything runs on a single asyncio event loop.
"""

import asyncio
import copy
import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from .adapter import AuthProvider, ExportResult, RemoteAdapter
from .config import (
    CONFLICT_CONFIG_KEY,
    SYNC_CONFIG_KEY,
    ConfigStore,
    ConflictResolutionSettings,
    MemoryConfigStore,
    SyncSettings,
    apply_updates,
)
from .detection import ConflictDetectionEngine
from .exceptions import ConflictNotFoundError, NotAuthenticatedError
from .importer import ImportReconciler
from .models import (
    Conflict,
    DrainResult,
    Entity,
    EntityType,
    ExternalService,
    ImportSummary,
    QueueAction,
    QueueItemView,
    QueueStatus,
    ResolutionStrategy,
    SyncMetadata,
    SyncQueueItem,
    SyncStatus,
)
from .resolution import ConflictResolutionEngine
from .scheduler import PeriodicTask
from .store import EntityStore
from .sync_queue import SyncQueue
from .utils.datetime import now_utc


logger = logging.getLogger(__name__)

QueueListener = Callable[[QueueStatus], Any]
ConflictListener = Callable[[Conflict], Any]


class SyncOrchestrator:
    """Coordinates outbound sync, conflict handling and periodic imports.

    This class provides a unified interface for:
    - Queueing local changes and draining them to the remote adapters
    - Detecting, storing and resolving conflicts
    - Importing remote collections into the entity store
    - Background drain and periodic import scheduling
    """

    def __init__(self, auth: AuthProvider, entity_store: EntityStore,
                 config_store: Optional[ConfigStore] = None,
                 adapters: Optional[Iterable[RemoteAdapter]] = None,
                 detector: Optional[ConflictDetectionEngine] = None,
                 resolver: Optional[ConflictResolutionEngine] = None,
                 clock: Callable[[], datetime] = now_utc,
                 item_delay: float = 0.2,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 max_history_entries: int = 50):
        """Initialize the orchestrator.

        Args:
            auth: Authentication signal for the remote service
            entity_store: The application's entities
            config_store: Where settings live; in-memory when omitted
            adapters: Remote adapters, one per entity type
            detector: Conflict detection engine
            resolver: Conflict resolution engine; built from stored settings when omitted
            clock: Source of "now"
            item_delay: Seconds to wait between queue items
            sleep: Awaitable used for the inter-item delay
            max_history_entries: Bound for dropped-item and resolved-conflict history
        """
        self.auth = auth
        self.entity_store = entity_store
        self.config_store = config_store or MemoryConfigStore()
        self.clock = clock
        self.item_delay = item_delay
        self.sleep = sleep
        self.max_history_entries = max_history_entries
        self.logger = logging.getLogger(__name__)

        self._sync_config = self.config_store.load(SYNC_CONFIG_KEY, SyncSettings)
        self.detector = detector or ConflictDetectionEngine(clock=clock)
        self.resolver = resolver or ConflictResolutionEngine(
            self.config_store.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings),
            clock=clock,
        )
        self.reconciler = ImportReconciler(self.detector, clock=clock)

        self.adapters: Dict[EntityType, RemoteAdapter] = {}
        for adapter in adapters or []:
            self.register_adapter(adapter)

        self.queue = SyncQueue()
        self.is_draining = False
        self.dropped_items: List[QueueItemView] = []

        self.open_conflicts: "OrderedDict[str, Conflict]" = OrderedDict()
        self.resolved_conflicts: List[Conflict] = []

        self._queue_listeners: List[QueueListener] = []
        self._conflict_listeners: List[ConflictListener] = []
        self._pending_drains: Set[asyncio.Task] = set()
        self._background_drain: Optional[PeriodicTask] = None
        self._background_requested = False
        self._auto_import: Optional[PeriodicTask] = None

    # Adapter Management

    def register_adapter(self, adapter: RemoteAdapter):
        """Register the adapter for its entity type, replacing any previous one."""
        self.adapters[adapter.entity_type] = adapter
        self.logger.info(f"Registered {adapter.provider_name} adapter for {adapter.entity_type.value}")

    def get_adapter(self, entity_type: EntityType) -> Optional[RemoteAdapter]:
        return self.adapters.get(entity_type)

    # Configuration

    @property
    def sync_config(self) -> SyncSettings:
        return self._sync_config

    @property
    def conflict_config(self) -> ConflictResolutionSettings:
        return self.resolver.config

    def update_sync_config(self, **changes) -> SyncSettings:
        """Update and persist sync settings.

        Once background drain has been requested it is restarted whenever
        the interval or the global switch changes, including after a change
        that had paused it.

        Raises:
            ValueError: If a setting is unknown or invalid
        """
        previous = self._sync_config
        self._sync_config = apply_updates(previous, changes)
        self.config_store.save(SYNC_CONFIG_KEY, self._sync_config)
        self.logger.info(f"Updated sync settings: {', '.join(sorted(changes))}")

        schedule_changed = (
            previous.background_sync_interval != self._sync_config.background_sync_interval
            or previous.enabled != self._sync_config.enabled
        )
        if schedule_changed and self._background_requested:
            self.start_background_drain()

        return self._sync_config

    def update_conflict_config(self, **changes) -> ConflictResolutionSettings:
        """Update and persist conflict resolution settings."""
        config = self.resolver.update_config(**changes)
        self.config_store.save(CONFLICT_CONFIG_KEY, config)
        self.logger.info(f"Updated conflict settings: {', '.join(sorted(changes))}")
        return config

    def _sync_allowed(self, entity_type: EntityType) -> bool:
        return self._sync_config.enabled and self._sync_config.category_enabled(entity_type)

    # Listeners

    def add_queue_listener(self, listener: QueueListener):
        self._queue_listeners.append(listener)

    def remove_queue_listener(self, listener: QueueListener):
        if listener in self._queue_listeners:
            self._queue_listeners.remove(listener)

    def add_conflict_listener(self, listener: ConflictListener):
        self._conflict_listeners.append(listener)

    def remove_conflict_listener(self, listener: ConflictListener):
        if listener in self._conflict_listeners:
            self._conflict_listeners.remove(listener)

    def _notify(self, listeners: Sequence[Callable[[Any], Any]], payload: Any):
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception as e:
                self.logger.error(f"Listener {listener!r} failed: {e}")

    # Outbound Queue

    def enqueue(self, entity_type: Union[EntityType, str], action: Union[QueueAction, str],
                entity_id: str, entity: Optional[Entity] = None,
                external_id: Optional[str] = None) -> Optional[SyncQueueItem]:
        """Queue a local change for export.

        Any pending item for the same entity is replaced. When
        ``auto_sync_on_change`` is set a drain is scheduled on the running
        event loop.

        Args:
            entity_type: Type of the changed entity
            action: create, update or delete
            entity_id: Local id of the entity
            entity: Snapshot to export; not needed for delete
            external_id: Remote id to delete, for entities already removed locally

        Returns:
            The queued item, or None when sync is disabled for the type
        """
        entity_type = EntityType(entity_type)
        action = QueueAction(action)

        if not self._sync_allowed(entity_type):
            self.logger.debug(f"Sync disabled for {entity_type.value}, not queueing {entity_id}")
            return None

        item = SyncQueueItem(
            id=f"{entity_type.value}-{entity_id}-{uuid.uuid4().hex[:8]}",
            type=entity_type,
            action=action,
            entity_id=entity_id,
            entity=copy.deepcopy(entity) if entity is not None else None,
            timestamp=self.clock(),
            external_id=external_id,
        )
        self.queue.put(item)
        self.logger.debug(f"Queued {action.value} for {entity_type.value} {entity_id}")

        if action != QueueAction.DELETE:
            self._mark_pending(entity_type, entity_id)

        self._notify(self._queue_listeners, self.status())

        if self._sync_config.auto_sync_on_change:
            self._schedule_drain()

        return item

    def _schedule_drain(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop, change waits for the next drain")
            return

        task = loop.create_task(self.drain())
        self._pending_drains.add(task)
        task.add_done_callback(self._pending_drains.discard)

    def _mark_pending(self, entity_type: EntityType, entity_id: str):
        entity = self.entity_store.get(entity_type, entity_id)
        if entity is None:
            return

        metadata = entity.sync_metadata
        if metadata is None:
            adapter = self.adapters.get(entity_type)
            if adapter is None:
                return
            metadata = SyncMetadata(external_service=adapter.service)
        elif metadata.sync_status == SyncStatus.CONFLICT:
            return

        metadata.sync_status = SyncStatus.PENDING
        entity.sync_metadata = metadata
        self.entity_store.update(entity)

    async def drain(self) -> DrainResult:
        """Process every queued item once.

        Skipped while another drain runs, when the queue is empty or when no
        valid token is available.
        """
        result = DrainResult(started_at=self.clock())

        if self.is_draining or not len(self.queue):
            result.skipped = True
            return result

        if not self.auth.is_authenticated():
            self.logger.warning(f"Not authenticated, leaving {len(self.queue)} items queued")
            result.skipped = True
            return result

        token = self.auth.get_access_token()
        if not token:
            self.logger.warning("No access token available, skipping drain")
            result.skipped = True
            return result

        self.is_draining = True
        self._notify(self._queue_listeners, self.status())

        snapshot = self.queue.snapshot()
        retained: List[SyncQueueItem] = []
        visited = 0
        max_retries = self._sync_config.max_retries

        try:
            for item in snapshot:
                if visited:
                    await self.sleep(self.item_delay)
                visited += 1

                error = await self._process_item(item, token)
                if error is None:
                    result.processed += 1
                    continue

                item.retries += 1
                item.last_error = error
                if item.retries < max_retries:
                    self.logger.warning(
                        f"Sync of {item.type.value} {item.entity_id} failed "
                        f"({item.retries}/{max_retries}): {error}"
                    )
                    retained.append(item)
                    result.retried += 1
                else:
                    self._drop(item)
                    result.dropped += 1
        finally:
            retained.extend(snapshot[visited:])
            self.queue.rebuild(retained, snapshot)
            self.is_draining = False
            self._notify(self._queue_listeners, self.status())

        result.complete(self.clock())
        self.logger.info(
            f"Drain pass: {result.processed} synced, {result.retried} retrying, "
            f"{result.dropped} dropped"
        )
        return result

    async def trigger_sync(self) -> DrainResult:
        """Drain now, regardless of the auto-sync setting.

        Raises:
            NotAuthenticatedError: If there is no valid connection
        """
        if not self.auth.is_authenticated():
            raise NotAuthenticatedError("Not connected to the remote service")
        return await self.drain()

    async def _process_item(self, item: SyncQueueItem, token: str) -> Optional[str]:
        """Send one item; returns an error message or None on success."""
        adapter = self.adapters.get(item.type)
        if adapter is None:
            return f"No adapter registered for {item.type.value}"

        try:
            if item.action == QueueAction.DELETE:
                result = await self._delete_remote(adapter, item, token)
            else:
                entity = self._export_snapshot(item, adapter)
                if entity is None:
                    return f"{item.type.value} {item.entity_id} not found"
                result = await adapter.export(entity, token)
        except Exception as e:
            return str(e) or e.__class__.__name__

        if not result.success:
            return result.error or "Export failed"

        if item.action != QueueAction.DELETE:
            self._mark_synced(item, result.remote_id)
        self.logger.debug(f"Synced {item.action.value} for {item.type.value} {item.entity_id}")
        return None

    async def _delete_remote(self, adapter: RemoteAdapter, item: SyncQueueItem,
                             token: str) -> ExportResult:
        external_id = item.external_id
        if not external_id and item.entity is not None and item.entity.sync_metadata:
            external_id = item.entity.sync_metadata.external_id
        if not external_id:
            self.logger.debug(f"{item.type.value} {item.entity_id} never reached the remote, nothing to delete")
            return ExportResult(success=True)
        return await adapter.delete(external_id, token)

    def _export_snapshot(self, item: SyncQueueItem, adapter: RemoteAdapter) -> Optional[Entity]:
        """Queued snapshot carrying the store's current external id."""
        stored = self.entity_store.get(item.type, item.entity_id)
        entity = copy.deepcopy(item.entity) if item.entity is not None else stored
        if entity is None:
            return None

        if stored is not None and stored.sync_metadata is not None:
            entity.sync_metadata = stored.sync_metadata.copy()
        elif entity.sync_metadata is None:
            entity.sync_metadata = SyncMetadata(external_service=adapter.service)
        return entity

    def _mark_synced(self, item: SyncQueueItem, remote_id: Optional[str]):
        entity = self.entity_store.get(item.type, item.entity_id)
        if entity is None:
            return

        adapter = self.adapters[item.type]
        metadata = entity.sync_metadata or SyncMetadata(external_service=adapter.service)
        if metadata.sync_status == SyncStatus.CONFLICT:
            if remote_id:
                metadata.external_id = remote_id
        else:
            metadata.mark_synced(self.clock(), remote_id)
        entity.sync_metadata = metadata
        self.entity_store.update(entity)

    def _drop(self, item: SyncQueueItem):
        self.logger.error(
            f"Giving up on {item.action.value} for {item.type.value} {item.entity_id} "
            f"after {item.retries} attempts: {item.last_error}"
        )
        self.dropped_items.append(item.view())
        if len(self.dropped_items) > self.max_history_entries:
            self.dropped_items = self.dropped_items[-self.max_history_entries:]

        entity = self.entity_store.get(item.type, item.entity_id)
        if entity is not None and entity.sync_metadata is not None:
            entity.sync_metadata.mark_error(item.last_error)
            self.entity_store.update(entity)

    def status(self) -> QueueStatus:
        """Queue state without entity payloads."""
        return QueueStatus(
            queue_length=len(self.queue),
            is_draining=self.is_draining,
            items=self.queue.views(),
            dropped=list(self.dropped_items),
        )

    def clear_queue(self) -> int:
        """Discard every pending item. Returns how many were discarded."""
        count = self.queue.clear()
        self.logger.info(f"Cleared {count} queued items")
        self._notify(self._queue_listeners, self.status())
        return count

    # Background Scheduling

    def start_background_drain(self) -> Optional[PeriodicTask]:
        """Drain periodically per ``background_sync_interval``.

        Not started when sync is disabled or the interval is 0; it starts
        once a later settings change allows it again.
        """
        self._cancel_background_drain()
        self._background_requested = True

        interval = self._sync_config.background_sync_interval
        if not self._sync_config.enabled or interval == 0:
            self.logger.info("Background sync disabled")
            return None

        self._background_drain = PeriodicTask(interval * 60, self._background_pass, name="background sync")
        self._background_drain.start()
        return self._background_drain

    def stop_background_drain(self):
        self._background_requested = False
        self._cancel_background_drain()

    def _cancel_background_drain(self):
        if self._background_drain is not None:
            self._background_drain.stop()
            self._background_drain = None

    async def _background_pass(self):
        if len(self.queue) and self.auth.is_authenticated():
            await self.drain()

    async def start_auto_import(self, interval_minutes: float = 30,
                                entity_types: Sequence[EntityType] = (EntityType.TASK,)) -> PeriodicTask:
        """Import now, then every ``interval_minutes``."""
        self.stop_auto_import()
        entity_types = tuple(entity_types)

        async def import_all():
            for entity_type in entity_types:
                await self.import_remote(entity_type)

        await import_all()

        self._auto_import = PeriodicTask(interval_minutes * 60, import_all, name="auto import")
        self._auto_import.start()
        return self._auto_import

    def stop_auto_import(self):
        if self._auto_import is not None:
            self._auto_import.stop()
            self._auto_import = None

    def shutdown(self):
        """Stop all periodic work."""
        self.stop_background_drain()
        self.stop_auto_import()

    # Conflicts

    def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = self.open_conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        return conflict

    def get_conflicts(self) -> List[Conflict]:
        return list(self.open_conflicts.values())

    def get_conflicts_by_type(self, entity_type: EntityType) -> List[Conflict]:
        return [c for c in self.open_conflicts.values() if c.entity_type == entity_type]

    def get_conflicts_by_service(self, service: ExternalService) -> List[Conflict]:
        return [c for c in self.open_conflicts.values() if c.service == service]

    async def detect_conflicts(self) -> List[Conflict]:
        """Fetch every enabled remote collection and open the conflicts found."""
        if not self.auth.is_authenticated():
            self.logger.warning("Not authenticated, skipping conflict detection")
            return []

        token = self.auth.get_access_token()
        if not token:
            self.logger.warning("No access token available, skipping conflict detection")
            return []

        found = []
        for entity_type, adapter in self.adapters.items():
            if not self._sync_allowed(entity_type):
                continue

            try:
                result = await adapter.import_pending(token)
            except Exception as e:
                self.logger.error(f"Fetching {entity_type.value} from {adapter.provider_name} failed: {e}")
                continue

            if not result.success:
                self.logger.error(f"Fetching {entity_type.value} from {adapter.provider_name} failed: {result.error}")
                continue

            remote_by_id = {}
            for remote in result.items:
                remote_id = adapter.remote_id(remote)
                if remote_id:
                    remote_by_id[remote_id] = remote

            entities = self.entity_store.list(entity_type)
            metadata_by_id = {}
            for entity in entities:
                if entity.sync_metadata is None:
                    continue
                metadata = entity.sync_metadata.copy()
                remote = remote_by_id.get(metadata.external_id)
                if remote is not None:
                    modified = adapter.remote_modified(remote)
                    if modified is not None:
                        metadata.external_last_modified = modified
                metadata_by_id[entity.id] = metadata

            conflicts = self.detector.detect_batch(entities, remote_by_id, metadata_by_id)
            for conflict in conflicts:
                self._open_conflict(conflict)
                found.append(conflict)

            conflicted = {conflict.entity_id for conflict in conflicts}
            for entity in entities:
                metadata = metadata_by_id.get(entity.id)
                if entity.id in conflicted or metadata is None:
                    continue
                remote = remote_by_id.get(metadata.external_id)
                if remote is not None and not self.detector.compare_fields(entity, remote, metadata.external_service):
                    self._settle_converged(entity, metadata)

        if found and self.conflict_config.auto_resolve:
            self.auto_resolve_conflicts()

        return found

    def _open_conflict(self, conflict: Conflict):
        """Store a conflict, replacing any open one for the same entity."""
        self._dismiss_conflicts(conflict.entity_type, conflict.entity_id)
        self.open_conflicts[conflict.id] = conflict

        entity = self.entity_store.get(conflict.entity_type, conflict.entity_id)
        if entity is not None:
            metadata = entity.sync_metadata or SyncMetadata(external_service=conflict.service)
            metadata.external_last_modified = conflict.external_last_modified
            metadata.mark_conflict(conflict)
            entity.sync_metadata = metadata
            self.entity_store.update(entity)

        if self.conflict_config.notify_on_conflict:
            self._notify(self._conflict_listeners, conflict)

    def _dismiss_conflicts(self, entity_type: EntityType, entity_id: str) -> List[Conflict]:
        """Drop the open conflicts for one entity without applying them."""
        dismissed = [
            c for c in self.open_conflicts.values()
            if c.entity_type == entity_type and c.entity_id == entity_id
        ]
        for conflict in dismissed:
            del self.open_conflicts[conflict.id]
        return dismissed

    def _settle_converged(self, entity: Entity, metadata: SyncMetadata):
        """Close an entity's open conflict once both sides hold the same values."""
        if not self._dismiss_conflicts(entity.entity_type, entity.id):
            return

        self.logger.info(f"{entity.entity_type.value} {entity.id} converged, dropping its open conflict")
        metadata.mark_synced(self.clock())
        entity.sync_metadata = metadata
        self.entity_store.update(entity)

    def resolve_conflict(self, conflict_id: str,
                         strategy: Union[ResolutionStrategy, str, None] = None) -> Conflict:
        """Resolve an open conflict and apply the outcome.

        Raises:
            ConflictNotFoundError: If no open conflict has this id
            ManualResolutionRequired: If the effective strategy is manual
            UnknownStrategyError: If the strategy name is not known
        """
        conflict = self.get_conflict(conflict_id)
        resolution = self.resolver.resolve(conflict, strategy)
        now = resolution.resolved_at

        entity = self.entity_store.get(conflict.entity_type, conflict.entity_id)
        resolved = None
        if entity is None:
            self.logger.warning(f"{conflict.entity_type.value} {conflict.entity_id} is gone, resolution not applied")
        else:
            resolved = entity.with_values(resolution.final_value)
            metadata = resolved.sync_metadata or SyncMetadata(external_service=conflict.service)
            metadata.mark_synced(now)
            metadata.app_last_modified = now
            resolved.sync_metadata = metadata
            self.entity_store.update(resolved)

        conflict.attach_resolution(resolution)
        del self.open_conflicts[conflict.id]
        self.resolved_conflicts.append(conflict)
        if len(self.resolved_conflicts) > self.max_history_entries:
            self.resolved_conflicts = self.resolved_conflicts[-self.max_history_entries:]

        if resolved is not None and resolution.strategy != ResolutionStrategy.EXTERNAL_WINS:
            self.enqueue(conflict.entity_type, QueueAction.UPDATE, conflict.entity_id, resolved)

        return conflict

    def auto_resolve_conflicts(self) -> List[Conflict]:
        """Resolve every open conflict with the configured strategy."""
        resolved = []
        for conflict in list(self.open_conflicts.values()):
            try:
                resolved.append(self.resolve_conflict(conflict.id))
            except Exception as e:
                self.logger.warning(f"Could not auto-resolve {conflict.id}: {e}")

        self.logger.info(f"Auto-resolved {len(resolved)} conflicts")
        return resolved

    # Import

    async def import_remote(self, entity_type: EntityType = EntityType.TASK) -> ImportSummary:
        """Pull the remote collection for ``entity_type`` and reconcile it."""
        entity_type = EntityType(entity_type)

        if not self._sync_allowed(entity_type):
            self.logger.debug(f"Sync disabled for {entity_type.value}, skipping import")
            return ImportSummary()

        adapter = self.adapters.get(entity_type)
        if adapter is None:
            self.logger.warning(f"No adapter registered for {entity_type.value}, skipping import")
            return ImportSummary()

        if not self.auth.is_authenticated():
            self.logger.warning("Not authenticated, skipping import")
            return ImportSummary()

        token = self.auth.get_access_token()
        if not token:
            self.logger.warning("No access token available, skipping import")
            return ImportSummary()

        try:
            result = await adapter.import_pending(token)
        except Exception as e:
            self.logger.error(f"Import of {entity_type.value} from {adapter.provider_name} failed: {e}")
            return ImportSummary()

        if not result.success:
            self.logger.error(f"Import of {entity_type.value} from {adapter.provider_name} failed: {result.error}")
            return ImportSummary()

        outcome = self.reconciler.reconcile(adapter, result.items, self.entity_store.list(entity_type))

        for entity in outcome.created:
            self.entity_store.add(entity)
        for entity in outcome.updated:
            # merged entities no longer conflict
            if self._dismiss_conflicts(entity.entity_type, entity.id):
                self.logger.info(f"{entity_type.value} {entity.id} converged, dropping its open conflict")
            self.entity_store.update(entity)
        for conflict in outcome.conflicts:
            self._open_conflict(conflict)

        if outcome.conflicts and self.conflict_config.auto_resolve:
            self.auto_resolve_conflicts()

        return outcome.summary()
