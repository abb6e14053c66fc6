"""Tests for sync metadata and entity models."""

from datetime import datetime, timedelta, timezone

from orbit_sync.models import (
    Conflict,
    ConflictPriority,
    EntityType,
    ExternalService,
    FieldDifference,
    FieldType,
    Friend,
    QueueAction,
    SyncMetadata,
    SyncQueueItem,
    SyncStatus,
    Task,
    TimeSlot,
    entity_from_dict,
)

from conftest import T0, synced_task


class TestSyncMetadata:
    """Modification checks and state transitions."""

    def test_not_modified_without_history(self):
        metadata = SyncMetadata(
            external_service=ExternalService.GOOGLE_TASKS,
            app_last_modified=T0,
            external_last_modified=T0,
        )
        assert metadata.is_app_modified() is False
        assert metadata.is_external_modified() is False

    def test_modified_is_strictly_after_last_sync(self):
        metadata = SyncMetadata(
            external_service=ExternalService.GOOGLE_TASKS,
            last_synced_at=T0,
            app_last_modified=T0,
            external_last_modified=T0 + timedelta(seconds=1),
        )
        assert metadata.is_app_modified() is False
        assert metadata.is_external_modified() is True

    def test_naive_timestamps_become_utc(self):
        metadata = SyncMetadata(
            external_service=ExternalService.GOOGLE_TASKS,
            last_synced_at=datetime(2024, 1, 1, 12, 0),
        )
        assert metadata.last_synced_at.tzinfo == timezone.utc

    def test_mark_synced_clears_conflict_and_error(self):
        metadata = SyncMetadata(
            external_service=ExternalService.GOOGLE_TASKS,
            sync_status=SyncStatus.ERROR,
            conflict_details={"conflict_id": "c1"},
            last_error="boom",
        )
        metadata.mark_synced(T0, external_id="remote-9")

        assert metadata.sync_status == SyncStatus.SYNCED
        assert metadata.last_synced_at == T0
        assert metadata.external_id == "remote-9"
        assert metadata.conflict_details is None
        assert metadata.last_error is None

    def test_dict_round_trip(self):
        metadata = SyncMetadata(
            external_service=ExternalService.GOOGLE_CONTACTS,
            sync_status=SyncStatus.CONFLICT,
            last_synced_at=T0,
            external_id="people/c1",
        )
        restored = SyncMetadata.from_dict(metadata.to_dict())
        assert restored == metadata

    def test_copy_is_independent(self):
        metadata = SyncMetadata(
            external_service=ExternalService.GOOGLE_TASKS,
            conflict_details={"conflict_id": "c1"},
        )
        clone = metadata.copy(sync_status=SyncStatus.SYNCED)
        clone.conflict_details["conflict_id"] = "c2"

        assert metadata.conflict_details["conflict_id"] == "c1"
        assert metadata.sync_status == SyncStatus.PENDING


class TestEntities:
    """Snapshots and copies of entity variants."""

    def test_snapshot_excludes_metadata(self):
        task = synced_task(tags=["work"])
        data = task.to_dict()

        assert "sync_metadata" not in data
        assert data["title"] == "Write report"
        assert data["tags"] == ["work"]
        assert task.to_dict(include_metadata=True)["sync_metadata"]["external_id"] == "remote-1"

    def test_from_dict_ignores_unknown_keys(self):
        task = entity_from_dict(EntityType.TASK, {"id": "t1", "title": "A", "googleTaskId": "x"})
        assert isinstance(task, Task)
        assert task.title == "A"

    def test_from_dict_parses_completion_time(self):
        task = Task.from_dict({"id": "t1", "title": "A", "completed_at": "2024-01-05T10:00:00Z"})
        assert task.completed_at == datetime(2024, 1, 5, 10, 0, tzinfo=timezone.utc)

    def test_with_values_keeps_id_and_metadata(self):
        task = synced_task()
        updated = task.with_values({"id": "other", "title": "New", "description": "D"})

        assert updated.id == "task-1"
        assert updated.title == "New"
        assert updated.description == "D"
        assert updated.sync_metadata == task.sync_metadata
        assert updated.sync_metadata is not task.sync_metadata

    def test_display_title_and_schedule_key(self):
        assert Friend(id="f1", name="Ada Lovelace").display_title == "Ada Lovelace"
        assert TimeSlot(id="s1", title="Focus", date="2024-01-05").schedule_key == "2024-01-05"
        assert Task(id="t1", title="A", scheduled_date="2024-02-01").schedule_key == "2024-02-01"


class TestConflictAndQueueItems:

    def test_conflict_describe_and_dict(self):
        conflict = Conflict(
            id="conflict-task-1-abc",
            entity_type=EntityType.TASK,
            entity_id="task-1",
            service=ExternalService.GOOGLE_TASKS,
            app_value={"id": "task-1", "title": "Local"},
            external_value={"id": "task-1", "title": "Remote"},
            conflict_fields=[FieldDifference("title", "Local", "Remote", FieldType.STRING, True)],
            app_last_modified=T0,
            external_last_modified=T0,
            detected_at=T0,
            priority=ConflictPriority.HIGH,
        )

        assert "Local" in conflict.describe()
        assert conflict.to_dict()["conflict_fields"][0]["field"] == "title"
        assert conflict.to_dict()["resolution"] is None
        assert not conflict.is_resolved

    def test_queue_item_view_has_no_payload(self):
        item = SyncQueueItem(
            id="q1",
            type=EntityType.TASK,
            action=QueueAction.UPDATE,
            entity_id="task-1",
            entity=synced_task(description="secret notes"),
        )
        view = item.view().to_dict()

        assert view == {
            "id": "q1",
            "type": "task",
            "action": "update",
            "entity_id": "task-1",
            "retries": 0,
            "last_error": None,
        }
