"""Tests for conflict detection."""

from datetime import datetime, timedelta, timezone

import pytest

from orbit_sync.detection import (
    ConflictDetectionEngine,
    calculate_priority,
    can_merge_field,
    field_type_of,
    get_nested_value,
    values_equal,
)
from orbit_sync.models import (
    ConflictPriority,
    ExternalService,
    FieldDifference,
    FieldType,
    Friend,
    SyncMetadata,
    SyncStatus,
    TimeSlot,
)

from conftest import FakeClock, T0, synced_task

T1 = T0 + timedelta(hours=1)
T2 = T0 + timedelta(hours=2)


def remote_task(**overrides):
    remote = {
        "id": "remote-1",
        "title": "Write report",
        "status": "needsAction",
        "updated": T2.isoformat(),
    }
    remote.update(overrides)
    return remote


@pytest.fixture
def engine():
    return ConflictDetectionEngine(clock=FakeClock(T2 + timedelta(minutes=5)))


class TestDetect:
    """Detection rules."""

    def test_no_conflict_without_history(self, engine):
        task = synced_task(title="Local", last_synced=None, app_modified=T1, external_modified=T2)
        task.sync_metadata.last_synced_at = None

        assert engine.detect(task, remote_task(title="Something else", status="completed"),
                             task.sync_metadata) is None

    def test_unilateral_local_edit_is_not_a_conflict(self, engine):
        task = synced_task(title="Local", app_modified=T1, external_modified=T0 - timedelta(hours=1))
        assert engine.detect(task, remote_task(title="Remote"), task.sync_metadata) is None

    def test_unilateral_remote_edit_is_not_a_conflict(self, engine):
        task = synced_task(title="Local", app_modified=None, external_modified=T2)
        assert engine.detect(task, remote_task(title="Remote"), task.sync_metadata) is None

    def test_both_sides_edited_title_and_due_date(self, engine):
        task = synced_task(title="Write final report", app_modified=T1, external_modified=T2)
        remote = remote_task(due="2024-01-10T00:00:00.000Z")

        conflict = engine.detect(task, remote, task.sync_metadata)

        assert conflict is not None
        assert conflict.priority == ConflictPriority.HIGH
        assert conflict.field_names() == ["title", "scheduled_date"]
        title_diff = conflict.conflict_fields[0]
        assert title_diff.app_value == "Write final report"
        assert title_diff.external_value == "Write report"
        assert conflict.external_value["scheduled_date"] == "2024-01-10"
        assert conflict.external_raw == remote
        assert conflict.id.startswith("conflict-task-1-")
        assert conflict.app_last_modified == T1
        assert conflict.external_last_modified == T2

    def test_same_final_value_is_not_reported(self, engine):
        task = synced_task(title="Write report", scheduled_date="2024-01-10", app_modified=T1, external_modified=T2)
        conflict = engine.detect(task, remote_task(due="2024-01-10T00:00:00.000Z", notes="remote"),
                                 task.sync_metadata)

        assert conflict.field_names() == ["description"]
        assert conflict.priority == ConflictPriority.MEDIUM

    def test_converged_edits_are_not_a_conflict(self, engine):
        task = synced_task(title="Same", app_modified=T1, external_modified=T2)
        assert engine.detect(task, remote_task(title="Same"), task.sync_metadata) is None

    def test_missing_notes_equal_empty_description(self, engine):
        task = synced_task(title="Same", description="", app_modified=T1, external_modified=T2)
        assert engine.detect(task, remote_task(title="Same"), task.sync_metadata) is None

    def test_completion_status_is_converted(self, engine):
        task = synced_task(completed=True, app_modified=T1, external_modified=T2)
        assert engine.detect(task, remote_task(status="completed"), task.sync_metadata) is None

        task.completed = False
        conflict = engine.detect(task, remote_task(status="completed"), task.sync_metadata)
        assert conflict.conflict_fields[0].field == "completed"
        assert conflict.conflict_fields[0].field_type == FieldType.BOOLEAN
        assert conflict.conflict_fields[0].can_merge is False

    def test_time_slot_mapping(self, engine):
        slot = TimeSlot(
            id="slot-1", title="Focus", date="2024-01-05", start_time="09:00", end_time="10:00",
            sync_metadata=SyncMetadata(
                external_service=ExternalService.GOOGLE_CALENDAR,
                sync_status=SyncStatus.SYNCED,
                last_synced_at=T0, external_id="evt-1",
                app_last_modified=T1, external_last_modified=T2,
            ),
        )
        event = {
            "id": "evt-1",
            "summary": "Focus",
            "start": {"dateTime": "2024-01-05T09:00:00+01:00", "timeZone": "Europe/Berlin"},
            "end": {"dateTime": "2024-01-05T11:00:00+01:00", "timeZone": "Europe/Berlin"},
        }

        conflict = engine.detect(slot, event, slot.sync_metadata)
        assert conflict.field_names() == ["end_time"]
        assert conflict.external_value["end_time"] == "11:00"

    def test_contact_mapping_uses_list_indexes(self, engine):
        friend = Friend(
            id="friend-1", name="Ada Lovelace", email="ada@example.com",
            sync_metadata=SyncMetadata(
                external_service=ExternalService.GOOGLE_CONTACTS,
                last_synced_at=T0, external_id="people/c1",
                app_last_modified=T1, external_last_modified=T2,
            ),
        )
        person = {
            "resourceName": "people/c1",
            "names": [{"displayName": "Ada Lovelace"}],
            "emailAddresses": [{"value": "ada@engine.org"}],
        }

        conflict = engine.detect(friend, person, friend.sync_metadata)
        assert conflict.field_names() == ["email"]
        assert conflict.priority == ConflictPriority.LOW


class TestPriority:

    def _diff(self, name):
        return FieldDifference(name, "a", "b", FieldType.STRING, False)

    def test_title_is_high(self):
        assert calculate_priority([self._diff("description"), self._diff("title")]) == ConflictPriority.HIGH

    def test_description_only_is_medium(self):
        assert calculate_priority([self._diff("description")]) == ConflictPriority.MEDIUM

    def test_other_fields_are_low(self):
        assert calculate_priority([self._diff("email")]) == ConflictPriority.LOW


class TestComparison:

    def test_values_equal(self):
        assert values_equal("a", "a")
        assert values_equal(None, None)
        assert not values_equal(None, "")
        assert not values_equal("2024-01-05", "2024-01-06")
        assert values_equal("2024-01-05T10:00:00Z", "2024-01-05T11:00:00+01:00")
        assert values_equal(datetime(2024, 1, 5, 10, tzinfo=timezone.utc), "2024-01-05T10:00:00.000Z")
        assert values_equal(["a", {"b": 1}], ["a", {"b": 1}])
        assert not values_equal(["a"], ["a", "b"])
        assert not values_equal(True, 1)

    def test_nested_paths(self):
        data = {"start": {"dateTime": "x"}, "names": [{"displayName": "Ada"}]}
        assert get_nested_value(data, "start.dateTime") == "x"
        assert get_nested_value(data, "names.0.displayName") == "Ada"
        assert get_nested_value(data, "names.1.displayName") is None
        assert get_nested_value(data, "end.dateTime") is None

    def test_mergeability(self):
        assert can_merge_field("tags", ["a"], ["b"])
        assert can_merge_field("description", "a", "b")
        assert can_merge_field("notes", "a", "b")
        assert can_merge_field("title", "a", "b")
        assert not can_merge_field("email", "a", "b")
        assert not can_merge_field("completed", True, False)
        assert not can_merge_field("status", "completed", "needsAction")

    def test_field_types(self):
        assert field_type_of(True) == FieldType.BOOLEAN
        assert field_type_of(3) == FieldType.NUMBER
        assert field_type_of([1]) == FieldType.ARRAY
        assert field_type_of({"a": 1}) == FieldType.OBJECT
        assert field_type_of(T0) == FieldType.DATE
        assert field_type_of("x") == FieldType.STRING


class TestDetectBatch:

    def test_skips_entities_without_metadata_link_or_remote(self, engine):
        linked = synced_task("task-1", "remote-1", title="Local", app_modified=T1, external_modified=T2)
        unlinked = synced_task("task-2", None, title="Local", app_modified=T1, external_modified=T2)
        missing_remote = synced_task("task-3", "remote-3", title="Local", app_modified=T1, external_modified=T2)
        no_metadata = synced_task("task-4", "remote-4", title="Local")

        entities = [linked, unlinked, missing_remote, no_metadata]
        remotes = {"remote-1": remote_task(), "remote-4": remote_task(id="remote-4")}
        metadata = {e.id: e.sync_metadata for e in entities[:3]}

        conflicts = engine.detect_batch(entities, remotes, metadata)

        assert [c.entity_id for c in conflicts] == ["task-1"]
