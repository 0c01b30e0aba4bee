"""Tests for task diffing and history recording."""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from complitrack.models.reference import Resolved, Unresolved
from complitrack.models.task import TaskPriority, TaskStatus
from complitrack.models.task_history import HistoryAction
from complitrack.services.history import TaskHistoryRecorder, action_for, describe, diff, to_jsonable


class TestDiff:
    def test_unchanged_value(self):
        assert diff({"status": "open", "priority": "low"}, {"status": "open"}) == {}

    def test_changed_value(self):
        result = diff({"status": "open", "priority": "low"}, {"status": "completed"})
        assert result == {"status": {"from": "open", "to": "completed"}}

    def test_enum_equals_its_value(self):
        previous = SimpleNamespace(status=TaskStatus.OPEN, priority=TaskPriority.LOW)
        assert diff(previous, {"status": "open", "priority": TaskPriority.LOW}) == {}

    def test_naive_and_aware_datetimes(self):
        due = datetime(2025, 4, 20, 0, 0)
        previous = {"due_date": due.replace(tzinfo=timezone.utc)}
        assert diff(previous, {"due_date": due}) == {}
        assert diff(previous, {"due_date": due + timedelta(days=1)})

    def test_references(self):
        previous = {"assignee": Resolved(1)}
        assert diff(previous, {"assignee": Resolved(1)}) == {}
        assert diff(previous, {"assignee": Unresolved("Alice")}) == {
            "assignee": {"from": Resolved(1), "to": Unresolved("Alice")},
        }

    def test_lists(self):
        assert diff({"tags": ["gst"]}, {"tags": ["gst"]}) == {}
        assert diff({"tags": ["gst"]}, {"tags": ["gst", "q4"]})

    def test_key_order_follows_changes(self):
        previous = {"name": "a", "status": "open", "priority": "low"}
        result = diff(previous, {"priority": "high", "name": "b"})
        assert list(result) == ["priority", "name"]

    def test_missing_previous_field(self):
        assert diff({}, {"closure_rights_email": "x@y.com"}) == {
            "closure_rights_email": {"from": None, "to": "x@y.com"},
        }


class TestSerialization:
    def test_action_for(self):
        assert action_for({"assignee": {}, "status": {}}) == HistoryAction.REASSIGNED
        assert action_for({"priority": {}, "status": {}}) == HistoryAction.STATUS_CHANGED
        assert action_for({"priority": {}}) == HistoryAction.UPDATED

    def test_describe(self):
        assert describe({"status": {}, "priority": {}}) == "Task updated: status, priority"

    def test_to_jsonable(self):
        value = {
            "status": TaskStatus.IN_PROGRESS,
            "due": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "assignee": Resolved(3),
            "entity": Unresolved("Acme"),
        }
        assert to_jsonable(value) == {
            "status": "in-progress",
            "due": "2025-01-01T00:00:00+00:00",
            "assignee": {"resolved": 3},
            "entity": {"unresolved": "Acme"},
        }


class TestRecorder:
    def test_record(self, store, clock, make_task, alice):
        task = make_task()
        changes = diff(task, {"status": TaskStatus.COMPLETED, "priority": TaskPriority.HIGH})
        entry = TaskHistoryRecorder(store, clock).record(task.id, alice.id, changes)

        assert entry.action == HistoryAction.STATUS_CHANGED
        assert entry.changed_by == alice.id
        assert entry.created_at == clock()
        assert entry.description == "Task updated: status, priority"
        assert entry.changes["status"] == {"from": "open", "to": "completed"}
        assert entry.previous_values == {"status": "open", "priority": "medium"}
        assert entry.new_values == {"status": "completed", "priority": "high"}

    def test_newest_first(self, store, clock, make_task):
        task = make_task()
        recorder = TaskHistoryRecorder(store, clock)
        recorder.record(task.id, None, {"name": {"from": "a", "to": "b"}})
        clock.advance(minutes=5)
        recorder.record(task.id, None, {"name": {"from": "b", "to": "c"}})

        entries = store.find_history_by_task(task.id)
        assert [entry.new_values["name"] for entry in entries] == ["c", "b"]
        assert store.count_history_by_task(task.id) == 2
