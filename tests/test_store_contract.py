"""
Tests that prove the store contract invariants.

Every test runs against both the in-memory and the SQL store (see the
`store` fixture), so the two implementations are held to identical
behavior.
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from task_tracker.models.entities import TaskUpdate
from task_tracker.services.store import (
    InvalidTaskStatusError,
    TaskNotFoundError,
    UserDoesNotExistError,
)


def history_count(store, task_id):
    return len(store.get_task_history(task_id))


def find_task(store, task_id):
    return next(task for task in store.get_tasks() if task.id == task_id)


class TestCreateTaskInvariants:
    """Test task creation and its implicit history entry."""

    def test_create_records_status_entry(self, store):
        """
        INVARIANT: Creating a task records exactly one status entry with no prior value.
        """
        task = store.create_task("T", "pending", 1, "a")

        assert task.last_change is not None
        assert task.last_change.field == "status"
        assert task.last_change.from_value is None
        assert task.last_change.to_value == "pending"
        assert task.last_change.changed_by == "a"
        assert task.last_change.task_id == task.id

        history = store.get_task_history(task.id)
        assert len(history) == 1
        assert history[0] == task.last_change

    def test_blank_actor_defaults_to_system(self, store):
        task = store.create_task("T", "pending", 1, "   ")
        assert task.last_change.changed_by == "system"

    def test_actor_is_trimmed(self, store):
        task = store.create_task("T", "pending", 1, "  alice ")
        assert task.last_change.changed_by == "alice"

    def test_changed_at_is_utc(self, store):
        task = store.create_task("T", "pending", 1, "a")
        assert task.last_change.changed_at.utcoffset().total_seconds() == 0

    def test_invalid_status_creates_nothing(self, store):
        """
        INVARIANT: An invalid status is refused before any state is written.
        """
        before = store.get_stats()

        with pytest.raises(InvalidTaskStatusError):
            store.create_task("T", "bogus", 1, "a")

        after = store.get_stats()
        assert after.tasks.total == before.tasks.total
        # Seed tasks are 1..3, so a leaked task would have shown up as 4
        assert [task.id for task in store.get_tasks()] == [1, 2, 3]

    def test_unknown_user_creates_nothing(self, store):
        """
        INVARIANT: A task can only reference an existing user.
        """
        with pytest.raises(UserDoesNotExistError) as exc_info:
            store.create_task("T", "pending", 999, "a")

        assert exc_info.value.user_id == 999
        assert store.get_stats().tasks.total == 3

        # The next task still gets the next id and a single history entry
        task = store.create_task("T", "pending", 1, "a")
        assert history_count(store, task.id) == 1

    def test_task_ids_increase(self, store):
        first = store.create_task("A", "pending", 1, "a")
        second = store.create_task("B", "pending", 1, "a")

        assert first.id == 4
        assert second.id == 5
        assert second.last_change.id > first.last_change.id

    def test_created_task_round_trips_through_get_tasks(self, store):
        """
        INVARIANT: The last change returned by create matches what a later read reconstructs.
        """
        created = store.create_task("Round trip", "in-progress", 2, "a")

        listed = find_task(store, created.id)

        assert listed == created
        assert listed.last_change == created.last_change


class TestUpdateTaskInvariants:
    """Test partial updates and field-level history."""

    def test_identical_value_records_no_history(self, store):
        """
        INVARIANT: Supplying a field with its current value records nothing.
        """
        before = history_count(store, 1)

        task = store.update_task(1, TaskUpdate(status="pending"), "a")

        assert task.status == "pending"
        assert history_count(store, 1) == before

    def test_no_change_returns_prior_latest_entry(self, store):
        created = store.create_task("Same", "pending", 1, "a")

        task = store.update_task(created.id, TaskUpdate(title="Same", user_id=1), "b")

        assert task.last_change == created.last_change

    def test_each_changed_field_records_one_entry(self, store):
        """
        INVARIANT: Updating N changed fields appends exactly N history entries.
        """
        before = history_count(store, 1)

        task = store.update_task(1, TaskUpdate(status="completed", title="New"), "editor")

        assert task.title == "New"
        assert task.status == "completed"
        assert history_count(store, 1) == before + 2

        # Newest first: status was processed after title in the same call
        newest, second = store.get_task_history(1)[:2]
        assert (newest.field, newest.from_value, newest.to_value) == ("status", "pending", "completed")
        assert (second.field, second.from_value, second.to_value) == (
            "title", "Implement authentication", "New",
        )
        assert newest.id > second.id
        assert newest.changed_by == second.changed_by == "editor"

        # The last change is the field processed last
        assert task.last_change == newest

    def test_user_id_change_is_stringified(self, store):
        task = store.update_task(1, TaskUpdate(user_id=2), "a")

        assert task.user_id == 2
        assert task.last_change.field == "userId"
        assert task.last_change.from_value == "1"
        assert task.last_change.to_value == "2"

    def test_all_three_fields_in_fixed_order(self, store):
        store.update_task(1, TaskUpdate(user_id=3, status="in-progress", title="X"), "a")

        fields = [entry.field for entry in store.get_task_history(1)]
        assert fields == ["userId", "status", "title", "status"]

    def test_history_forms_unbroken_chain(self, store):
        """
        INVARIANT: Each entry's from_value is the value the previous entry for that field set.
        """
        for status in ["in-progress", "completed", "completed", "pending", "in-progress"]:
            store.update_task(1, TaskUpdate(status=status), "a")

        oldest_first = list(reversed(store.get_task_history(1)))
        assert [entry.to_value for entry in oldest_first] == [
            "pending", "in-progress", "completed", "pending", "in-progress",
        ]
        for previous, entry in zip(oldest_first, oldest_first[1:]):
            assert entry.from_value == previous.to_value

    def test_unknown_task_raises_not_found(self, store):
        with pytest.raises(TaskNotFoundError) as exc_info:
            store.update_task(999, TaskUpdate(title="Nope"), "a")

        assert exc_info.value.task_id == 999
        with pytest.raises(TaskNotFoundError):
            store.get_task_history(999)

    def test_invalid_status_applies_nothing(self, store):
        """
        INVARIANT: A rejected update is never partially applied.
        """
        before = history_count(store, 1)

        with pytest.raises(InvalidTaskStatusError):
            store.update_task(1, TaskUpdate(title="Changed", status="bogus"), "a")

        assert find_task(store, 1).title == "Implement authentication"
        assert history_count(store, 1) == before

    def test_unknown_user_applies_nothing(self, store):
        before = history_count(store, 1)

        with pytest.raises(UserDoesNotExistError):
            store.update_task(1, TaskUpdate(title="Changed", user_id=999), "a")

        task = find_task(store, 1)
        assert task.title == "Implement authentication"
        assert task.user_id == 1
        assert history_count(store, 1) == before

    def test_update_is_visible_to_reads(self, store):
        updated = store.update_task(2, TaskUpdate(status="completed"), "a")

        assert find_task(store, 2) == updated
        assert store.get_stats().tasks.completed == 2


class TestReadInvariants:
    """Test filtering, ordering and aggregate reads."""

    def test_every_seed_task_has_creation_history(self, store):
        """
        INVARIANT: Every task has at least one history entry.
        """
        for task in store.get_tasks():
            history = store.get_task_history(task.id)
            assert len(history) == 1
            assert history[0].field == "status"
            assert history[0].from_value is None
            assert history[0].to_value == task.status
            assert history[0].changed_by == "system"
            assert task.last_change == history[0]

    def test_no_filters_returns_all_in_id_order(self, store):
        store.create_task("Later", "pending", 3, "a")

        assert [task.id for task in store.get_tasks()] == [1, 2, 3, 4]

    def test_filters_combine(self, store):
        mine = store.create_task("Mine", "pending", 2, "a")
        store.create_task("Other status", "completed", 2, "a")

        tasks = store.get_tasks("pending", "2")

        assert [task.id for task in tasks] == [mine.id]

    def test_status_filter_alone(self, store):
        assert [task.id for task in store.get_tasks("in-progress", "")] == [2]

    def test_unparseable_user_filter_returns_empty(self, store):
        assert store.get_tasks("", "not-an-int") == []

    def test_unknown_status_filter_returns_empty(self, store):
        assert store.get_tasks("bogus", "") == []

    def test_stats_counts(self, store):
        store.create_task("Extra", "pending", 1, "a")
        store.create_user("Ann", "ann@example.com", "qa")

        stats = store.get_stats()

        assert stats.users.total == 4
        assert stats.tasks.total == 4
        assert stats.tasks.pending == 2
        assert stats.tasks.in_progress == 1
        assert stats.tasks.completed == 1


class TestUsers:
    """Test user creation and lookup."""

    def test_create_user_assigns_next_id(self, store):
        first = store.create_user("Ann", "ann@example.com", "qa")
        second = store.create_user("Ben", "ben@example.com", "dev")

        assert (first.id, second.id) == (4, 5)
        assert store.get_user(first.id) == first

    def test_get_users_in_id_order(self, store):
        store.create_user("Ann", "ann@example.com", "qa")

        assert [user.id for user in store.get_users()] == [1, 2, 3, 4]

    def test_missing_user_is_none(self, store):
        assert store.get_user(999) is None

    def test_new_user_can_own_tasks(self, store):
        user = store.create_user("Ann", "ann@example.com", "qa")

        task = store.create_task("For Ann", "pending", user.id, "a")
        moved = store.update_task(1, TaskUpdate(user_id=user.id), "a")

        assert task.user_id == user.id
        assert moved.last_change.to_value == str(user.id)


class TestReturnedValuesAreCopies:
    """Callers can never change stored state through returned values."""

    def test_mutating_returned_task_does_not_leak(self, store):
        task = store.get_tasks()[0]
        task.title = "Hacked"
        task.last_change.to_value = "Hacked"

        fresh = store.get_tasks()[0]
        assert fresh.title == "Implement authentication"
        assert fresh.last_change.to_value == "pending"

    def test_mutating_returned_history_does_not_leak(self, store):
        history = store.get_task_history(1)
        history[0].to_value = "Hacked"
        history.clear()

        assert store.get_task_history(1)[0].to_value == "pending"

    def test_mutating_returned_user_does_not_leak(self, store):
        store.get_users()[0].name = "Hacked"

        assert store.get_user(1).name == "John Doe"


class TestIdRange:
    """Ids beyond the 64-bit range match nothing instead of failing."""

    HUGE = 2 ** 70

    def test_reads(self, store):
        assert store.get_tasks("", str(self.HUGE)) == []
        assert store.get_tasks("", str(-self.HUGE)) == []
        assert store.get_user(self.HUGE) is None
        with pytest.raises(TaskNotFoundError):
            store.get_task_history(self.HUGE)

    def test_writes(self, store):
        with pytest.raises(TaskNotFoundError):
            store.update_task(self.HUGE, TaskUpdate(title="Nope"), "a")
        with pytest.raises(UserDoesNotExistError):
            store.create_task("T", "pending", self.HUGE, "a")
        with pytest.raises(UserDoesNotExistError):
            store.update_task(1, TaskUpdate(user_id=-self.HUGE), "a")

        assert store.get_stats().tasks.total == 3
        assert history_count(store, 1) == 1


class TestConcurrency:
    """Concurrent callers never observe or produce inconsistent state."""

    def test_concurrent_create_user_ids_are_unique(self, store):
        """
        INVARIANT: Concurrent creations each receive a distinct id, with no gaps.
        """
        with ThreadPoolExecutor(max_workers=16) as pool:
            users = list(pool.map(
                lambda i: store.create_user(f"User {i}", f"user{i}@example.com", "dev"),
                range(100),
            ))

        ids = sorted(user.id for user in users)
        assert ids == list(range(4, 104))
        assert store.get_stats().users.total == 103

    def test_concurrent_updates_of_one_task_keep_history_consistent(self, store):
        """
        INVARIANT: Read-modify-write on one task is serialized, so the history chain has no gaps.
        """
        statuses = ["pending", "in-progress", "completed"]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(
                lambda i: store.update_task(1, TaskUpdate(status=statuses[i % 3]), f"worker-{i}"),
                range(60),
            ))

        oldest_first = list(reversed(store.get_task_history(1)))
        for previous, entry in zip(oldest_first, oldest_first[1:]):
            assert entry.from_value == previous.to_value
            assert entry.from_value != entry.to_value
        assert find_task(store, 1).status == oldest_first[-1].to_value

    def test_concurrent_create_task_ids_are_unique(self, store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            tasks = list(pool.map(
                lambda i: store.create_task(f"Task {i}", "pending", 1 + i % 3, "a"),
                range(50),
            ))

        assert len({task.id for task in tasks}) == 50
        assert len({task.last_change.id for task in tasks}) == 50
        assert store.get_stats().tasks.total == 53
