"""
In-memory store - the reference implementation of the store contract.

All state sits behind one lock. Every operation holds it for its whole
sequence of checks and mutations, so operations are atomic relative to
each other. Entities cross the boundary only as deep copies.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from task_tracker.models.entities import (
    StatsResponse,
    Task,
    TaskHistoryItem,
    TaskUpdate,
    User,
)
from task_tracker.models.enums import HistoryField, TaskStatus
from task_tracker.services.store import (
    SEED_TASKS,
    SEED_USERS,
    InvalidTaskStatusError,
    Store,
    TaskNotFoundError,
    UserDoesNotExistError,
)
from task_tracker.services.validation import (
    DEFAULT_ACTOR,
    is_valid_task_status,
    normalize_actor,
    parse_user_filter,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _newest_first_key(entry: TaskHistoryItem):
    return (entry.changed_at, entry.id)


def _refuse_duplicate_ids(kind: str, entities) -> None:
    seen = set()
    for entity in entities:
        if entity.id in seen:
            raise ValueError(f"duplicate {kind} id: {entity.id}")
        seen.add(entity.id)


class MemoryStore(Store):
    """Thread-safe store keeping users, tasks and history in process memory."""

    def __init__(self, users: Iterable[User] = (), tasks: Iterable[Task] = ()):
        # Exclusive for reads too: every read is a short scan plus copies
        self._lock = threading.Lock()
        self._users: List[User] = [user.model_copy(deep=True) for user in users]
        _refuse_duplicate_ids("user", self._users)
        self._tasks: List[Task] = []
        self._history: Dict[int, List[TaskHistoryItem]] = {}
        self._next_user_id = max((user.id for user in self._users), default=0) + 1
        self._next_task_id = 1
        self._next_history_id = 1

        tasks = list(tasks)
        _refuse_duplicate_ids("task", tasks)

        seeded_at = _utcnow()
        for task in tasks:
            if not self._user_exists_locked(task.user_id):
                raise UserDoesNotExistError(task.user_id)
            stored = task.model_copy(deep=True, update={"last_change": None})
            self._tasks.append(stored)
            self._history[stored.id] = []
            # Seeded tasks get the same creation entry a created task would
            self._append_history_locked(
                stored.id, DEFAULT_ACTOR, HistoryField.STATUS, None, stored.status, seeded_at
            )
            self._next_task_id = max(self._next_task_id, stored.id + 1)
        self._tasks.sort(key=lambda t: t.id)

        logger.info(
            "MemoryStore ready users=%d tasks=%d", len(self._users), len(self._tasks)
        )

    @classmethod
    def with_seed_data(cls) -> "MemoryStore":
        return cls(users=SEED_USERS, tasks=SEED_TASKS)

    # Reads

    def get_users(self) -> List[User]:
        with self._lock:
            return [user.model_copy(deep=True) for user in self._users]

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            for user in self._users:
                if user.id == user_id:
                    return user.model_copy(deep=True)
        return None

    def get_tasks(self, status: str = "", user_id: str = "") -> List[Task]:
        try:
            parsed_user_id = parse_user_filter(user_id)
        except ValueError:
            return []

        with self._lock:
            filtered = []
            for task in self._tasks:
                if status and task.status != status:
                    continue
                if parsed_user_id is not None and task.user_id != parsed_user_id:
                    continue
                filtered.append(self._project_locked(task))
            return filtered

    def get_task_history(self, task_id: int) -> List[TaskHistoryItem]:
        with self._lock:
            if self._find_task_locked(task_id) is None:
                raise TaskNotFoundError(task_id)
            history = sorted(self._history.get(task_id, []), key=_newest_first_key, reverse=True)
            return [entry.model_copy(deep=True) for entry in history]

    def get_stats(self) -> StatsResponse:
        with self._lock:
            stats = StatsResponse()
            stats.users.total = len(self._users)
            stats.tasks.total = len(self._tasks)
            for task in self._tasks:
                if task.status == TaskStatus.PENDING.value:
                    stats.tasks.pending += 1
                elif task.status == TaskStatus.IN_PROGRESS.value:
                    stats.tasks.in_progress += 1
                elif task.status == TaskStatus.COMPLETED.value:
                    stats.tasks.completed += 1
            return stats

    # Writes

    def create_user(self, name: str, email: str, role: str) -> User:
        with self._lock:
            user = User(id=self._next_user_id, name=name, email=email, role=role)
            self._next_user_id += 1
            self._users.append(user)
            return user.model_copy(deep=True)

    def create_task(self, title: str, status: str, user_id: int, actor: str = "") -> Task:
        if not is_valid_task_status(status):
            raise InvalidTaskStatusError(status)

        with self._lock:
            if not self._user_exists_locked(user_id):
                raise UserDoesNotExistError(user_id)

            task = Task(id=self._next_task_id, title=title, status=status, user_id=user_id)
            self._next_task_id += 1
            self._tasks.append(task)
            self._history[task.id] = []
            self._append_history_locked(
                task.id, normalize_actor(actor), HistoryField.STATUS, None, status, _utcnow()
            )
            return self._project_locked(task)

    def update_task(self, task_id: int, update: TaskUpdate, actor: str = "") -> Task:
        if update.status is not None and not is_valid_task_status(update.status):
            raise InvalidTaskStatusError(update.status)

        with self._lock:
            task = self._find_task_locked(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if update.user_id is not None and not self._user_exists_locked(update.user_id):
                raise UserDoesNotExistError(update.user_id)

            now = _utcnow()
            actor_name = normalize_actor(actor)

            if update.title is not None and task.title != update.title:
                self._append_history_locked(
                    task_id, actor_name, HistoryField.TITLE, task.title, update.title, now
                )
                task.title = update.title
            if update.status is not None and task.status != update.status:
                self._append_history_locked(
                    task_id, actor_name, HistoryField.STATUS, task.status, update.status, now
                )
                task.status = update.status
            if update.user_id is not None and task.user_id != update.user_id:
                self._append_history_locked(
                    task_id, actor_name, HistoryField.USER_ID,
                    str(task.user_id), str(update.user_id), now,
                )
                task.user_id = update.user_id

            return self._project_locked(task)

    # Helpers (caller holds the lock)

    def _find_task_locked(self, task_id: int) -> Optional[Task]:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def _user_exists_locked(self, user_id: int) -> bool:
        return any(user.id == user_id for user in self._users)

    def _append_history_locked(
        self,
        task_id: int,
        actor: str,
        field: HistoryField,
        from_value: Optional[str],
        to_value: str,
        changed_at: datetime,
    ) -> TaskHistoryItem:
        entry = TaskHistoryItem(
            id=self._next_history_id,
            task_id=task_id,
            changed_at=changed_at,
            changed_by=actor,
            field=field.value,
            from_value=from_value,
            to_value=to_value,
        )
        self._next_history_id += 1
        self._history.setdefault(task_id, []).append(entry)
        return entry

    def _project_locked(self, task: Task) -> Task:
        """Copy of the task with its newest history entry attached."""
        history = self._history.get(task.id)
        latest = max(history, key=_newest_first_key) if history else None
        return task.model_copy(
            deep=True,
            update={"last_change": latest.model_copy(deep=True) if latest else None},
        )
