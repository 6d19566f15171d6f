"""
The store contract shared by the in-memory and SQL implementations.

Route handlers depend only on `Store`. Both implementations must behave
identically for every operation below; the test suite runs the same
cases against each of them.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from task_tracker.models.entities import StatsResponse, Task, TaskHistoryItem, TaskUpdate, User


class StoreError(Exception):
    """Base class for every error raised by a store."""


class TaskNotFoundError(StoreError):
    """Raised when an update or history lookup targets a task that does not exist."""
    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"task not found: {task_id}")


class InvalidTaskStatusError(StoreError):
    """Raised when a status is outside the allowed set. Nothing is written."""
    def __init__(self, status: str):
        self.status = status
        super().__init__(f"invalid task status: {status!r}")


class UserDoesNotExistError(StoreError):
    """Raised when a task would reference a user that does not exist."""
    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"user does not exist: {user_id}")


class StoreOperationError(StoreError):
    """
    Infrastructure failure (connection loss, query error, unexpected constraint violation).

    Always raised from the underlying exception so the cause is kept.
    """


# Fixed initial dataset, inserted only when storage is empty
SEED_USERS = [
    User(id=1, name="John Doe", email="john@example.com", role="developer"),
    User(id=2, name="Jane Smith", email="jane@example.com", role="designer"),
    User(id=3, name="Bob Johnson", email="bob@example.com", role="manager"),
]

SEED_TASKS = [
    Task(id=1, title="Implement authentication", status="pending", user_id=1),
    Task(id=2, title="Design user interface", status="in-progress", user_id=2),
    Task(id=3, title="Review code changes", status="completed", user_id=3),
]


class Store(ABC):
    """Data access used by the HTTP layer."""

    @abstractmethod
    def get_users(self) -> List[User]:
        """All users ordered by id."""

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        """The user with this id, or None."""

    @abstractmethod
    def get_tasks(self, status: str = "", user_id: str = "") -> List[Task]:
        """
        Tasks matching both filters, ordered by id.

        An empty filter does not constrain its dimension. A user id filter
        that is not an integer matches nothing.
        """

    @abstractmethod
    def get_task_history(self, task_id: int) -> List[TaskHistoryItem]:
        """History of a task, newest first (ties broken by descending entry id)."""

    @abstractmethod
    def get_stats(self) -> StatsResponse:
        """User and task totals plus per-status task counts."""

    @abstractmethod
    def create_user(self, name: str, email: str, role: str) -> User:
        """Create a user with the next id."""

    @abstractmethod
    def create_task(self, title: str, status: str, user_id: int, actor: str = "") -> Task:
        """
        Create a task and its creation history entry atomically.

        The entry records field=status, from_value=None, to_value=status.
        """

    @abstractmethod
    def update_task(self, task_id: int, update: TaskUpdate, actor: str = "") -> Task:
        """
        Apply a partial update.

        Fields are compared in the order title, status, user id. Each field
        whose value actually changes gets exactly one history entry.
        """

    def close(self) -> None:
        """Release resources held by the store."""
