"""
Entities returned by the task stores.

These are plain values: stores hand out copies and never expose their
internal state through them.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Entity(BaseModel):
    """Base for entities serialized with camelCase field names."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class User(Entity):
    id: int
    name: str
    email: str
    role: str


class TaskHistoryItem(Entity):
    """
    A single audited change of one task field.

    Invariants:
    - from_value is None only for the creation entry
    - to_value is always a string (user ids are stringified)
    - Once recorded, never edited or deleted
    """
    id: int
    task_id: int
    changed_at: datetime
    changed_by: str
    field: str
    from_value: Optional[str] = None
    to_value: str


class Task(Entity):
    id: int
    title: str
    status: str
    user_id: int
    # Projection of the newest history entry, not stored on the task itself
    last_change: Optional[TaskHistoryItem] = None


class TaskUpdate(BaseModel):
    """
    Partial update of a task.

    A field left as None means "leave unchanged".
    """
    title: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[int] = None

    def is_empty(self) -> bool:
        return self.title is None and self.status is None and self.user_id is None


class UserStats(Entity):
    total: int = 0


class TaskStats(Entity):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0


class StatsResponse(Entity):
    """Aggregate counts for users and tasks."""
    users: UserStats = Field(default_factory=UserStats)
    tasks: TaskStats = Field(default_factory=TaskStats)
