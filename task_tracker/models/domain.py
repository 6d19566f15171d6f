"""Table models for the durable store - users, tasks, and the task history log."""
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import relationship

from task_tracker.database import Base

# SQLite only autoincrements INTEGER primary keys
Identifier = BigInteger().with_variant(Integer(), "sqlite")


class UserRecord(Base):
    """
    A user that tasks can be assigned to.

    Invariants:
    - Never updated or deleted once created
    """
    __tablename__ = "users"

    id = Column(Identifier, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=False)
    role = Column(Text, nullable=False)


class TaskRecord(Base):
    """
    A work item assigned to a user.

    Invariants enforced here:
    - Status is always one of the three allowed values
    - user_id always references an existing user (deleting a referenced user is refused)
    """
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in-progress', 'completed')",
            name="tasks_status_check",
        ),
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_user_id", "user_id"),
    )

    id = Column(Identifier, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    user_id = Column(
        Identifier,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    history = relationship(
        "TaskHistoryRecord",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TaskHistoryRecord(Base):
    """
    Immutable audit entry for one field of one task.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - from_value is NULL only for the entry written alongside task creation
    """
    __tablename__ = "task_history"
    __table_args__ = (
        CheckConstraint(
            "field IN ('title', 'status', 'userId')",
            name="task_history_field_check",
        ),
        Index("idx_task_history_task_id", "task_id"),
    )

    id = Column(Identifier, primary_key=True, autoincrement=True)
    task_id = Column(
        Identifier,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    changed_at = Column(DateTime(timezone=True), nullable=False)
    changed_by = Column(Text, nullable=False)
    field = Column(Text, nullable=False)
    from_value = Column(Text, nullable=True)
    to_value = Column(Text, nullable=False)

    task = relationship("TaskRecord", back_populates="history")


# Serves newest-first history reads
Index("idx_task_history_changed_at", TaskHistoryRecord.changed_at.desc())
