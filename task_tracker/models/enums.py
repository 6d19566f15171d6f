"""Enums for the task tracker - these define the valid values for statuses and audited fields."""
from enum import Enum


class TaskStatus(str, Enum):
    """The three statuses a Task can be in. No other statuses are allowed."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class HistoryField(str, Enum):
    """Task attributes whose changes are recorded in the history log."""
    TITLE = "title"
    STATUS = "status"
    USER_ID = "userId"
