"""Pydantic schemas for request/response validation."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from task_tracker.models.entities import Entity, Task, TaskHistoryItem, User
from task_tracker.services.validation import MAX_ID, MIN_ID


class Request(BaseModel):
    # Unknown fields are rejected rather than ignored
    model_config = ConfigDict(extra="forbid")


# User schemas
class UserCreate(Request):
    name: str = ""
    email: str = ""
    role: str = ""


class UsersResponse(Entity):
    users: List[User]
    count: int


# Task schemas
class TaskCreate(Request):
    title: str = ""
    status: str = ""
    user_id: Optional[int] = Field(None, alias="userId", ge=MIN_ID, le=MAX_ID)


class TaskUpdateRequest(Request):
    title: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[int] = Field(None, alias="userId", ge=MIN_ID, le=MAX_ID)


class TasksResponse(Entity):
    tasks: List[Task]
    count: int


class TaskHistoryResponse(Entity):
    task_id: int
    history: List[TaskHistoryItem]
    count: int


class HealthResponse(BaseModel):
    status: str
    message: str


# Error response
class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""
    error: str
