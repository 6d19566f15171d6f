"""API routes for users, tasks, task history and stats."""
import logging
import re

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, status

from task_tracker.api.schemas import (
    ErrorResponse,
    HealthResponse,
    TaskCreate,
    TaskHistoryResponse,
    TasksResponse,
    TaskUpdateRequest,
    UserCreate,
    UsersResponse,
)
from task_tracker.models.entities import StatsResponse, Task, TaskUpdate, User
from task_tracker.services.store import (
    InvalidTaskStatusError,
    Store,
    StoreOperationError,
    TaskNotFoundError,
    UserDoesNotExistError,
)
from task_tracker.services.validation import (
    MAX_ID,
    is_valid_task_status,
    normalize_actor,
    parse_user_filter,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    500: {"model": ErrorResponse, "description": "Store failure"},
}

router = APIRouter()


def get_store(request: Request) -> Store:
    """Dependency returning the store the application was built with."""
    return request.app.state.store


def get_actor(x_actor: str = Header("", alias="X-Actor")) -> str:
    return normalize_actor(x_actor)


def internal_error(action: str, exc: Exception) -> HTTPException:
    logger.error("Error %s: %s", action, exc)
    return HTTPException(status_code=500, detail="internal server error")


# Health check
@router.get("/health", response_model=HealthResponse)
def health_check():
    return HealthResponse(status="ok", message="Task tracker is running")


# User endpoints
@router.get("/api/users", response_model=UsersResponse, responses=ERROR_RESPONSES)
def list_users(store: Store = Depends(get_store)):
    """List all users."""
    try:
        users = store.get_users()
    except StoreOperationError as e:
        raise internal_error("loading users", e)
    return UsersResponse(users=users, count=len(users))


@router.post(
    "/api/users",
    response_model=User,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def create_user(user_data: UserCreate, store: Store = Depends(get_store)):
    """Create a user. Name, email and role are required."""
    name = user_data.name.strip()
    email = user_data.email.strip()
    role = user_data.role.strip()

    if not name or not email or not role:
        raise HTTPException(status_code=400, detail="name, email, and role are required")
    if not EMAIL_PATTERN.match(email):
        raise HTTPException(status_code=400, detail="invalid email format")

    try:
        return store.create_user(name, email, role)
    except StoreOperationError as e:
        raise internal_error("creating user", e)


@router.get(
    "/api/users/{user_id}",
    response_model=User,
    responses={404: {"model": ErrorResponse, "description": "User not found"}, **ERROR_RESPONSES},
)
def get_user(user_id: int = Path(..., le=MAX_ID), store: Store = Depends(get_store)):
    """Get a specific user."""
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="invalid user ID")
    try:
        user = store.get_user(user_id)
    except StoreOperationError as e:
        raise internal_error(f"loading user id={user_id}", e)
    if user is None:
        raise HTTPException(status_code=404, detail="user not found")
    return user


# Task endpoints
@router.get(
    "/api/tasks",
    response_model=TasksResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
)
def list_tasks(
    status: str = "",
    user_id: str = Query("", alias="userId"),
    store: Store = Depends(get_store),
):
    """List tasks, optionally filtered by status and assigned user."""
    try:
        parsed = parse_user_filter(user_id)
    except ValueError:
        parsed = 0
    if parsed is not None and parsed <= 0:
        raise HTTPException(status_code=400, detail="invalid userId query parameter")

    try:
        tasks = store.get_tasks(status, user_id)
    except StoreOperationError as e:
        raise internal_error("loading tasks", e)
    return TasksResponse(tasks=tasks, count=len(tasks))


@router.post(
    "/api/tasks",
    response_model=Task,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def create_task(
    task_data: TaskCreate,
    store: Store = Depends(get_store),
    actor: str = Depends(get_actor),
):
    """Create a task. Its creation is recorded as the first history entry."""
    title = task_data.title.strip()
    task_status = task_data.status.strip()

    if not title or not task_status or task_data.user_id is None:
        raise HTTPException(status_code=400, detail="title, status, and userId are required")
    if not is_valid_task_status(task_status):
        raise HTTPException(status_code=400, detail="invalid status")

    try:
        return store.create_task(title, task_status, task_data.user_id, actor)
    except (InvalidTaskStatusError, UserDoesNotExistError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreOperationError as e:
        raise internal_error("creating task", e)


@router.put(
    "/api/tasks/{task_id}",
    response_model=Task,
    response_model_exclude_none=True,
    responses={404: {"model": ErrorResponse, "description": "Task not found"}, **ERROR_RESPONSES},
)
def update_task(
    update_data: TaskUpdateRequest,
    task_id: int = Path(..., le=MAX_ID),
    store: Store = Depends(get_store),
    actor: str = Depends(get_actor),
):
    """
    Partially update a task.

    Omitted fields are left unchanged. Only fields whose value actually
    changes are recorded in the task history.
    """
    if task_id <= 0:
        raise HTTPException(status_code=400, detail="invalid task ID")

    update = TaskUpdate(
        title=update_data.title, status=update_data.status, user_id=update_data.user_id
    )
    if update.is_empty():
        raise HTTPException(status_code=400, detail="at least one field must be provided")

    if update.title is not None:
        update.title = update.title.strip()
        if not update.title:
            raise HTTPException(status_code=400, detail="title cannot be empty")
    if update.status is not None:
        update.status = update.status.strip()
        if not is_valid_task_status(update.status):
            raise HTTPException(status_code=400, detail="invalid status")

    try:
        return store.update_task(task_id, update, actor)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="task not found")
    except (InvalidTaskStatusError, UserDoesNotExistError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreOperationError as e:
        raise internal_error(f"updating task id={task_id}", e)


@router.get(
    "/api/tasks/{task_id}/history",
    response_model=TaskHistoryResponse,
    response_model_exclude_none=True,
    responses={404: {"model": ErrorResponse, "description": "Task not found"}, **ERROR_RESPONSES},
)
def get_task_history(task_id: int = Path(..., le=MAX_ID), store: Store = Depends(get_store)):
    """Full change history of a task, newest first."""
    if task_id <= 0:
        raise HTTPException(status_code=400, detail="invalid task ID")
    try:
        history = store.get_task_history(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="task not found")
    except StoreOperationError as e:
        raise internal_error(f"loading task history id={task_id}", e)
    return TaskHistoryResponse(task_id=task_id, history=history, count=len(history))


# Stats endpoint
@router.get("/api/stats", response_model=StatsResponse, responses=ERROR_RESPONSES)
def get_stats(store: Store = Depends(get_store)):
    """User and task totals with per-status task counts."""
    try:
        return store.get_stats()
    except StoreOperationError as e:
        raise internal_error("loading stats", e)
