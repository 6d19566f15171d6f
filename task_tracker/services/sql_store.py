"""
SQL store - the durable implementation of the store contract.

Targets PostgreSQL in production; the same code runs on SQLite for tests.

Transaction design:
- Every operation runs in its own session and transaction
- create_task checks the user and inserts task + history in one transaction
- update_task locks the task row (SELECT ... FOR UPDATE) so concurrent
  updates of the same task serialize instead of diffing stale values
- Any failure rolls the transaction back before the error propagates
"""
import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import case, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased
from sqlalchemy.pool import StaticPool

from task_tracker.database import (
    Base,
    create_db_engine,
    create_session_factory,
    ping_with_retry,
)
from task_tracker.models.domain import TaskHistoryRecord, TaskRecord, UserRecord
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
    StoreError,
    StoreOperationError,
    TaskNotFoundError,
    UserDoesNotExistError,
)
from task_tracker.services.validation import (
    DEFAULT_ACTOR,
    is_storable_id,
    is_valid_task_status,
    normalize_actor,
    parse_user_filter,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _user_entity(record: UserRecord) -> User:
    return User(id=record.id, name=record.name, email=record.email, role=record.role)


def _history_entity(record: TaskHistoryRecord) -> TaskHistoryItem:
    return TaskHistoryItem(
        id=record.id,
        task_id=record.task_id,
        changed_at=_as_utc(record.changed_at),
        changed_by=record.changed_by,
        field=record.field,
        from_value=record.from_value,
        to_value=record.to_value,
    )


def _task_entity(record: TaskRecord, last_change: Optional[TaskHistoryItem]) -> Task:
    return Task(
        id=record.id,
        title=record.title,
        status=record.status,
        user_id=record.user_id,
        last_change=last_change,
    )


class SqlStore(Store):
    """Store backed by a relational database through SQLAlchemy."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        # A StaticPool hands every session the same connection, so transactions
        # on it must not interleave
        self._shared_connection_lock = (
            threading.Lock() if isinstance(engine.pool, StaticPool) else None
        )

    @classmethod
    def connect(
        cls,
        database_url: str,
        operation_timeout: float = 3.0,
        ping_retries: int = 20,
        ping_backoff: float = 1.0,
        seed: bool = True,
    ) -> "SqlStore":
        """
        Open the connection pool, wait for the database, bootstrap schema and seed data.

        Safe to run on every boot: schema creation is idempotent and seeding
        skips tables that already hold rows.
        """
        if not database_url or not database_url.strip():
            raise ValueError("database_url is required")

        engine = create_db_engine(database_url, operation_timeout)
        try:
            ping_with_retry(engine, retries=ping_retries, backoff=ping_backoff)
            store = cls(engine)
            store.init_schema()
            if seed:
                store.seed_initial_data()
        except Exception:
            engine.dispose()
            raise

        logger.info("SqlStore ready dialect=%s", engine.dialect.name)
        return store

    def close(self) -> None:
        self.engine.dispose()

    # ---- bootstrap ----

    def init_schema(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            logger.error("Failed to create schema: %s", exc)
            raise StoreOperationError(f"initialize schema: {exc}") from exc

    def seed_initial_data(self) -> None:
        """Insert the fixed dataset into whichever of the three tables is empty."""
        with self._transaction("seed initial data") as session:
            if session.query(func.count(UserRecord.id)).scalar() == 0:
                session.add_all(
                    UserRecord(id=user.id, name=user.name, email=user.email, role=user.role)
                    for user in SEED_USERS
                )
                session.flush()
                self._resync_sequence(session, UserRecord.__tablename__)
                logger.info("Seeded %d users", len(SEED_USERS))

            if session.query(func.count(TaskRecord.id)).scalar() == 0:
                session.add_all(
                    TaskRecord(id=task.id, title=task.title, status=task.status, user_id=task.user_id)
                    for task in SEED_TASKS
                )
                session.flush()
                self._resync_sequence(session, TaskRecord.__tablename__)
                logger.info("Seeded %d tasks", len(SEED_TASKS))

            if session.query(func.count(TaskHistoryRecord.id)).scalar() == 0:
                seeded_at = _utcnow()
                tasks = session.query(TaskRecord).order_by(TaskRecord.id).all()
                session.add_all(
                    TaskHistoryRecord(
                        task_id=task.id,
                        changed_at=seeded_at,
                        changed_by=DEFAULT_ACTOR,
                        field=HistoryField.STATUS.value,
                        from_value=None,
                        to_value=task.status,
                    )
                    for task in tasks
                )
                logger.info("Seeded history for %d tasks", len(tasks))

    def _resync_sequence(self, session: Session, table: str) -> None:
        """Move the id sequence past rows inserted with explicit ids."""
        if self.engine.dialect.name != "postgresql":
            return
        session.execute(text(
            f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
            f"COALESCE((SELECT MAX(id) FROM {table}), 1), true)"
        ))

    # ---- reads ----

    def get_users(self) -> List[User]:
        with self._transaction("query users") as session:
            records = session.query(UserRecord).order_by(UserRecord.id).all()
            return [_user_entity(record) for record in records]

    def get_user(self, user_id: int) -> Optional[User]:
        if not is_storable_id(user_id):
            return None
        with self._transaction(f"query user id={user_id}") as session:
            record = session.query(UserRecord).filter(UserRecord.id == user_id).first()
            return _user_entity(record) if record else None

    def get_tasks(self, status: str = "", user_id: str = "") -> List[Task]:
        try:
            parsed_user_id = parse_user_filter(user_id)
        except ValueError:
            return []

        latest = aliased(TaskHistoryRecord)
        latest_id = (
            select(latest.id)
            .where(latest.task_id == TaskRecord.id)
            .order_by(latest.changed_at.desc(), latest.id.desc())
            .limit(1)
            .correlate(TaskRecord)
            .scalar_subquery()
        )

        with self._transaction("query tasks") as session:
            query = session.query(TaskRecord, TaskHistoryRecord).outerjoin(
                TaskHistoryRecord, TaskHistoryRecord.id == latest_id
            )
            if status:
                query = query.filter(TaskRecord.status == status)
            if parsed_user_id is not None:
                query = query.filter(TaskRecord.user_id == parsed_user_id)

            return [
                _task_entity(task, _history_entity(change) if change is not None else None)
                for task, change in query.order_by(TaskRecord.id).all()
            ]

    def get_task_history(self, task_id: int) -> List[TaskHistoryItem]:
        if not is_storable_id(task_id):
            raise TaskNotFoundError(task_id)

        with self._transaction(f"query task history id={task_id}") as session:
            if not self._task_exists(session, task_id):
                raise TaskNotFoundError(task_id)

            records = (
                session.query(TaskHistoryRecord)
                .filter(TaskHistoryRecord.task_id == task_id)
                .order_by(TaskHistoryRecord.changed_at.desc(), TaskHistoryRecord.id.desc())
                .all()
            )
            return [_history_entity(record) for record in records]

    def get_stats(self) -> StatsResponse:
        def count_status(status: TaskStatus):
            return func.coalesce(func.sum(case((TaskRecord.status == status.value, 1), else_=0)), 0)

        with self._transaction("query stats") as session:
            stats = StatsResponse()
            stats.users.total = session.query(func.count(UserRecord.id)).scalar()
            total, pending, in_progress, completed = session.query(
                func.count(TaskRecord.id),
                count_status(TaskStatus.PENDING),
                count_status(TaskStatus.IN_PROGRESS),
                count_status(TaskStatus.COMPLETED),
            ).one()
            stats.tasks.total = total
            stats.tasks.pending = pending
            stats.tasks.in_progress = in_progress
            stats.tasks.completed = completed
            return stats

    # ---- writes ----

    def create_user(self, name: str, email: str, role: str) -> User:
        with self._transaction("insert user") as session:
            record = UserRecord(name=name, email=email, role=role)
            session.add(record)
            session.flush()
            return _user_entity(record)

    def create_task(self, title: str, status: str, user_id: int, actor: str = "") -> Task:
        if not is_valid_task_status(status):
            raise InvalidTaskStatusError(status)

        with self._transaction("create task") as session:
            if not self._user_exists(session, user_id):
                raise UserDoesNotExistError(user_id)

            task = TaskRecord(title=title, status=status, user_id=user_id)
            session.add(task)
            session.flush()

            entry = TaskHistoryRecord(
                task_id=task.id,
                changed_at=_utcnow(),
                changed_by=normalize_actor(actor),
                field=HistoryField.STATUS.value,
                from_value=None,
                to_value=status,
            )
            session.add(entry)
            session.flush()

            return _task_entity(task, _history_entity(entry))

    def update_task(self, task_id: int, update: TaskUpdate, actor: str = "") -> Task:
        if update.status is not None and not is_valid_task_status(update.status):
            raise InvalidTaskStatusError(update.status)
        if not is_storable_id(task_id):
            raise TaskNotFoundError(task_id)

        with self._transaction(f"update task id={task_id}") as session:
            task = (
                session.query(TaskRecord)
                .filter(TaskRecord.id == task_id)
                .with_for_update()
                .first()
            )
            if task is None:
                raise TaskNotFoundError(task_id)
            if update.user_id is not None and not self._user_exists(session, update.user_id):
                raise UserDoesNotExistError(update.user_id)

            now = _utcnow()
            actor_name = normalize_actor(actor)
            recorded = []

            def record(field: HistoryField, from_value: str, to_value: str) -> None:
                entry = TaskHistoryRecord(
                    task_id=task_id,
                    changed_at=now,
                    changed_by=actor_name,
                    field=field.value,
                    from_value=from_value,
                    to_value=to_value,
                )
                session.add(entry)
                session.flush()
                recorded.append(entry)

            if update.title is not None and task.title != update.title:
                record(HistoryField.TITLE, task.title, update.title)
                task.title = update.title
            if update.status is not None and task.status != update.status:
                record(HistoryField.STATUS, task.status, update.status)
                task.status = update.status
            if update.user_id is not None and task.user_id != update.user_id:
                record(HistoryField.USER_ID, str(task.user_id), str(update.user_id))
                task.user_id = update.user_id

            session.flush()

            if recorded:
                last_change = recorded[-1]
            else:
                last_change = self._latest_change(session, task_id)
            return _task_entity(task, _history_entity(last_change) if last_change else None)

    # ---- helpers ----

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        """
        Run one unit of work.

        Commits on success. Store errors roll back and propagate unchanged;
        database errors roll back and are wrapped with the operation name.
        """
        with self._shared_connection_lock or nullcontext():
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except StoreError:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Error during %s: %s", operation, exc)
                raise StoreOperationError(f"{operation}: {exc}") from exc
            finally:
                session.close()

    @staticmethod
    def _user_exists(session: Session, user_id: int) -> bool:
        if not is_storable_id(user_id):
            return False
        return session.query(UserRecord.id).filter(UserRecord.id == user_id).first() is not None

    @staticmethod
    def _task_exists(session: Session, task_id: int) -> bool:
        return session.query(TaskRecord.id).filter(TaskRecord.id == task_id).first() is not None

    @staticmethod
    def _latest_change(session: Session, task_id: int) -> Optional[TaskHistoryRecord]:
        return (
            session.query(TaskHistoryRecord)
            .filter(TaskHistoryRecord.task_id == task_id)
            .order_by(TaskHistoryRecord.changed_at.desc(), TaskHistoryRecord.id.desc())
            .first()
        )
