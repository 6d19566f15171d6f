"""Pytest configuration and shared fixtures."""
import pytest
from fastapi.testclient import TestClient

from task_tracker.database import create_db_engine
from task_tracker.main import create_app
from task_tracker.services.memory_store import MemoryStore
from task_tracker.services.sql_store import SqlStore


@pytest.fixture
def sql_store():
    """SQL store on a fresh in-memory SQLite database, schema and seed data applied."""
    store = SqlStore(create_db_engine("sqlite:///:memory:"))
    store.init_schema()
    store.seed_initial_data()

    yield store

    store.close()


@pytest.fixture
def memory_store():
    """In-memory store holding the seed data."""
    return MemoryStore.with_seed_data()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Each store implementation in turn, both starting from the seed data."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def client(store):
    """HTTP client for an application built around the store under test."""
    with TestClient(create_app(store=store)) as test_client:
        yield test_client
