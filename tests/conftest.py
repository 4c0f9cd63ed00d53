"""Shared fixtures: in-memory entity store, row builder, API client."""

from __future__ import annotations

import itertools
from typing import Any

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from recordhub.api import app
from recordhub.config import settings
from recordhub.db import get_session
from recordhub.models import Base, utcnow
from recordhub.pipelines.resolution import EntityCreationError


def make_sqlite_engine(path, **kwargs) -> AsyncEngine:
    """aiosqlite engine with explicit BEGIN so SAVEPOINTs behave as on Postgres."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", **kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def sqlite_engine_factory():
    return make_sqlite_engine


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path):
    engine = make_sqlite_engine(tmp_path / "recordhub.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


class FakeEntityStore:
    """In-memory stand-in for SqlEntityStore with the same unique keys."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.tables: dict[str, dict[str, int]] = {
            "agent": {},
            "customer": {},
            "account": {},
            "category": {},
            "carrier": {},
            "policy": {},
        }
        self.policies: dict[int, dict[str, Any]] = {}
        self.customers: dict[int, dict[str, Any]] = {}
        self.creates: list[tuple[str, str]] = []
        self.commits = 0
        self.fail_on: set[tuple[str, str]] = set()
        self.fail_commit = False

    def seed(self, kind: str, key: str) -> int:
        new_id = next(self._ids)
        self.tables[kind][key] = new_id
        return new_id

    def _create(self, kind: str, key: str) -> int:
        if (kind, key) in self.fail_on or key in self.tables[kind]:
            raise EntityCreationError(f"duplicate or rejected {kind}: {key}")
        self.creates.append((kind, key))
        return self.seed(kind, key)

    async def find_agent(self, name):
        return self.tables["agent"].get(name)

    async def create_agent(self, name):
        return self._create("agent", name)

    async def find_customer(self, email):
        return self.tables["customer"].get(email)

    async def create_customer(self, **fields):
        new_id = self._create("customer", fields["email"])
        self.customers[new_id] = fields
        return new_id

    async def find_account(self, account_name):
        return self.tables["account"].get(account_name)

    async def create_account(self, account_name, customer_id, account_type):
        return self._create("account", account_name)

    async def find_category(self, category_name):
        return self.tables["category"].get(category_name)

    async def create_category(self, category_name):
        return self._create("category", category_name)

    async def find_carrier(self, name):
        return self.tables["carrier"].get(name)

    async def create_carrier(self, name):
        return self._create("carrier", name)

    async def policy_exists(self, policy_number):
        return policy_number in self.tables["policy"]

    async def create_policy(self, **fields):
        new_id = self._create("policy", fields["policy_number"])
        self.policies[new_id] = fields
        return new_id

    async def commit(self):
        if self.fail_commit:
            raise RuntimeError("database went away")
        self.commits += 1


@pytest.fixture
def store() -> FakeEntityStore:
    return FakeEntityStore()


@pytest.fixture
def make_record():
    """Build one upload record (column name -> text) with sensible defaults."""
    counter = itertools.count(1)

    def _make(**overrides: str) -> dict[str, str]:
        n = next(counter)
        record = {
            "agent": "Alex Agent",
            "userType": "Active Client",
            "policy_mode": "12",
            "producer": "Pat Producer",
            "policy_number": f"POL-{n:04d}",
            "premium_amount_written": "1200.50",
            "premium_amount": "1100",
            "policy_type": "Single",
            "company_name": "Acme Insurance",
            "category_name": "Commercial Auto",
            "policy_start_date": "2024-01-01",
            "policy_end_date": "2025-01-01",
            "csr": "Casey",
            "account_name": f"Account {n}",
            "hasActive ClientPolicy": "Yes",
            "first_name": "Jordan",
            "last_name": f"Customer{n}",
            "date_of_birth": "1985-06-15",
            "address": "1 Main St",
            "phone_number": "555-0100",
            "state": "TX",
            "zip_code": "73301",
            "email": f"customer{n}@example.com",
            "gender": "Female",
        }
        record.update(overrides)
        return record

    return _make


class FakeSession:
    """Just enough of AsyncSession for the scheduled message service."""

    def __init__(self):
        self.added: list[Any] = []
        self.deleted: list[Any] = []
        self.objects: dict[int, Any] = {}
        self.commits = 0
        self._ids = itertools.count(1)

    def add(self, obj):
        self.added.append(obj)

    async def commit(self):
        self.commits += 1
        for obj in self.added:
            if getattr(obj, "id", None) is None:
                obj.id = next(self._ids)
                obj.created_at = utcnow()
                obj.updated_at = obj.created_at
                self.objects[obj.id] = obj

    async def refresh(self, obj):
        return None

    async def get(self, model, ident):
        return self.objects.get(ident)

    async def delete(self, obj):
        self.deleted.append(obj)
        self.objects.pop(obj.id, None)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(fake_session, tmp_path, monkeypatch) -> TestClient:
    """API client (lifespan not started) with the DB session faked."""

    async def _session_override():
        yield fake_session

    monkeypatch.setattr(settings.upload, "directory", str(tmp_path / "uploads"))
    app.dependency_overrides[get_session] = _session_override
    yield TestClient(app)
    app.dependency_overrides = {}
