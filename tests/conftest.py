import re
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from schemagate.main import app
from schemagate.core import models
from schemagate.core.database import Base, get_catalog_service
from schemagate.core.config import settings
from schemagate.core.pseudo_api.catalog import StaticCatalogService, catalog_from_metadata
from schemagate.core.pseudo_api.executor import CommandExecutor
from schemagate.core.pseudo_api.translator import PrebuiltTranslator
from schemagate.api.deps import get_executor, get_translator

# Force to use a test db for integration tests
TEST_DATABASE_URL = settings.DATABASE_URL + "_test"


# =========================
# In-memory connection fakes
# =========================
class FakeResult:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, rowcount: int = -1):
        self._rows = rows or []
        self.returns_rows = rows is not None
        self.rowcount = rowcount

    def mappings(self):
        return self

    def all(self):
        return list(self._rows)


class FakeOrig(Exception):
    def __init__(self, message: str, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.sqlstate = sqlstate


def constraint_error(message: str, sqlstate: str = "23514") -> IntegrityError:
    return IntegrityError("statement", None, FakeOrig(message, sqlstate))


class FakeTransaction:
    def __init__(self, engine: "FakeEngine", label: str):
        self.engine = engine
        self.label = label

    async def commit(self):
        self.engine.events.append(f"{self.label}:commit")

    async def rollback(self):
        self.engine.events.append(f"{self.label}:rollback")


class FakeConnection:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    async def __aenter__(self):
        self.engine.events.append("connect")
        return self

    async def __aexit__(self, *exc):
        self.engine.events.append("close")
        return False

    async def begin(self):
        self.engine.events.append("begin")
        return FakeTransaction(self.engine, "transaction")

    async def begin_nested(self):
        self.engine.events.append("savepoint")
        return FakeTransaction(self.engine, "savepoint")

    async def exec_driver_sql(self, sql: str, params=None):
        self.engine.statements.append((sql, params))
        return await self.engine.respond(sql, params)


def default_responder(sql: str, params) -> FakeResult:
    if sql.startswith("SELECT"):
        return FakeResult(rows=[{"id": "row_1", "status": "confirmed"}], rowcount=1)
    if "RETURNING" in sql:
        # Echo the inserted id back when the statement names one
        match = re.search(r"^INSERT INTO \S+ \(([^)]*)\)", sql)
        columns = [c.strip().strip('"') for c in match.group(1).split(",")] if match else []
        row_id = params[columns.index("id")] if "id" in columns else "row_1"
        return FakeResult(rows=[{"id": row_id}], rowcount=1)
    return FakeResult(rowcount=1)


class FakeEngine:
    """
    Stands in for an AsyncEngine: records every statement and every
    transaction event so tests can check BEGIN / SAVEPOINT / COMMIT / ROLLBACK.
    """

    def __init__(self, responder: Optional[Callable] = None):
        self.responder = responder or default_responder
        self.statements: List[tuple] = []
        self.events: List[str] = []

    def connect(self):
        return FakeConnection(self)

    async def respond(self, sql: str, params):
        outcome = self.responder(sql, params)
        if hasattr(outcome, "__await__"):
            outcome = await outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# =========================
# Catalog + executor fixtures
# =========================
@pytest.fixture
def catalog():
    # Demo tenant schema straight from the declarative models, no database
    assert models.BookingOrder.__tablename__ in Base.metadata.tables
    return catalog_from_metadata(Base.metadata)


@pytest.fixture
def catalog_service(catalog):
    return StaticCatalogService(catalog)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def executor(fake_engine, catalog_service):
    return CommandExecutor(fake_engine, catalog_service)


@pytest.fixture
def translator():
    return PrebuiltTranslator(
        {
            "show confirmed bookings": {
                "kind": "query",
                "table": "booking orders",
                "filters": [{"column": "status", "op": "eq", "value": "confirmed"}],
            },
            "show everything in ghosts": {"kind": "query", "table": "ghosts"},
        }
    )


# Client
@pytest_asyncio.fixture(scope="function")
async def client(catalog_service, executor, translator):
    app.dependency_overrides[get_catalog_service] = lambda: catalog_service
    app.dependency_overrides[get_executor] = lambda: executor
    app.dependency_overrides[get_translator] = lambda: translator

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# =========================
# PostgreSQL integration
# =========================
@pytest_asyncio.fixture(scope="function")
async def pg_engine():
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
    try:
        async with engine.begin() as conn:
            # Create all tables
            await conn.run_sync(Base.metadata.create_all)
    except Exception as error:
        await engine.dispose()
        pytest.skip(f"Test database not reachable: {error}")

    yield engine

    async with engine.begin() as conn:
        # Drop tables once we are done
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
