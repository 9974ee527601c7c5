"""
Shared fixtures: a file-backed SQLite database per test, seeded branches,
an in-memory catalogue and a fully wired OrderService.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import event

from cafe_orders.core.clock import utcnow
from cafe_orders.database import create_engine_from_settings, create_session_factory, init_db
from cafe_orders.models import Branch
from cafe_orders.services.catalogue import InMemoryCatalogueService
from cafe_orders.services.orders import OrderService
from cafe_orders.services.timers import LocalTimerBackend

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"

BRANCH_A = "branch-a"
BRANCH_B = "branch-b"
BRANCH_NO_TOKENS = "branch-c"
BRANCH_OTHER_TENANT = "branch-x"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_from_settings(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")

    # SQLite: take the write lock at BEGIN so concurrent writers queue up
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def branches(session_factory):
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                Branch(id=BRANCH_A, tenant_id=TENANT, name="Downtown",
                       has_token_system=True, token_range_start=1,
                       token_range_end=999, current_token=1),
                Branch(id=BRANCH_B, tenant_id=TENANT, name="Harbour",
                       has_token_system=True, token_range_start=100,
                       token_range_end=199, current_token=100),
                Branch(id=BRANCH_NO_TOKENS, tenant_id=TENANT, name="Kiosk",
                       has_token_system=False),
                Branch(id=BRANCH_OTHER_TENANT, tenant_id=OTHER_TENANT, name="Elsewhere",
                       has_token_system=True),
            ])
    return [BRANCH_A, BRANCH_B, BRANCH_NO_TOKENS, BRANCH_OTHER_TENANT]


@pytest_asyncio.fixture
async def make_branch(session_factory):
    """Create an extra branch with a custom token setup."""
    async def _make(branch_id: str, tenant_id: str = TENANT, **token_config) -> str:
        token_config.setdefault("has_token_system", True)
        async with session_factory() as session:
            async with session.begin():
                session.add(Branch(id=branch_id, tenant_id=tenant_id, name=branch_id, **token_config))
        return branch_id
    return _make


@pytest.fixture
def catalogue():
    catalogue = InMemoryCatalogueService()
    catalogue.add_item("latte", tenant_id=TENANT, branch_id=BRANCH_A, price="3.50")
    catalogue.add_item("croissant", tenant_id=TENANT, branch_id=BRANCH_A, price="2.25",
                       shared_with=[BRANCH_B, BRANCH_NO_TOKENS])
    catalogue.add_item("muffin", tenant_id=TENANT, branch_id=BRANCH_A, price="2.80",
                       available=False)
    catalogue.add_item("tea", tenant_id=TENANT, branch_id=BRANCH_B, price="1.90")
    catalogue.add_item("foreign", tenant_id=OTHER_TENANT, branch_id=BRANCH_OTHER_TENANT,
                       price="9.99")
    return catalogue


@pytest.fixture
def clock():
    return FakeClock(utcnow())


@pytest_asyncio.fixture
async def timer_backend():
    backend = LocalTimerBackend(retry_base=0.05, retry_max=0.2)
    yield backend
    await backend.shutdown()


@pytest_asyncio.fixture
async def service(session_factory, catalogue, branches, timer_backend):
    """OrderService on the real clock with a 60s grace window."""
    return OrderService(
        session_factory,
        catalogue,
        timer_backend=timer_backend,
        grace_seconds=60,
    )


@pytest_asyncio.fixture
async def clocked_service(session_factory, catalogue, branches, timer_backend, clock):
    """OrderService on a manually advanced clock."""
    return OrderService(
        session_factory,
        catalogue,
        timer_backend=timer_backend,
        grace_seconds=60,
        clock=clock,
    )
