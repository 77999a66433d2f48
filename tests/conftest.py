import os
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Settings are read at import time: configure before importing the app
os.environ["DATABASE_URL"] = "disabled"
os.environ["REDIS_URL"] = "disabled"
os.environ["RABBITMQ_URL"] = "disabled"
os.environ["GROQ_API_KEY"] = ""
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ONLINE_SHORTFALL_POLICY"] = "no_refund"
os.environ["INVOICE_FAILURE_POLICY"] = "grace_period"

# Ensure project root is on sys.path so `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.auth import issue_token  # noqa: E402
from core.db import Base, build_session_maker, get_db_session  # noqa: E402
from models.db_models import PickupPoint, Route, Subscription, TimeSlot  # noqa: E402
from services.notification_service import NotificationService  # noqa: E402

ROUTE_ID = "R1"
SLOT_ID = "R1-0730"
POINTS = [("P1", 1), ("P2", 2), ("P3", 3), ("P4", 4), ("P5", 5)]

# 2026-11-02 is a Monday
MONDAY = date(2026, 11, 2)


@pytest_asyncio.fixture()
async def session_maker(tmp_path):
    """Fresh SQLite file database per test, schema from the ORM metadata."""
    engine, maker = build_session_maker(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture()
async def catalogue(session_maker):
    """Route R1 at 250/seat with a 250 monthly discount, one time slot, five points."""
    async with session_maker() as s:
        s.add(Route(route_id=ROUTE_ID, name="Uttara - Motijheel",
                    price_per_seat=Decimal("250.00"), discount_amount=Decimal("250.00"), is_active=True))
        s.add(TimeSlot(time_slot_id=SLOT_ID, route_id=ROUTE_ID, departure_time="07:30"))
        for point_id, order in POINTS:
            s.add(PickupPoint(point_id=point_id, route_id=ROUTE_ID, name=f"Point {point_id}", sequence_order=order))
        await s.commit()
    return {"route_id": ROUTE_ID, "time_slot_id": SLOT_ID}


@pytest_asyncio.fixture()
async def session(session_maker, catalogue):
    async with session_maker() as s:
        yield s


@pytest.fixture()
def notifier():
    """Delivers through tools.notifier (no broker) and keeps what was sent."""
    return NotificationService(client=None)


@pytest.fixture()
def make_subscription(session):
    """Insert an active subscription row directly (bypasses purchase pricing)."""
    counter = {"n": 0}

    async def _make(user_id=None, weekdays=(0, 2, 4), payment_method="online", boarding="P1",
                    start=date(2026, 11, 1), end=date(2026, 12, 1), status="active",
                    price=Decimal("3000.00"), route_id=ROUTE_ID, time_slot_id=SLOT_ID):
        counter["n"] += 1
        subscription = Subscription(
            user_id=user_id or f"user-{counter['n']}",
            route_id=route_id,
            time_slot_id=time_slot_id,
            boarding_point_id=boarding,
            drop_off_point_id="P5",
            weekdays=list(weekdays),
            start_date=start,
            end_date=end,
            price_per_trip=Decimal("250.00"),
            total_monthly_price=price,
            discount_amount=Decimal("0.00"),
            payment_method=payment_method,
            status=status,
        )
        session.add(subscription)
        await session.commit()
        return subscription

    return _make


@pytest_asyncio.fixture()
async def app_client(session_maker, catalogue):
    """Async test client for the API, bound to the per-test database."""
    from main import app

    async def _session_override():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_db_session] = _session_override
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
def user_headers():
    return {"Authorization": f"Bearer {issue_token('rider-1')}"}


@pytest.fixture()
def admin_headers():
    return {"Authorization": f"Bearer {issue_token('admin-1', role='admin')}"}
