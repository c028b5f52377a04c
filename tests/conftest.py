"""Shared test infrastructure for the House Haunters test suite.

Provides:
- session_factory: async sessionmaker over a fresh file-backed SQLite database
- db_session: one session from that factory, for driving services directly
- notifier: NotificationService writing to the same database
- settings: Settings with the scheduler disabled
- make_user / make_property / make_booking: row factories
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from house_haunters.infra.database import Base

import house_haunters.domain.models  # noqa: F401

from house_haunters.app.config import Settings
from house_haunters.domain.models import Booking, Notification, Property, User
from house_haunters.services.escrow_ledger import (
    compute_auto_release_deadline,
    compute_end_time,
)
from house_haunters.services.notification_service import NotificationService


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory(tmp_path):
    """Sessionmaker over a per-test SQLite file with all tables created.

    A file (not :memory:) so that independent sessions see each other's
    commits and can contend for the write lock like real requests do.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def notifier(session_factory):
    return NotificationService(session_factory)


@pytest.fixture
def settings():
    return Settings(scheduler_enabled=False, debug=False)


@pytest.fixture
def notifications(session_factory):
    """Fetch persisted notifications, optionally for one user and type."""
    async def _fetch(user_id: str | None = None, notification_type: str | None = None):
        async with session_factory() as session:
            query = select(Notification)
            if user_id:
                query = query.where(Notification.user_id == user_id)
            if notification_type:
                query = query.where(Notification.type == notification_type)
            result = await session.execute(query)
            return list(result.scalars().all())

    return _fetch


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        tenant = await make_user("tenant")
    """
    async def _factory(role: str = "tenant", name: str | None = None) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            id=str(uuid.uuid4()),
            email=f"{role}-{suffix}@test.com",
            name=name or f"Test {role.title()}",
            phone="+254700000000",
            role=role,
            is_active=True,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_property(db_session):
    """Factory that creates a Property owned by ``hunter``."""
    async def _factory(hunter: User, title: str = "2BR Apartment, Kilimani") -> Property:
        prop = Property(
            id=str(uuid.uuid4()),
            hunter_id=hunter.id,
            title=title,
            location="Nairobi",
            is_locked=False,
        )
        db_session.add(prop)
        await db_session.commit()
        return prop

    return _factory


@pytest.fixture
def make_booking(db_session):
    """Factory that creates a CONFIRMED/ESCROW Booking holding the property lock.

    Usage:
        booking = await make_booking(tenant, hunter, prop, amount="1000.00")
        booking = await make_booking(tenant, hunter, prop, physical_meeting_confirmed=True)
    """
    async def _factory(
        tenant: User,
        hunter: User,
        prop: Property,
        amount="1000.00",
        scheduled_date: str | None = None,
        scheduled_time: str = "10:00",
        **overrides,
    ) -> Booking:
        scheduled_date = scheduled_date or (date.today() + timedelta(days=1)).isoformat()
        booking_id = str(uuid.uuid4())
        fields = dict(
            id=booking_id,
            property_id=prop.id,
            tenant_id=tenant.id,
            hunter_id=hunter.id,
            amount=Decimal(amount),
            payment_status="ESCROW",
            status="CONFIRMED",
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            scheduled_end_time=compute_end_time(scheduled_time),
            auto_release_at=compute_auto_release_deadline(scheduled_date, scheduled_time),
        )
        fields.update(overrides)
        booking = Booking(**fields)
        db_session.add(booking)

        prop.is_locked = True
        prop.locked_by_booking_id = booking_id
        await db_session.commit()
        return booking

    return _factory

