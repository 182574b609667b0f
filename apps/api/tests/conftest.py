from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.plan import Plan
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as session:
        session.add_all(
            [
                Plan(
                    id="plan-pro",
                    name="Pro",
                    price_monthly=Decimal("9.99"),
                    price_yearly=Decimal("99.90"),
                    daily_credits=0,
                    monthly_credits=100,
                    is_daily=False,
                    features=["priority_support"],
                ),
                Plan(
                    id="plan-daily",
                    name="Daily",
                    price_monthly=Decimal("4.99"),
                    price_yearly=Decimal("49.90"),
                    daily_credits=25,
                    monthly_credits=0,
                    is_daily=True,
                    features=[],
                ),
            ]
        )
        await session.commit()

    yield maker
    await engine.dispose()
