import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings
from app.database import init_models
from app.ledger import make_error_recorder
from app.paypal_client import PayPalClient
from tests.paypal_fakes import PAYPAL_BASE, FakePayPal


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        paypal_api=PAYPAL_BASE,
        paypal_client_id="client-id",
        paypal_secret="client-secret",
        paypal_request_prefix="test",
        jwt_secret="test-secret",
    )


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
async def paypal_client(paypal, session_factory, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    http = httpx.AsyncClient(transport=httpx.MockTransport(paypal.handler))
    client = PayPalClient(
        PAYPAL_BASE,
        "client-id",
        "client-secret",
        http_client=http,
        sleep=fake_sleep,
        error_recorder=make_error_recorder(session_factory),
        request_id_prefix="test",
    )
    yield client
    await http.aclose()
