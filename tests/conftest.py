import os
from contextlib import asynccontextmanager

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("JWT_SECRET_KEY", "umid-test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./umid_test.db")
os.environ.setdefault("LOG_FILE", "umid_test.log")

from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from core.crypto import crypto_engine  # noqa: E402
from core.ratelimit import FailureThrottle, failure_throttle  # noqa: E402
from db.session import get_db, init_db, make_engine  # noqa: E402

# Pinned wall clock, aligned to a 30 s step boundary.
NOW = 1_700_000_010


def fixed_clock(at: float = NOW):
    return lambda: at


@asynccontextmanager
async def _no_lifespan(_app: FastAPI):
    yield


@pytest.fixture(autouse=True)
def crypto():
    crypto_engine.initialize(os.environ["ENCRYPTION_KEY"])
    return crypto_engine


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'umid.db'}")
    await init_db(bind=engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def throttle():
    return FailureThrottle(max_failures=5, window_seconds=300)


@pytest.fixture
async def client(session_factory):
    import main

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    await failure_throttle.clear()
    main.app.dependency_overrides[get_db] = _override_get_db
    main.app.router.lifespan_context = _no_lifespan
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    main.app.dependency_overrides.clear()
    await failure_throttle.clear()


def bearer(caller_id: str, role: str) -> dict:
    token = crypto_engine.create_access_token(caller_id, {"role": role})
    return {"Authorization": f"Bearer {token}"}


def linked_profile() -> dict:
    return {
        "name": "Asha Rao",
        "date_of_birth": "1986-04-12",
        "blood_type": "O+",
        "allergies": ["penicillin"],
        "chronic_conditions": ["asthma"],
        "current_medications": ["salbutamol"],
        "emergency_contacts": [{"name": "Ravi Rao", "relationship": "brother", "phone": "+91-555-0100"}],
        "dnr_status": False,
        "organ_donor_status": True,
    }
