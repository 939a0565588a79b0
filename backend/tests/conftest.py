import asyncio
import hashlib
import hmac
import inspect
import json
import os
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("STORAGE_SIGNING_SECRET", "test-storage-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("ADMIN_BASIC_USERNAME", "admin")
os.environ.setdefault("ADMIN_BASIC_PASSWORD", "admin-secret")
os.environ.setdefault("AUTH_SECRET_KEY", "test-auth-secret")
os.environ.setdefault("METRICS_ENABLED", "true")


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import anyio
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.deliverables.db_models import Deliverable
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from app.infra import models  # noqa: F401
from app.infra.auth import create_client_token
from app.infra.db import Base, UnitOfWork
from app.main import app
from app.settings import settings

ADMIN_AUTH = ("admin", "admin-secret")
CLIENT_ID = "client-1"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture
def uow(async_session_maker):
    return UnitOfWork(async_session_maker)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        "admin_basic_username": settings.admin_basic_username,
        "admin_basic_password": settings.admin_basic_password,
        "stripe_webhook_secret": settings.stripe_webhook_secret,
        "metrics_enabled": settings.metrics_enabled,
        "metrics_token": settings.metrics_token,
        "trust_proxy_headers": settings.trust_proxy_headers,
        "trusted_proxy_ips_raw": settings.trusted_proxy_ips_raw,
        "app_env": settings.app_env,
    }
    yield
    for name, value in original.items():
        setattr(settings, name, value)


async def _reset(limiter) -> None:
    reset = getattr(limiter, "reset", None)
    if reset is None:
        return
    if inspect.iscoroutinefunction(reset):
        await reset()
    else:
        reset()


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    services = getattr(app.state, "services", None)
    if services is not None:
        for limiter in (services.rate_limiter, services.webhook_rate_limiter):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(_reset(limiter))
            else:
                anyio.from_thread.run(_reset, limiter)
    yield


@pytest.fixture()
def client(async_session_maker):
    ensure_event_loop()
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture
def storage(client):
    return app.state.services.storage


def client_headers(client_id: str = CLIENT_ID) -> dict[str, str]:
    token = create_client_token(client_id, 30, settings.auth_secret_key)
    return {"Authorization": f"Bearer {token}"}


def sign_stripe_payload(payload: bytes, secret: str = "whsec_test", timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(
    event_id: str,
    event_type: str,
    data_object: dict,
) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": data_object},
        }
    ).encode()


async def seed_project(
    async_session_maker,
    *,
    client_id: str | None = CLIENT_ID,
    payment_status: str = project_statuses.PAYMENT_UNPAID,
    portal_stage: str = project_statuses.PortalStage.SCHEDULED.value,
    payment_required: bool = True,
    payment_amount_cents: int | None = 50000,
) -> Project:
    async with async_session_maker() as session:
        project = Project(
            name="Spring catalogue shoot",
            client_id=client_id,
            payment_status=payment_status,
            portal_stage=portal_stage,
            payment_required=payment_required,
            payment_amount_cents=payment_amount_cents,
        )
        session.add(project)
        await session.commit()
        return project


async def seed_deliverable(
    async_session_maker,
    project_id: str,
    *,
    version: int = 1,
    preview_key: str | None = "preview/key.png",
    download_key: str | None = "original/key.png",
    state: str = "DRAFT",
) -> Deliverable:
    async with async_session_maker() as session:
        deliverable = Deliverable(
            project_id=project_id,
            title=f"Selects v{version}",
            version=version,
            state=state,
            preview_key=preview_key,
            download_key=download_key,
            watermark_status="applied",
            mime_type="image/png",
            byte_size=128,
            original_filename="selects.png",
        )
        session.add(deliverable)
        await session.commit()
        return deliverable


async def fetch(async_session_maker, model, pk):
    async with async_session_maker() as session:
        return await session.get(model, pk)
