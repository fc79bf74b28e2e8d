"""Shared pytest fixtures for Aegis tests.

Provides:
- Async test database (in-memory SQLite, one per test)
- Test client (httpx AsyncClient on the FastAPI app)
- Fakes for the external vendors (push, receipts, Safe Browsing, S3)
- Factory functions for users, devices, push tokens and signatures
"""

import os
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Force test configuration before the app is imported
os.environ["AEGIS_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AEGIS_JWT_SECRET"] = "test-secret-key-for-tests"
os.environ["AEGIS_REDIS_URL"] = ""
os.environ["AEGIS_ADMIN_EMAILS"] = "bootstrap-admin@aegis-mobile.com"
os.environ["AEGIS_AWS_REGION"] = "us-east-1"
os.environ["AEGIS_AWS_ACCESS_KEY_ID"] = "test-access-key"
os.environ["AEGIS_AWS_SECRET_ACCESS_KEY"] = "test-secret-key"
os.environ["AEGIS_S3_BUCKET_NAME"] = "aegis-quarantine-test"

from aegis.db.engine import Base, configure_sqlite, get_db
from aegis.db.models import Device, PushToken, ThreatSignature, User, UserRole
from aegis.main import app
from aegis.services.auth import create_access_token, hash_password
from aegis.services.cache import MemoryCache, set_cache
from aegis.services.push import PushOutcome, get_push_sender
from aegis.services.receipts import VerificationResult, get_receipt_verifier
from aegis.services.storage import get_quarantine_storage
from aegis.services.url_reputation import get_url_classifier


# ── Vendor fakes ──────────────────────────────────────────────────────


class FakePushSender:
    """Records messages; per-token outcomes default to delivered."""

    def __init__(self):
        self.sent = []
        self.outcomes: dict[str, PushOutcome] = {}

    async def send(self, message):
        self.sent.append(message)
        return self.outcomes.get(message.token, PushOutcome(delivered=True))


class FakeReceiptVerifier:
    def __init__(self):
        self.result = VerificationResult(valid=False)
        self.calls = []

    async def verify(self, platform, receipt_data):
        self.calls.append((platform, receipt_data))
        return self.result


class FakeUrlClassifier:
    def __init__(self):
        self.verdict = {"isSafe": True}

    async def classify(self, url):
        return dict(self.verdict)


class FakeStorage:
    def __init__(self):
        self.presigned = []

    def presign_upload(self, key, content_type, content_length, metadata, expires_in):
        self.presigned.append(
            {
                "key": key,
                "content_type": content_type,
                "content_length": content_length,
                "metadata": metadata,
                "expires_in": expires_in,
            }
        )
        return f"https://s3.test/{key}?X-Amz-Signature=fake"


# ── Database fixtures ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine.sync_engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Open short-lived sessions with ``async with session_factory() as s``."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def cache():
    backend = MemoryCache()
    set_cache(backend)
    yield backend
    set_cache(None)


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def receipt_verifier():
    return FakeReceiptVerifier()


@pytest.fixture
def url_classifier():
    return FakeUrlClassifier()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest_asyncio.fixture
async def client(
    session_factory, cache, push_sender, receipt_verifier, url_classifier, storage
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the DB and vendor dependencies overridden."""

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_push_sender] = lambda: push_sender
    app.dependency_overrides[get_receipt_verifier] = lambda: receipt_verifier
    app.dependency_overrides[get_url_classifier] = lambda: url_classifier
    app.dependency_overrides[get_quarantine_storage] = lambda: storage

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Factory helpers ───────────────────────────────────────────────────


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


def device_info(device_id: str = "hw-0001", platform: str = "android") -> dict:
    return {
        "deviceId": device_id,
        "deviceName": "Pixel 8",
        "platform": platform,
        "osVersion": "14",
        "appVersion": "1.0.0",
    }


async def make_user(
    session_factory,
    email: str = "user@aegis-mobile.com",
    role: str = UserRole.USER.value,
    password: Optional[str] = None,
) -> User:
    async with session_factory() as s:
        user = User(
            email=email,
            name=email.split("@")[0],
            auth_provider="email",
            password_hash=hash_password(password) if password else None,
            role=role,
        )
        s.add(user)
        await s.commit()
        return user


async def make_device(
    session_factory,
    user: User,
    device_id: str = "hw-0001",
    platform: str = "android",
    is_active: bool = True,
) -> Device:
    async with session_factory() as s:
        device = Device(
            user_id=user.id,
            device_id=device_id,
            device_name="Test phone",
            platform=platform,
            os_version="14",
            app_version="1.0.0",
            is_active=is_active,
        )
        s.add(device)
        await s.commit()
        return device


async def make_push_token(session_factory, device: Device, token: str) -> PushToken:
    async with session_factory() as s:
        push_token = PushToken(
            device_id=device.id,
            token=token,
            platform="apns" if device.platform == "ios" else "fcm",
            is_active=True,
        )
        s.add(push_token)
        await s.commit()
        return push_token


async def make_signature(
    session_factory,
    signature: str,
    threat_name: str = "Android.Trojan.Joker",
    severity: str = "high",
    category: str = "trojan",
    type_: str = "hash",
    is_active: bool = True,
) -> ThreatSignature:
    async with session_factory() as s:
        row = ThreatSignature(
            type=type_,
            signature=signature,
            threat_name=threat_name,
            severity=severity,
            category=category,
            is_active=is_active,
        )
        s.add(row)
        await s.commit()
        return row


SHA_EVIL = "a" * 64
SHA_CLEAN = "b" * 64
SHA_OTHER = "c" * 64


def miss_first_lookup(monkeypatch, module, name: str) -> None:
    """Make ``module.name`` return None once, as if a racing insert were uncommitted."""
    real = getattr(module, name)
    calls = []

    async def lookup(db, key):
        calls.append(key)
        if len(calls) == 1:
            return None
        return await real(db, key)

    monkeypatch.setattr(module, name, lookup)
