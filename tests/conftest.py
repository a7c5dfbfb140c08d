import os
import tempfile

# Set test environment
_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="bridge_test_"), "bridge.db")
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "change-me-in-production"
os.environ["NATIVE_AUTH_SECRET"] = "test-bridge-secret"
os.environ["APPLE_CLIENT_ID"] = "com.example.web"
os.environ["GOOGLE_CLIENT_ID"] = "google-web-client"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}")

import base64
import time
from collections.abc import AsyncGenerator, Callable
from typing import Any
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api.native_auth import get_bridge_codec, get_identity_verifier, get_pending_store
from app.config import get_settings
from app.database import Base, get_db
from app.main import app
from app.models import User
from app.services.pending_store import PendingResultStore
from app.utils.auth import create_access_token
from app.utils.bridge_token import BridgeTokenCodec
from app.utils.oidc import APPLE, GOOGLE, IdentityTokenVerifier, JWKSCache, allowed_audiences

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", os.environ["DATABASE_URL"])

TEST_KEY_ID = "test-signing-key"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async engine with a fresh schema for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def pending_store(session_factory) -> PendingResultStore:
    return PendingResultStore(session_factory=session_factory)


@pytest.fixture
def bridge_codec() -> BridgeTokenCodec:
    return BridgeTokenCodec(secret=get_settings().native_auth_secret)


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


@pytest.fixture(scope="session")
def jwks_document(rsa_private_key) -> dict[str, Any]:
    numbers = rsa_private_key.public_key().public_numbers()
    return {
        "keys": [
            {
                "kty": "RSA",
                "kid": TEST_KEY_ID,
                "use": "sig",
                "alg": "RS256",
                "n": _b64url_uint(numbers.n),
                "e": _b64url_uint(numbers.e),
            }
        ]
    }


@pytest.fixture
def jwks_transport(jwks_document) -> httpx.MockTransport:
    """Serves the test key set from both provider JWKS URLs."""
    urls = {APPLE.jwks_url, GOOGLE.jwks_url}

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) in urls:
            return httpx.Response(200, json=jwks_document)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def identity_verifier(jwks_transport) -> IdentityTokenVerifier:
    return IdentityTokenVerifier(
        JWKSCache(transport=jwks_transport),
        lambda provider: allowed_audiences(get_settings(), provider),
    )


@pytest.fixture
def make_identity_token(rsa_private_key) -> Callable[..., str]:
    """Sign an RS256 identity token with the test key."""
    private_pem = rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")

    def _make(
        issuer: str = "https://appleid.apple.com",
        audience: Any = "com.example.web",
        subject: str = "001234.apple-user",
        email: str | None = "person@example.com",
        issued_at: int | None = None,
        expires_at: int | None = None,
        key_id: str = TEST_KEY_ID,
        **extra: Any,
    ) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": issuer,
            "aud": audience,
            "sub": subject,
            "iat": issued_at if issued_at is not None else now,
            "exp": expires_at if expires_at is not None else now + 600,
            **extra,
        }
        if email is not None:
            claims["email"] = email
        return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": key_id})

    return _make


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    pending_store: PendingResultStore,
    identity_verifier: IdentityTokenVerifier,
    bridge_codec: BridgeTokenCodec,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and native auth overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pending_store] = lambda: pending_store
    app.dependency_overrides[get_identity_verifier] = lambda: identity_verifier
    app.dependency_overrides[get_bridge_codec] = lambda: bridge_codec

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user with unique identifiers."""
    unique_id = uuid4()
    user = User(
        id=unique_id,
        external_id=f"test-user-{unique_id}",
        email=f"test-{unique_id}@example.com",
        display_name="Test User",
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Create authorization headers for authenticated requests."""
    token = create_access_token(test_user.external_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def web_session_headers() -> dict[str, str]:
    """Headers carrying the web session the provider sign-in page leaves behind."""
    token = create_access_token("web-user-1", email="Web.User@Example.com", name="Web User")
    return {"Authorization": f"Bearer {token}"}
