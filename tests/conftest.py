import asyncio
import fnmatch
import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated, Any

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.exceptions import (
    ChallengeExpiredError,
    IdentityUnavailableError,
    InvalidCodeError,
    InvalidCredentialsError,
)
from app.core.identity import (
    IdentitySession,
    IdentityUser,
    MfaStrategy,
    SecondFactor,
    SignInAttempt,
    SignInStatus,
)
from app.core.redis_client import CacheManager, get_redis_client
from app.core.security import create_access_token
from app.database import get_db
from app.dependencies import (
    get_cache_manager,
    get_cancel_event,
    get_identity_provider,
    get_session_coordinator,
    get_sync_gateway,
)
from app.main import app
from app.models import metadata
from app.services.auth_service import AuthService
from app.services.session_service import SessionCoordinator
from app.services.session_store import HandoffStore
from app.services.sync_gateway import LocalSyncGateway, SyncGateway
from app.services.user_sync_service import UserSyncService

VALID_CODE = "123456"


class InMemoryRedis:
    """The subset of the redis client API the application uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key: str) -> str | None:
        return self.store.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.store[key] = value
        if ex:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def exists(self, key: str) -> int:
        return int(key in self.store)

    def keys(self, pattern: str = "*") -> list[str]:
        return [key for key in self.store if fnmatch.fnmatch(key, pattern)]

    def ping(self) -> bool:
        return True


class FakeIdentityProvider:
    """In-memory identity provider with password, TOTP and email-code sign-in."""

    def __init__(self):
        self.users: dict[str, IdentityUser] = {}
        self.passwords: dict[str, tuple[str, str]] = {}
        self.factors: dict[str, list[SecondFactor]] = {}
        self.attempts: dict[str, str] = {}
        self.sign_in_calls = 0
        self.prepare_calls: list[tuple[str, MfaStrategy]] = []
        self.code_attempts: list[str] = []
        self.sign_out_calls: list[str] = []
        self.revocations: dict[str, int] = {}
        self.fail_sign_out = False
        self.fail_metadata = False
        self.unavailable = False

    def add_user(
        self,
        user_id: str,
        email: str,
        password: str = "correct-horse-battery",
        *,
        public: dict[str, Any] | None = None,
        unsafe: dict[str, Any] | None = None,
        factors: list[SecondFactor] | None = None,
        email_verified: bool = True,
    ) -> IdentityUser:
        user = IdentityUser(
            user_id=user_id,
            email=email,
            email_verified=email_verified,
            first_name="Test",
            last_name="User",
            public_metadata=dict(public or {}),
            unsafe_metadata=dict(unsafe or {}),
        )
        self.users[user_id] = user
        self.passwords[email] = (password, user_id)
        if factors:
            self.factors[user_id] = factors
        return user

    def _check_available(self) -> None:
        if self.unavailable:
            raise IdentityUnavailableError("Identity provider unreachable")

    async def sign_in(self, email: str, password: str) -> SignInAttempt:
        self.sign_in_calls += 1
        self._check_available()

        entry = self.passwords.get(email)
        if entry is None or entry[0] != password:
            raise InvalidCredentialsError(
                "INVALID_LOGIN_CREDENTIALS", code="INVALID_LOGIN_CREDENTIALS"
            )

        user_id = entry[1]
        if user_id in self.factors:
            attempt_id = f"attempt-{user_id}-{self.sign_in_calls}"
            self.attempts[attempt_id] = user_id
            return SignInAttempt(
                status=SignInStatus.NEEDS_SECOND_FACTOR,
                attempt_id=attempt_id,
                second_factors=list(self.factors[user_id]),
            )

        return SignInAttempt(
            status=SignInStatus.COMPLETE,
            session=IdentitySession(user_id=user_id, id_token=self.issue_token(user_id)),
        )

    async def prepare_second_factor(self, attempt_id: str, factor: SecondFactor) -> str | None:
        self._check_available()
        if attempt_id not in self.attempts:
            raise ChallengeExpiredError("INVALID_MFA_PENDING_CREDENTIAL")
        self.prepare_calls.append((attempt_id, factor.strategy))
        if factor.strategy is MfaStrategy.TOTP:
            return None
        return f"verification-{attempt_id}-{len(self.prepare_calls)}"

    async def attempt_second_factor(
        self,
        attempt_id: str,
        strategy: MfaStrategy,
        code: str,
        *,
        factor_id: str | None = None,
        verification_id: str | None = None,
    ) -> IdentitySession:
        self._check_available()
        self.code_attempts.append(code)

        user_id = self.attempts.get(attempt_id)
        if user_id is None:
            raise ChallengeExpiredError("INVALID_MFA_PENDING_CREDENTIAL")
        if code != VALID_CODE:
            raise InvalidCodeError("INVALID_CODE", code="INVALID_CODE")

        del self.attempts[attempt_id]
        return IdentitySession(user_id=user_id, id_token=self.issue_token(user_id))

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        unsafe_metadata: dict[str, Any] | None = None,
    ) -> IdentitySession:
        self._check_available()
        if email in self.passwords:
            raise InvalidCredentialsError("EMAIL_EXISTS", code="EMAIL_EXISTS")

        user_id = f"uid-{len(self.users) + 1}"
        user = self.add_user(user_id, email, password, unsafe=unsafe_metadata)
        user.first_name = first_name
        user.last_name = last_name
        return IdentitySession(user_id=user_id, id_token=self.issue_token(user_id))

    async def get_user(self, user_id: str) -> IdentityUser | None:
        self._check_available()
        return self.users.get(user_id)

    async def update_metadata(
        self,
        user_id: str,
        *,
        public: dict[str, Any] | None = None,
        unsafe: dict[str, Any] | None = None,
    ) -> None:
        if self.fail_metadata:
            raise IdentityUnavailableError("Failed to update metadata")
        user = self.users[user_id]
        user.public_metadata.update(public or {})
        user.unsafe_metadata.update(unsafe or {})

    def issue_token(self, user_id: str) -> str:
        """ID tokens are ``token-<uid>``, suffixed with ``#<n>`` after the n-th revocation."""
        generation = self.revocations.get(user_id, 0)
        return f"token-{user_id}" if generation == 0 else f"token-{user_id}#{generation}"

    async def verify_token(self, id_token: str) -> str:
        if not id_token.startswith("token-"):
            raise InvalidCredentialsError("Invalid Firebase ID token")
        user_id = id_token.removeprefix("token-").split("#", 1)[0]
        if id_token != self.issue_token(user_id):
            raise InvalidCredentialsError("Firebase ID token revoked", code="TOKEN_REVOKED")
        return user_id

    async def sign_out(self, user_id: str) -> None:
        self.sign_out_calls.append(user_id)
        if self.fail_sign_out:
            raise IdentityUnavailableError("Failed to revoke sessions")
        self.revocations[user_id] = self.revocations.get(user_id, 0) + 1


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def cache_manager(fake_redis: InMemoryRedis) -> CacheManager:
    return CacheManager(fake_redis)  # type: ignore[arg-type]


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def handoffs(cache_manager: CacheManager) -> HandoffStore:
    return HandoffStore(cache_manager)


@pytest.fixture
def sync_service(identity: FakeIdentityProvider, cache_manager: CacheManager) -> UserSyncService:
    return UserSyncService(identity, cache_manager)


@pytest.fixture
def coordinator(
    identity: FakeIdentityProvider,
    db_session: AsyncSession,
    sync_service: UserSyncService,
    handoffs: HandoffStore,
    sleeper: SleepRecorder,
) -> SessionCoordinator:
    return SessionCoordinator(
        identity,
        LocalSyncGateway(db_session, sync_service),
        handoffs,
        max_attempts=3,
        base_delay=1.0,
        sleep=sleeper,
    )


@pytest.fixture
def auth_service(
    cache_manager: CacheManager,
    identity: FakeIdentityProvider,
    coordinator: SessionCoordinator,
) -> AuthService:
    return AuthService(cache_manager, identity, coordinator)


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    fake_redis: InMemoryRedis,
    identity: FakeIdentityProvider,
    sleeper: SleepRecorder,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client wired to the in-memory collaborators."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    def override_coordinator(
        gateway: Annotated[SyncGateway, Depends(get_sync_gateway)],
        cache: Annotated[CacheManager, Depends(get_cache_manager)],
    ) -> SessionCoordinator:
        return SessionCoordinator(
            identity, gateway, HandoffStore(cache), max_attempts=3, base_delay=1.0, sleep=sleeper
        )

    async def override_cancel_event() -> asyncio.Event:
        return asyncio.Event()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = lambda: fake_redis
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_session_coordinator] = override_coordinator
    app.dependency_overrides[get_cancel_event] = override_cancel_event

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def _auth_headers(external_id: str, role: str | None) -> dict[str, str]:
    data: dict[str, Any] = {"sub": external_id}
    if role is not None:
        data["role"] = role
    token = create_access_token(data=data, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """Factory for Bearer headers carrying an application access token."""
    return _auth_headers


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return _auth_headers("uid-admin", "ADMIN")


@pytest.fixture
def patient_headers() -> dict[str, str]:
    return _auth_headers("uid-patient", "PATIENT")
