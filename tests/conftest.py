"""
Pytest configuration and fixtures for AUTOYIELD tests.
"""

import base64
import os

# Settings are read on first import; pin the test environment before that.
os.environ["DATA_ENCRYPTION_KEY"] = base64.urlsafe_b64encode(b"k" * 32).decode()
os.environ["JWT_SECRET"] = "test-jwt-secret-that-is-long-enough-000"
os.environ["CRON_SECRET"] = "test-cron-secret-that-is-long-enough-00"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["SENTRY_DSN"] = ""
os.environ.pop("AGENT_SIMULATION_MODE", None)

from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from eth_account import Account
from eth_keys import keys
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from autoyield.core.circuit_breaker import AsyncCircuitBreaker
from autoyield.core.config import get_settings
from autoyield.core.security import CryptoService
from autoyield.db.models import Base
from autoyield.models.opportunity import Position, Protocol, YieldOpportunity
from autoyield.models.session import SignedAuthorization
from autoyield.services.session_service import authorization_digest


# Use an in-memory SQLite database for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
VAULT_A = "0x1111111111111111111111111111111111111111"
VAULT_B = "0x2222222222222222222222222222222222222222"
VAULT_C = "0x3333333333333333333333333333333333333333"
RECIPIENT = "0x4444444444444444444444444444444444444444"
DELEGATE = "0x5555555555555555555555555555555555555555"

OWNER_KEY = "0x" + "4c" * 32


@pytest.fixture(autouse=True)
def _isolate_state(monkeypatch):
    """Fresh settings, closed breakers and no cached singletons per test."""
    monkeypatch.delenv("AGENT_SIMULATION_MODE", raising=False)
    monkeypatch.setattr("autoyield.services.rate_limiter._rate_limiter", None)
    monkeypatch.setattr("autoyield.services.opportunity_service._opportunity_service", None)
    monkeypatch.setattr("autoyield.services.relay_client._relay_client", None)
    get_settings.cache_clear()
    AsyncCircuitBreaker.reset_all()

    yield

    get_settings.cache_clear()
    AsyncCircuitBreaker.reset_all()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def crypto() -> CryptoService:
    return CryptoService()


@pytest.fixture
def owner():
    """The smart account owner (EIP-7702: the account is the owner's EOA)"""
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def sign_authorization() -> Callable[..., SignedAuthorization]:
    """Sign an EIP-7702 authorization tuple with a raw private key."""

    def _sign(private_key: str, address: str, nonce: int = 0, chain_id: int = 84532):
        unsigned = SignedAuthorization(
            chain_id=chain_id, address=address, nonce=nonce, y_parity=0, r="0x0", s="0x0"
        )
        signature = keys.PrivateKey(bytes.fromhex(private_key[2:])).sign_msg_hash(
            authorization_digest(unsigned)
        )
        return SignedAuthorization(
            chain_id=chain_id,
            address=address,
            nonce=nonce,
            y_parity=signature.v,
            r=hex(signature.r),
            s=hex(signature.s),
        )

    return _sign


@pytest.fixture
def make_opportunity() -> Callable[..., YieldOpportunity]:
    def _make(
        address: str = VAULT_A,
        apy: float = 0.05,
        risk_score: float = 0.15,
        protocol: Protocol = Protocol.MORPHO,
        name: str = "",
    ) -> YieldOpportunity:
        return YieldOpportunity(
            id=f"{protocol.value}-{address.lower()}",
            protocol=protocol,
            name=name or f"{protocol.value} {address[:8]}",
            asset=USDC,
            address=address,
            apy=apy,
            tvl=5_000_000 * 10**6,
            risk_score=risk_score,
            liquidity_depth=5_000_000 * 10**6,
        )

    return _make


@pytest.fixture
def make_position() -> Callable[..., Position]:
    def _make(
        vault_address: str = VAULT_A,
        apy: float = 0.05,
        assets: int = 1_000 * 10**6,
        protocol: Protocol = Protocol.MORPHO,
        entered_at: int = 0,
    ) -> Position:
        return Position(
            protocol=protocol,
            vault_address=vault_address,
            shares=assets,
            assets=assets,
            apy=apy,
            entered_at=entered_at,
        )

    return _make


@pytest.fixture
def mock_redis_service():
    """Mock RedisService with lock and cache operations."""
    redis = MagicMock()
    redis.redis = AsyncMock()
    redis.ping = AsyncMock(return_value=True)
    redis.acquire_lock = AsyncMock(return_value="lock-token")
    redis.release_lock = AsyncMock(return_value=True)
    redis.is_locked = AsyncMock(return_value=False)
    redis.cache_get = AsyncMock(return_value=None)
    redis.cache_set = AsyncMock(return_value=True)
    redis.close = AsyncMock()
    return redis
