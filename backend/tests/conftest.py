"""
Pytest configuration and fixtures for Countersign backend tests.
"""
import asyncio
import os
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

# Settings are read (and cached) at import time by the app modules.
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key-for-token-hashing-32chars")
os.environ.setdefault("SERVICE_API_KEY", "test-service-api-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("ESIGN_PROVIDER", "mock")
os.environ.setdefault("LEEGALITY_WEBHOOK_SECRET", "test-webhook-secret")

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from countersign.api.ratelimit import limiter
from countersign.config import get_settings
from countersign.domain.signing.factory import build_signing_service
from countersign.domain.signing.workflow import SigningWorkflowService
from countersign.infrastructure.database.connection import get_session, unit_of_work
from countersign.infrastructure.database.models import (
    Base,
    Deal,
    DealEvent,
    DealEventType,
    DealStage,
    SignatureRecord,
    SignerRole,
    SigningToken,
    TokenInvalidationReason,
)
from countersign.infrastructure.delivery.mock import MockOtpDelivery
from countersign.infrastructure.esign.mock_provider import MockESignProvider
from countersign.main import create_app
from countersign.shared.exceptions import AlreadySignedError, StorageConflictError


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def esign_provider() -> MockESignProvider:
    return MockESignProvider(webhook_secret="test-webhook-secret")


@pytest.fixture
def otp_delivery() -> MockOtpDelivery:
    return MockOtpDelivery()


# ----- Database -----


@pytest.fixture
async def async_engine():
    """In-memory SQLite engine with working SAVEPOINT support."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        _ = connection_record
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async test database session."""
    factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with factory() as session:
        yield session


@pytest.fixture
def signing_service(
    async_session: AsyncSession,
    esign_provider: MockESignProvider,
    clock: FakeClock,
) -> SigningWorkflowService:
    """Workflow without the one-time code step; see `otp_signing_service`."""
    settings = get_settings().model_copy(update={"signing_otp_required": False})
    return build_signing_service(async_session, esign_provider, settings=settings, clock=clock)


@pytest.fixture
def otp_signing_service(
    async_session: AsyncSession,
    esign_provider: MockESignProvider,
    otp_delivery: MockOtpDelivery,
    clock: FakeClock,
) -> SigningWorkflowService:
    settings = get_settings().model_copy(update={"signing_otp_required": True})
    return build_signing_service(
        async_session, esign_provider, otp_delivery=otp_delivery, settings=settings, clock=clock
    )


@pytest.fixture
async def ready_deal(signing_service: SigningWorkflowService, async_session: AsyncSession) -> Deal:
    """A contract-ready deal with a provider session for the counterparty."""
    deal = await signing_service.open_deal(
        title="Spring campaign",
        creator_email="creator@example.com",
        creator_name="Casey Creator",
        counterparty_name="Acme Brand",
        counterparty_email="brand@example.com",
    )
    deal = await signing_service.mark_contract_ready(
        deal.id,
        "v1",
        contract_ref="contracts/spring-v1.pdf",
        esign_provider="mock",
        esign_document_id=f"doc-{deal.id.hex[:8]}",
    )
    await async_session.commit()
    return deal


# ----- API -----


@pytest.fixture
def app(
    async_session: AsyncSession,
    esign_provider: MockESignProvider,
    otp_delivery: MockOtpDelivery,
    clock: FakeClock,
) -> FastAPI:
    """Create test FastAPI application bound to the test session."""
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with unit_of_work(async_session):
            yield async_session

    application.dependency_overrides[get_session] = _override_session
    application.state.esign_provider = esign_provider
    application.state.otp_delivery = otp_delivery
    application.state.clock = clock
    limiter.enabled = False
    return application


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


# ----- In-memory repositories -----
# Each yields to the event loop before acting so that concurrent callers
# interleave; the conditional writes themselves are atomic, like single SQL
# statements.


class FakeDealRepository:
    def __init__(self) -> None:
        self.deals: dict[uuid.UUID, Deal] = {}

    def put(self, deal: Deal) -> Deal:
        if deal.id is None:
            deal.id = uuid.uuid4()
        self.deals[deal.id] = deal
        return deal

    async def get_by_id(self, id: uuid.UUID) -> Deal | None:
        await asyncio.sleep(0)
        return self.deals.get(id)

    async def create(self, entity: Deal) -> Deal:
        return self.put(entity)

    async def get_by_esign_document_id(self, document_id: str) -> Deal | None:
        await asyncio.sleep(0)
        for deal in self.deals.values():
            if deal.esign_document_id == document_id:
                return deal
        return None

    async def compare_and_set_stage(
        self,
        deal_id: uuid.UUID,
        expected: DealStage,
        new_stage: DealStage,
        changed_at: datetime,
        **values: Any,
    ) -> bool:
        await asyncio.sleep(0)
        deal = self.deals.get(deal_id)
        if deal is None or DealStage(deal.stage) != expected:
            return False
        deal.stage = new_stage
        deal.stage_changed_at = changed_at
        for key, value in values.items():
            setattr(deal, key, value)
        return True

    async def list_awaiting_provider(self, limit: int = 100) -> Sequence[Deal]:
        return [
            deal
            for deal in self.deals.values()
            if DealStage(deal.stage) == DealStage.CONTRACT_READY and deal.esign_document_id
        ][:limit]


class FakeEventRepository:
    def __init__(self) -> None:
        self.events: list[DealEvent] = []

    async def record(
        self,
        deal_id: uuid.UUID,
        event: DealEventType,
        occurred_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> DealEvent:
        entry = DealEvent(
            deal_id=deal_id, event=event, event_metadata=metadata or {}, occurred_at=occurred_at
        )
        self.events.append(entry)
        return entry

    def of_type(self, event: DealEventType) -> list[DealEvent]:
        return [entry for entry in self.events if entry.event == event]


class FakeSignatureRepository:
    def __init__(self) -> None:
        self.records: list[SignatureRecord] = []
        self.insert_attempts = 0

    def _find(self, deal_id: uuid.UUID, role: SignerRole, version: str) -> SignatureRecord | None:
        for record in self.records:
            if (
                record.deal_id == deal_id
                and SignerRole(record.role) == role
                and record.contract_version == version
            ):
                return record
        return None

    async def get_signed(
        self, deal_id: uuid.UUID, role: SignerRole, contract_version: str
    ) -> SignatureRecord | None:
        await asyncio.sleep(0)
        return self._find(deal_id, role, contract_version)

    async def list_for_version(
        self, deal_id: uuid.UUID, contract_version: str
    ) -> Sequence[SignatureRecord]:
        await asyncio.sleep(0)
        return [
            r for r in self.records if r.deal_id == deal_id and r.contract_version == contract_version
        ]

    async def add_signed(self, record: SignatureRecord) -> SignatureRecord:
        await asyncio.sleep(0)
        self.insert_attempts += 1
        role = SignerRole(record.role)
        if self._find(record.deal_id, role, record.contract_version) is not None:
            raise AlreadySignedError(str(record.deal_id), role.value, record.contract_version)
        self.records.append(record)
        return record


class FakeTokenRepository:
    def __init__(self) -> None:
        self.tokens: dict[uuid.UUID, SigningToken] = {}
        self.contention_failures = 0

    async def get_by_hash(self, token_hash: str) -> SigningToken | None:
        await asyncio.sleep(0)
        for token in self.tokens.values():
            if token.token_hash == token_hash:
                return token
        return None

    async def get_valid_for(self, deal_id: uuid.UUID, role: SignerRole) -> SigningToken | None:
        for token in self.tokens.values():
            if token.deal_id == deal_id and token.role == role and token.is_valid:
                return token
        return None

    async def add(self, token: SigningToken) -> SigningToken:
        await asyncio.sleep(0)
        if token.id is None:
            token.id = uuid.uuid4()
        for other in self.tokens.values():
            if other.deal_id == token.deal_id and other.role == token.role and other.is_valid:
                raise StorageConflictError("valid token already exists")
        self.tokens[token.id] = token
        return token

    async def invalidate_valid(
        self, deal_id: uuid.UUID, role: SignerRole, reason: TokenInvalidationReason
    ) -> int:
        count = 0
        for token in self.tokens.values():
            if token.deal_id == deal_id and token.role == role and token.is_valid:
                token.is_valid = False
                token.invalidated_reason = reason
                count += 1
        return count

    async def invalidate_all_for_deal(
        self, deal_id: uuid.UUID, reason: TokenInvalidationReason
    ) -> int:
        count = 0
        for token in self.tokens.values():
            if token.deal_id == deal_id and token.is_valid:
                token.is_valid = False
                token.invalidated_reason = reason
                count += 1
        return count

    async def mark_expired(self, token_id: uuid.UUID) -> bool:
        token = self.tokens[token_id]
        if not token.is_valid or token.consumed_at is not None:
            return False
        token.is_valid = False
        token.invalidated_reason = TokenInvalidationReason.EXPIRED
        return True

    async def set_otp(self, token_id: uuid.UUID, otp_hash: str, expires_at: datetime) -> bool:
        await asyncio.sleep(0)
        token = self.tokens.get(token_id)
        if token is None or not token.is_valid or token.consumed_at is not None:
            return False
        token.otp_hash = otp_hash
        token.otp_expires_at = expires_at
        token.otp_attempts = 0
        token.otp_verified_at = None
        return True

    async def record_otp_failure(self, token_id: uuid.UUID, max_attempts: int) -> bool:
        await asyncio.sleep(0)
        token = self.tokens[token_id]
        if (token.otp_attempts or 0) >= max_attempts:
            return False
        token.otp_attempts = (token.otp_attempts or 0) + 1
        return True

    async def mark_otp_verified(self, token_id: uuid.UUID, now: datetime) -> bool:
        await asyncio.sleep(0)
        token = self.tokens[token_id]
        if not token.is_valid or token.otp_hash is None or token.otp_verified_at is not None:
            return False
        token.otp_verified_at = now
        return True

    async def consume(
        self, token_id: uuid.UUID, now: datetime, *, require_otp: bool = False
    ) -> bool:
        await asyncio.sleep(0)
        if self.contention_failures:
            self.contention_failures -= 1
            raise StorageConflictError("could not obtain lock")
        token = self.tokens.get(token_id)
        if (
            token is None
            or not token.is_valid
            or token.consumed_at is not None
            or token.expires_at <= now
            or (require_otp and token.otp_verified_at is None)
        ):
            return False
        token.consumed_at = now
        token.is_valid = False
        token.invalidated_reason = TokenInvalidationReason.CONSUMED
        return True

    async def purge_expired(self, before: datetime) -> int:
        expired = [tid for tid, t in self.tokens.items() if t.expires_at < before]
        for tid in expired:
            del self.tokens[tid]
        return len(expired)


class FakeTransaction:
    @asynccontextmanager
    async def _nested(self) -> AsyncIterator[None]:
        yield

    def begin_nested(self) -> Any:
        return self._nested()


class FakeStore:
    """One in-memory "database" shared by all fake repositories."""

    def __init__(self) -> None:
        self.deals = FakeDealRepository()
        self.events = FakeEventRepository()
        self.signatures = FakeSignatureRepository()
        self.tokens = FakeTokenRepository()
        self.transaction = FakeTransaction()

    def add_deal(
        self,
        stage: DealStage = DealStage.CONTRACT_READY,
        contract_version: str | None = "v1",
        esign_document_id: str | None = "doc-1",
    ) -> Deal:
        return self.deals.put(
            Deal(
                id=uuid.uuid4(),
                title="Launch post",
                creator_name="Casey Creator",
                creator_email="creator@example.com",
                counterparty_name="Acme Brand",
                counterparty_email="brand@example.com",
                stage=stage,
                contract_version=contract_version,
                esign_document_id=esign_document_id,
                esign_contract_version=contract_version if esign_document_id else None,
            )
        )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
