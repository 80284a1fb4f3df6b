"""Shared test fixtures for the marketplace escrow test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite, BEGIN IMMEDIATE)
    - A pinned clock, the simulated gateway and an in-memory event dispatcher
    - ``market``: a driver that walks requests and payments through their
      lifecycle, one committed unit of work per step
    - ``client``: an httpx client bound to the FastAPI app
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.enums import ProviderType
from marketplace_escrow.domain.identity import ProviderIdentity
from marketplace_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    init_db,
    session_scope,
)
from marketplace_escrow.infrastructure.database.orm_models import Firm, FirmMember
from marketplace_escrow.infrastructure.gateway import SimulatedGateway
from marketplace_escrow.infrastructure.notifications import (
    InMemoryDispatcher,
    get_dispatcher,
    set_dispatcher,
)
from marketplace_escrow.services.escrow_ledger import EscrowLedger
from marketplace_escrow.services.lifecycle_service import RequestLifecycleManager, RequestSpec

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock whose "now" only moves when a test says so."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def database_url(tmp_path) -> str:  # noqa: ANN001
    return f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        app_env="test",
        database_url=database_url,
        gateway_mode="simulated",
        auto_release_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings):  # noqa: ANN201
    engine = build_engine(settings.database_url, settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):  # noqa: ANN001, ANN201
    return build_session_factory(engine)


@pytest.fixture
def dispatcher():  # noqa: ANN201
    previous = get_dispatcher()
    dispatcher = InMemoryDispatcher()
    set_dispatcher(dispatcher)
    yield dispatcher
    set_dispatcher(previous)


@pytest.fixture
def gateway(settings: Settings) -> SimulatedGateway:
    return SimulatedGateway(
        key_secret=settings.gateway_key_secret,
        webhook_secret=settings.gateway_webhook_secret,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------------------------
# Lifecycle Driver
# ---------------------------------------------------------------------------


class Marketplace:
    """Drives the services the way API calls would: one transaction per step."""

    def __init__(self, session_factory, gateway, settings, clock) -> None:  # noqa: ANN001
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    def scope(self):  # noqa: ANN201
        return session_scope(self.session_factory)

    def lifecycle(self, session) -> RequestLifecycleManager:  # noqa: ANN001
        return RequestLifecycleManager(session, settings=self.settings, clock=self.clock)

    def ledger(self, session) -> EscrowLedger:  # noqa: ANN001
        return EscrowLedger(session, self.gateway, self.settings, self.clock)

    async def seed_firm(self, firm_id: str, members: list[dict], is_active: bool = True) -> None:
        async with self.scope() as session:
            session.add(Firm(id=firm_id, name=f"{firm_id} & Associates", is_active=is_active))
            await session.flush()
            for member in members:
                session.add(FirmMember(firm_id=firm_id, **member))

    async def create_request(self, client_id: str = "client-1", **spec):  # noqa: ANN003, ANN201
        spec.setdefault("provider_type", ProviderType.INDIVIDUAL)
        if spec["provider_type"] == ProviderType.INDIVIDUAL:
            spec.setdefault("provider_id", "pro-1")
        async with self.scope() as session:
            return await self.lifecycle(session).create_request(client_id, RequestSpec(**spec))

    async def accept(self, request_id: uuid.UUID, provider_id: str = "pro-1"):  # noqa: ANN201
        async with self.scope() as session:
            return await self.lifecycle(session).accept_request(
                request_id, ProviderIdentity(provider_id, is_verified=True)
            )

    async def start(self, request_id: uuid.UUID, provider_id: str = "pro-1"):  # noqa: ANN201
        async with self.scope() as session:
            return await self.lifecycle(session).start_request(
                request_id, ProviderIdentity(provider_id, is_verified=True)
            )

    async def complete(self, request_id: uuid.UUID, provider_id: str = "pro-1"):  # noqa: ANN201
        async with self.scope() as session:
            return await self.lifecycle(session).complete_request(
                request_id, ProviderIdentity(provider_id, is_verified=True)
            )

    async def accepted_request(self, provider_id: str = "pro-1", **spec):  # noqa: ANN003, ANN201
        request = await self.create_request(**spec)
        return await self.accept(request.id, provider_id)

    async def completed_request(self, provider_id: str = "pro-1", **spec):  # noqa: ANN003, ANN201
        request = await self.accepted_request(provider_id, **spec)
        await self.start(request.id, provider_id)
        return await self.complete(request.id, provider_id)

    async def create_order(self, request_id: uuid.UUID, amount: str = "1000.00"):  # noqa: ANN201
        async with self.scope() as session:
            return await self.ledger(session).create_order(request_id, Decimal(amount))

    async def verify(self, payment, payment_ref: str | None = None):  # noqa: ANN001, ANN201
        payment_ref = payment_ref or f"pay_{payment.id.hex[:14]}"
        signature = self.gateway.sign(payment.gateway_order_ref, payment_ref)
        async with self.scope() as session:
            return await self.ledger(session).verify_payment(payment.id, payment_ref, signature)

    async def held_payment(self, request_id: uuid.UUID, amount: str = "1000.00"):  # noqa: ANN201
        payment = await self.create_order(request_id, amount)
        return await self.verify(payment)

    async def payment(self, payment_id: uuid.UUID):  # noqa: ANN201
        async with self.scope() as session:
            return await self.ledger(session).get_payment(payment_id)

    async def ledger_entries(self, payment_id: uuid.UUID) -> list:
        async with self.scope() as session:
            return await self.ledger(session).get_ledger_entries(payment_id)

    async def events(self, request_id: uuid.UUID) -> list[str]:
        async with self.scope() as session:
            return [e.event_type for e in await self.lifecycle(session).get_events(request_id)]


@pytest.fixture
def market(session_factory, gateway, settings, clock, dispatcher) -> Marketplace:  # noqa: ANN001
    return Marketplace(session_factory, gateway, settings, clock)


# ---------------------------------------------------------------------------
# HTTP Client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def app(session_factory, gateway, dispatcher):  # noqa: ANN001, ANN201
    from marketplace_escrow.domain.identity import default_eligibility
    from marketplace_escrow.main import create_app

    app = create_app()
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.eligibility = default_eligibility
    return app


@pytest_asyncio.fixture
async def client(app):  # noqa: ANN001, ANN201
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def client_headers(client_id: str = "client-1") -> dict[str, str]:
    return {"X-Actor-Id": client_id, "X-Actor-Role": "client"}


def provider_headers(provider_id: str = "pro-1", verified: bool = True) -> dict[str, str]:
    return {
        "X-Actor-Id": provider_id,
        "X-Actor-Role": "provider",
        "X-Provider-Verified": "true" if verified else "false",
    }


def admin_headers(admin_id: str = "ops-1") -> dict[str, str]:
    return {"X-Actor-Id": admin_id, "X-Actor-Role": "admin"}


@pytest.fixture
def headers():  # noqa: ANN201
    """Identity header builders for API tests."""

    class _Headers:
        client = staticmethod(client_headers)
        provider = staticmethod(provider_headers)
        admin = staticmethod(admin_headers)

    return _Headers
