"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the payment gateway, the eligibility capability, and caller identities.

Authentication happens upstream; the authenticated identity arrives in the
``X-Actor-Id`` / ``X-Actor-Role`` headers (``X-Provider-Verified`` for
providers).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import ActorRole
from marketplace_escrow.domain.exceptions import NotEligibleError, ValidationError
from marketplace_escrow.domain.identity import Actor, ProviderIdentity, default_eligibility
from marketplace_escrow.infrastructure.database.engine import get_session_factory, session_scope
from marketplace_escrow.infrastructure.gateway import build_gateway

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.gateway_protocol import PaymentGateway
    from marketplace_escrow.domain.identity import EligibilityCheck


def get_app_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """The app's session factory (set in lifespan), or the global one."""
    factory = getattr(request.app.state, "session_factory", None)
    return factory or get_session_factory()


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async with session_scope(get_app_session_factory(request)) as session:
        yield session


def get_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = build_gateway()
        request.app.state.gateway = gateway
    return gateway


def get_eligibility(request: Request) -> EligibilityCheck:
    return getattr(request.app.state, "eligibility", None) or default_eligibility


def get_actor(
    x_actor_id: str = Header(..., min_length=1, max_length=64),
    x_actor_role: str = Header(...),
) -> Actor:
    """Resolve the calling actor from the identity headers."""
    try:
        role = ActorRole(x_actor_role.upper())
    except ValueError as exc:
        raise ValidationError(
            "Unknown actor role", details={"role": x_actor_role}
        ) from exc
    return Actor(actor_id=x_actor_id, role=role)


def get_provider_identity(
    actor: Actor = Depends(get_actor),
    x_provider_verified: bool = Header(False),
) -> ProviderIdentity:
    if actor.role != ActorRole.PROVIDER:
        raise NotEligibleError("Provider role required", details={"role": actor.role.value})
    return ProviderIdentity(provider_id=actor.actor_id, is_verified=x_provider_verified)


def require_client(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != ActorRole.CLIENT:
        raise NotEligibleError("Client role required", details={"role": actor.role.value})
    return actor


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
        raise NotEligibleError("Administrator role required", details={"role": actor.role.value})
    return actor


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
