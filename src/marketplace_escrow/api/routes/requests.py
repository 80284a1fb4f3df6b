"""Service request REST API routes.

Routes:
    POST   /api/v1/requests                - Client creates a request
    GET    /api/v1/requests/{id}           - Get request details
    GET    /api/v1/requests/{id}/status    - Status and allowed next events
    GET    /api/v1/requests/{id}/events    - Audit trail (request + payments)
    POST   /api/v1/requests/{id}/accept    - Provider accepts (exclusive)
    POST   /api/v1/requests/{id}/reject    - Targeted provider declines
    POST   /api/v1/requests/{id}/start     - Bound provider starts work
    POST   /api/v1/requests/{id}/complete  - Bound provider completes work
    POST   /api/v1/requests/{id}/cancel    - Client or bound provider cancels
    POST   /api/v1/requests/{id}/assign    - Auto-assign a firm request
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import (
    get_actor,
    get_db_session,
    get_eligibility,
    get_provider_identity,
    require_admin,
    require_client,
)
from marketplace_escrow.domain.identity import Actor, EligibilityCheck, ProviderIdentity
from marketplace_escrow.schemas.common import AuditEventResponse
from marketplace_escrow.schemas.requests import (
    CancellationResponse,
    CreateServiceRequest,
    ReasonRequest,
    RequestStatusResponse,
    ServiceRequestResponse,
)
from marketplace_escrow.services.lifecycle_service import RequestLifecycleManager, RequestSpec

router = APIRouter(prefix="/api/v1/requests", tags=["Requests"])


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ServiceRequestResponse,
    status_code=201,
    summary="Create a service request",
)
async def create_request(
    body: CreateServiceRequest,
    client: Actor = Depends(require_client),
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    """Create a request in PENDING state (at most 3 pending per client)."""
    svc = RequestLifecycleManager(session)
    request = await svc.create_request(
        client.actor_id,
        RequestSpec(
            provider_type=body.provider_type,
            provider_id=body.provider_id,
            firm_id=body.firm_id,
            assignment_preference=body.assignment_preference,
            service_type=body.service_type,
            description=body.description,
        ),
    )
    return ServiceRequestResponse.model_validate(request)


# ---------------------------------------------------------------------------
# Provider transitions
# ---------------------------------------------------------------------------


@router.post(
    "/{request_id}/accept",
    response_model=ServiceRequestResponse,
    summary="Provider accepts a pending request",
)
async def accept_request(
    request_id: uuid.UUID,
    identity: ProviderIdentity = Depends(get_provider_identity),
    eligibility: EligibilityCheck = Depends(get_eligibility),
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    """PENDING -> ACCEPTED. Concurrent losers get 409 ALREADY_ACCEPTED."""
    svc = RequestLifecycleManager(session, eligibility=eligibility)
    request = await svc.accept_request(request_id, identity)
    return ServiceRequestResponse.model_validate(request)


@router.post(
    "/{request_id}/reject",
    response_model=ServiceRequestResponse,
    summary="Targeted provider rejects a pending request",
)
async def reject_request(
    request_id: uuid.UUID,
    body: ReasonRequest | None = None,
    identity: ProviderIdentity = Depends(get_provider_identity),
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    svc = RequestLifecycleManager(session)
    request = await svc.reject_request(request_id, identity, reason=body.reason if body else None)
    return ServiceRequestResponse.model_validate(request)


@router.post(
    "/{request_id}/start",
    response_model=ServiceRequestResponse,
    summary="Bound provider starts work",
)
async def start_request(
    request_id: uuid.UUID,
    identity: ProviderIdentity = Depends(get_provider_identity),
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    svc = RequestLifecycleManager(session)
    request = await svc.start_request(request_id, identity)
    return ServiceRequestResponse.model_validate(request)


@router.post(
    "/{request_id}/complete",
    response_model=ServiceRequestResponse,
    summary="Bound provider completes work",
)
async def complete_request(
    request_id: uuid.UUID,
    identity: ProviderIdentity = Depends(get_provider_identity),
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    svc = RequestLifecycleManager(session)
    request = await svc.complete_request(request_id, identity)
    return ServiceRequestResponse.model_validate(request)


@router.post(
    "/{request_id}/cancel",
    response_model=CancellationResponse,
    summary="Cancel a request",
)
async def cancel_request(
    request_id: uuid.UUID,
    body: ReasonRequest | None = None,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> CancellationResponse:
    """Any in-flight payment moves to REFUND_PENDING; the refund itself is manual."""
    svc = RequestLifecycleManager(session)
    result = await svc.cancel_request(request_id, actor, reason=body.reason if body else None)
    return CancellationResponse(
        request=ServiceRequestResponse.model_validate(result.request),
        refund_pending_payment_id=result.refund_pending_payment_id,
    )


@router.post(
    "/{request_id}/assign",
    response_model=ServiceRequestResponse,
    summary="Auto-assign a firm request to its best member",
)
async def auto_assign(
    request_id: uuid.UUID,
    _admin: Actor = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    svc = RequestLifecycleManager(session)
    request = await svc.auto_assign(request_id)
    return ServiceRequestResponse.model_validate(request)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{request_id}",
    response_model=ServiceRequestResponse,
    summary="Get request details",
)
async def get_request(
    request_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> ServiceRequestResponse:
    svc = RequestLifecycleManager(session)
    request = await svc.get_request(request_id)
    return ServiceRequestResponse.model_validate(request)


@router.get(
    "/{request_id}/status",
    response_model=RequestStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    request_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> RequestStatusResponse:
    """Return the current status and allowed next events."""
    svc = RequestLifecycleManager(session)
    return RequestStatusResponse(**await svc.get_status(request_id))


@router.get(
    "/{request_id}/events",
    response_model=list[AuditEventResponse],
    summary="Get audit trail",
)
async def get_events(
    request_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> list[AuditEventResponse]:
    """Return the full audit trail of a request and its payments."""
    svc = RequestLifecycleManager(session)
    events = await svc.get_events(request_id)
    return [AuditEventResponse.model_validate(e) for e in events]
