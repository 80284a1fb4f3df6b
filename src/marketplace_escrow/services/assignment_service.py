"""Assignment Resolver - binds requests to providers and splits firm payments.

For individual requests the provider is whoever the client targeted (or
whoever accepts). For firm requests the resolver decides which member does
the work:

    SPECIFIC_CA     the client named the member; membership is validated.
    SENIOR_ONLY     top-scoring active SENIOR or ADMIN member.
    BEST_AVAILABLE  top-scoring active member.

Scoring blends three signals into [0, 1]:

    0.50 * specialization match (service_type in the member's list)
    0.25 * rating / 5
    0.25 * 1 / (1 + active requests)

Ties go to the member with the lowest current workload, then to the lowest
member id, so the choice is deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import (
    SENIOR_ROLES,
    AssignmentPreference,
    ProviderType,
)
from marketplace_escrow.domain.exceptions import (
    FirmNotFoundError,
    InvalidDistributionError,
    NotEligibleError,
    ValidationError,
)
from marketplace_escrow.domain.fees import allocate_shares, shares_total
from marketplace_escrow.infrastructure.database.repositories import (
    FirmRepository,
    RequestRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.fees import ShareAllocation
    from marketplace_escrow.infrastructure.database.orm_models import (
        Firm,
        FirmMember,
        ServiceRequest,
    )

logger = get_logger(__name__)

SPECIALIZATION_WEIGHT = 0.5
RATING_WEIGHT = 0.25
WORKLOAD_WEIGHT = 0.25
MAX_RATING = 5.0


@dataclass(frozen=True)
class MemberScore:
    member_id: str
    score: float
    active_requests: int
    specialization_match: bool
    rating: float


def score_member(member: FirmMember, service_type: str | None, active_requests: int) -> MemberScore:
    specializations = {s.lower() for s in (member.specializations or [])}
    matched = bool(service_type) and service_type.lower() in specializations
    rating = max(0.0, min(float(member.rating or 0.0), MAX_RATING))
    score = (
        SPECIALIZATION_WEIGHT * (1.0 if matched else 0.0)
        + RATING_WEIGHT * (rating / MAX_RATING)
        + WORKLOAD_WEIGHT * (1.0 / (1 + active_requests))
    )
    return MemberScore(
        member_id=member.member_id,
        score=score,
        active_requests=active_requests,
        specialization_match=matched,
        rating=rating,
    )


class AssignmentResolver:
    """Firm membership rules, member selection, and distribution building."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._firm_repo = FirmRepository(session)
        self._request_repo = RequestRepository(session)

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    async def resolve_provider(
        self,
        request: ServiceRequest,
        preference: AssignmentPreference | None = None,
        member_id: str | None = None,
    ) -> str:
        """Return the provider id the request should bind to.

        Raises:
            ValidationError: No provider can be derived from the input.
            NotEligibleError: The named member may not take the request, or no
                active member qualifies.
            FirmNotFoundError: The firm does not exist.
        """
        if request.provider_type == ProviderType.INDIVIDUAL.value:
            provider_id = member_id or request.provider_id
            if provider_id is None:
                raise ValidationError("Individual requests need a provider to bind to")
            return provider_id

        preference = preference or _preference_of(request)
        if preference == AssignmentPreference.SPECIFIC_CA:
            target = member_id or request.provider_id
            if target is None:
                raise ValidationError(
                    "SPECIFIC_CA requests must name a firm member",
                    details={"firm_id": request.firm_id},
                )
            await self.require_member(request.firm_id, target, preference)
            return target

        ranking = await self.rank_members(
            request.firm_id,
            service_type=request.service_type,
            senior_only=preference == AssignmentPreference.SENIOR_ONLY,
        )
        if not ranking:
            raise NotEligibleError(
                "No active firm member is eligible for this request",
                details={"firm_id": request.firm_id, "preference": preference.value},
            )
        best = ranking[0]
        logger.info(
            "assignment.resolved",
            request_id=str(request.id),
            firm_id=request.firm_id,
            member_id=best.member_id,
            score=round(best.score, 4),
        )
        return best.member_id

    async def rank_members(
        self,
        firm_id: str,
        service_type: str | None = None,
        senior_only: bool = False,
    ) -> list[MemberScore]:
        """Score every eligible active member, best first."""
        await self.get_active_firm(firm_id)
        members = await self._firm_repo.get_active_members(firm_id)
        if senior_only:
            members = [m for m in members if m.role in SENIOR_ROLES]
        workload = await self._request_repo.count_active_by_provider(
            [m.member_id for m in members]
        )
        scores = [score_member(m, service_type, workload.get(m.member_id, 0)) for m in members]
        scores.sort(key=lambda s: (-round(s.score, 9), s.active_requests, s.member_id))
        return scores

    async def validate_acceptor(self, request: ServiceRequest, member_id: str) -> FirmMember:
        """Check that ``member_id`` may accept this firm request.

        Raises:
            NotEligibleError: Not an active member, not senior enough, or not
                the member the client asked for.
        """
        preference = _preference_of(request)
        member = await self.require_member(request.firm_id, member_id, preference)
        if (
            preference == AssignmentPreference.SPECIFIC_CA
            and request.provider_id is not None
            and request.provider_id != member_id
        ):
            raise NotEligibleError(
                "The client requested a specific firm member",
                details={"requested_member_id": request.provider_id, "member_id": member_id},
            )
        return member

    async def get_active_firm(self, firm_id: str | None) -> Firm:
        if firm_id is None:
            raise ValidationError("Firm requests need a firm_id")
        firm = await self._firm_repo.get_by_id(firm_id)
        if firm is None:
            raise FirmNotFoundError(firm_id)
        if not firm.is_active:
            raise NotEligibleError("Firm is not active", details={"firm_id": firm_id})
        return firm

    async def require_member(
        self,
        firm_id: str | None,
        member_id: str,
        preference: AssignmentPreference | None,
    ) -> FirmMember:
        await self.get_active_firm(firm_id)
        member = await self._firm_repo.get_member(firm_id, member_id)
        if member is None or not member.is_active:
            raise NotEligibleError(
                "Provider is not an active member of this firm",
                details={"firm_id": firm_id, "member_id": member_id},
            )
        if preference == AssignmentPreference.SENIOR_ONLY and member.role not in SENIOR_ROLES:
            raise NotEligibleError(
                "This request requires a senior firm member",
                details={"firm_id": firm_id, "member_id": member_id, "role": member.role},
            )
        return member

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    async def build_distribution(
        self,
        firm_id: str,
        payment_amount: Decimal,
        shares: list[tuple[str, float]] | None = None,
    ) -> list[ShareAllocation]:
        """Split ``payment_amount`` across firm members.

        Uses the custom ``shares`` when given, otherwise the members'
        ``default_share_percent`` template. Every member in a custom split
        must be an active member of the firm.

        Raises:
            InvalidDistributionError: Percentages do not total 100 (within
                the configured epsilon), or the split is otherwise malformed.
        """
        await self.get_active_firm(firm_id)
        members = {m.member_id: m for m in await self._firm_repo.get_active_members(firm_id)}

        if shares is None:
            shares = [
                (m.member_id, m.default_share_percent)
                for m in members.values()
                if m.default_share_percent
            ]
            if not shares:
                raise InvalidDistributionError("Firm has no default share template")
        else:
            strangers = sorted({member_id for member_id, _ in shares} - set(members))
            if strangers:
                raise InvalidDistributionError(
                    f"Not active members of firm {firm_id}: {', '.join(strangers)}"
                )

        try:
            allocations = allocate_shares(
                payment_amount, shares, epsilon=self._settings.distribution_epsilon
            )
        except ValueError as exc:
            raise InvalidDistributionError(
                str(exc), total_percentage=shares_total([pct for _, pct in shares])
            ) from exc

        logger.info(
            "assignment.distribution_built",
            firm_id=firm_id,
            amount=str(payment_amount),
            shares=len(allocations),
        )
        return allocations


def _preference_of(request: ServiceRequest) -> AssignmentPreference:
    if request.assignment_preference:
        return AssignmentPreference(request.assignment_preference)
    return AssignmentPreference.BEST_AVAILABLE
