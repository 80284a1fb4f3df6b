"""Tests for firm requests: member scoring, binding rules and share templates."""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio

from marketplace_escrow.domain.enums import AssignmentPreference, ProviderType, RequestStatus
from marketplace_escrow.domain.exceptions import (
    FirmNotFoundError,
    InvalidDistributionError,
    NotEligibleError,
    ValidationError,
)
from marketplace_escrow.services.assignment_service import AssignmentResolver

FIRM = "firm-1"

MEMBERS = [
    {
        "member_id": "m-alice",
        "role": "SENIOR",
        "specializations": ["gst_filing"],
        "rating": 4.0,
        "default_share_percent": 50.0,
    },
    {
        "member_id": "m-bob",
        "role": "MEMBER",
        "specializations": ["audit"],
        "rating": 5.0,
        "default_share_percent": 30.0,
    },
    {
        "member_id": "m-carol",
        "role": "ADMIN",
        "specializations": [],
        "rating": 3.0,
        "default_share_percent": 20.0,
    },
]


@pytest_asyncio.fixture
async def firm(market):  # noqa: ANN001, ANN201
    await market.seed_firm(FIRM, MEMBERS)
    return FIRM


def firm_spec(**overrides):  # noqa: ANN003, ANN201
    spec = {"provider_type": ProviderType.FIRM, "firm_id": FIRM}
    spec.update(overrides)
    return spec


class TestRanking:
    @pytest.mark.asyncio
    async def test_specialization_dominates(self, market, firm) -> None:  # noqa: ANN001
        async with market.scope() as session:
            ranking = await AssignmentResolver(session, market.settings).rank_members(
                firm, service_type="gst_filing"
            )
        assert [s.member_id for s in ranking] == ["m-alice", "m-bob", "m-carol"]
        assert ranking[0].specialization_match
        assert ranking[0].score == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_senior_only_excludes_members(self, market, firm) -> None:  # noqa: ANN001
        async with market.scope() as session:
            ranking = await AssignmentResolver(session, market.settings).rank_members(
                firm, service_type="audit", senior_only=True
            )
        assert [s.member_id for s in ranking] == ["m-alice", "m-carol"]

    @pytest.mark.asyncio
    async def test_ties_break_on_member_id(self, market) -> None:  # noqa: ANN001
        twin = {"role": "MEMBER", "specializations": [], "rating": 4.0}
        await market.seed_firm(
            "firm-twins", [{"member_id": "m-b", **twin}, {"member_id": "m-a", **twin}]
        )
        async with market.scope() as session:
            ranking = await AssignmentResolver(session, market.settings).rank_members("firm-twins")
        assert [s.member_id for s in ranking] == ["m-a", "m-b"]

    @pytest.mark.asyncio
    async def test_workload_lowers_score(self, market) -> None:  # noqa: ANN001
        twin = {"role": "MEMBER", "specializations": [], "rating": 4.0}
        await market.seed_firm(
            "firm-busy", [{"member_id": "m-a", **twin}, {"member_id": "m-b", **twin}]
        )
        busy = await market.create_request(provider_id="m-a")
        await market.accept(busy.id, "m-a")

        async with market.scope() as session:
            ranking = await AssignmentResolver(session, market.settings).rank_members("firm-busy")
        assert [s.member_id for s in ranking] == ["m-b", "m-a"]
        assert ranking[1].active_requests == 1


class TestFirmRequests:
    @pytest.mark.asyncio
    async def test_auto_assign_picks_best_member(self, market, firm) -> None:  # noqa: ANN001
        request = await market.create_request(**firm_spec(service_type="gst_filing"))
        assert request.provider_id is None
        assert request.assignment_preference == "BEST_AVAILABLE"

        async with market.scope() as session:
            assigned = await market.lifecycle(session).auto_assign(request.id)
        assert assigned.status == RequestStatus.ACCEPTED
        assert assigned.provider_id == "m-alice"
        assert assigned.assignment_method == "AUTO"

    @pytest.mark.asyncio
    async def test_senior_only_auto_assign(self, market, firm) -> None:  # noqa: ANN001
        request = await market.create_request(
            **firm_spec(
                service_type="audit", assignment_preference=AssignmentPreference.SENIOR_ONLY
            )
        )
        async with market.scope() as session:
            assigned = await market.lifecycle(session).auto_assign(request.id)
        assert assigned.provider_id == "m-alice"

    @pytest.mark.asyncio
    async def test_specific_member_is_bound_at_creation(self, market, firm) -> None:  # noqa: ANN001
        request = await market.create_request(
            **firm_spec(
                provider_id="m-bob", assignment_preference=AssignmentPreference.SPECIFIC_CA
            )
        )
        assert request.provider_id == "m-bob"

        with pytest.raises(NotEligibleError):
            await market.accept(request.id, "m-carol")
        accepted = await market.accept(request.id, "m-bob")
        assert accepted.assignment_method == "CLIENT_SPECIFIED"

    @pytest.mark.asyncio
    async def test_specific_member_must_be_named(self, market, firm) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError):
            await market.create_request(
                **firm_spec(assignment_preference=AssignmentPreference.SPECIFIC_CA)
            )

    @pytest.mark.asyncio
    async def test_junior_member_cannot_accept_senior_only(self, market, firm) -> None:  # noqa: ANN001
        request = await market.create_request(
            **firm_spec(assignment_preference=AssignmentPreference.SENIOR_ONLY)
        )
        with pytest.raises(NotEligibleError):
            await market.accept(request.id, "m-bob")
        accepted = await market.accept(request.id, "m-carol")
        assert accepted.assignment_method == "PROVIDER_ACCEPTED"

    @pytest.mark.asyncio
    async def test_outsider_cannot_accept(self, market, firm) -> None:  # noqa: ANN001
        request = await market.create_request(**firm_spec())
        with pytest.raises(NotEligibleError):
            await market.accept(request.id, "pro-1")

    @pytest.mark.asyncio
    async def test_unknown_firm(self, market) -> None:  # noqa: ANN001
        with pytest.raises(FirmNotFoundError):
            await market.create_request(**firm_spec(firm_id="firm-missing"))

    @pytest.mark.asyncio
    async def test_inactive_firm(self, market) -> None:  # noqa: ANN001
        await market.seed_firm("firm-closed", MEMBERS[:1], is_active=False)
        with pytest.raises(NotEligibleError):
            await market.create_request(**firm_spec(firm_id="firm-closed"))

    @pytest.mark.asyncio
    async def test_individual_request_rejects_firm_fields(self, market) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError):
            await market.create_request(firm_id=FIRM)


class TestDistributionTemplate:
    @pytest.mark.asyncio
    async def test_default_template(self, market, firm) -> None:  # noqa: ANN001
        async with market.scope() as session:
            allocations = await AssignmentResolver(session, market.settings).build_distribution(
                firm, Decimal("850.00")
            )
        assert {a.member_id: a.amount for a in allocations} == {
            "m-alice": Decimal("425.00"),
            "m-bob": Decimal("255.00"),
            "m-carol": Decimal("170.00"),
        }

    @pytest.mark.asyncio
    async def test_custom_split_must_total_one_hundred(self, market, firm) -> None:  # noqa: ANN001
        async with market.scope() as session:
            resolver = AssignmentResolver(session, market.settings)
            with pytest.raises(InvalidDistributionError) as exc_info:
                await resolver.build_distribution(
                    firm, Decimal("850.00"), [("m-alice", 60.0), ("m-bob", 30.0)]
                )
        assert exc_info.value.details["total_percentage"] == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_custom_split_only_for_members(self, market, firm) -> None:  # noqa: ANN001
        async with market.scope() as session:
            resolver = AssignmentResolver(session, market.settings)
            with pytest.raises(InvalidDistributionError):
                await resolver.build_distribution(
                    firm, Decimal("850.00"), [("m-alice", 50.0), ("stranger", 50.0)]
                )
