"""Actor identities and the eligibility capability.

Authentication is outside the core: callers hand in an already-resolved
identity. Whether a provider may accept a given request is decided by an
injected ``EligibilityCheck`` rather than hard-coded role strings, so new
provider types can be added without touching the state machine.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from marketplace_escrow.domain.enums import ActorRole, ProviderType


@dataclass(frozen=True)
class ProviderIdentity:
    """An authenticated provider (individual professional or firm member)."""

    provider_id: str
    is_verified: bool = False


@dataclass(frozen=True)
class Actor:
    """Whoever triggers a transition; recorded in the audit trail."""

    actor_id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(actor_id="SYSTEM", role=ActorRole.SYSTEM)

# (identity, request) -> bool. The request is the ORM row, typed loosely to
# keep the domain layer free of SQLAlchemy imports.
EligibilityCheck = Callable[[ProviderIdentity, Any], bool]


def default_eligibility(identity: ProviderIdentity, request: Any) -> bool:
    """Verified providers only; individual requests honour their target.

    Firm membership is not checked here: it needs the firm roster and is
    validated by the AssignmentResolver.
    """
    if not identity.is_verified:
        return False
    if request.provider_type == ProviderType.INDIVIDUAL.value:
        return request.provider_id in (None, identity.provider_id)
    return True
