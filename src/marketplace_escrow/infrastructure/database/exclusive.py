"""Exclusive transitions as conditional UPDATEs.

Every transition that must be won by exactly one caller (accepting a
request, booking a slot, moving a payment between ledger states, crediting a
share) is expressed as a single statement:

    UPDATE <table> SET <values> WHERE id = :id AND <expected prior state>

The database applies it atomically, so ``rowcount == 1`` means the caller
won and ``0`` means the row was missing or had already moved on. Callers
that lose re-read the row to tell those two cases apart.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

logger = get_logger(__name__)


async def guarded_update(
    session: AsyncSession,
    model: type,
    entity_id: Any,
    *conditions: ColumnElement[bool],
    **values: Any,
) -> bool:
    """Apply ``values`` to one row only if every condition still holds.

    Args:
        session: The unit of work the update joins.
        model: ORM class with an ``id`` primary key.
        entity_id: Primary key of the target row.
        *conditions: Expected prior state (e.g. ``Model.status == "PENDING"``).
        **values: Column values to set.

    Returns:
        True if this caller applied the update, False otherwise.
    """
    stmt = (
        update(model)
        .where(model.id == entity_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    won = result.rowcount == 1
    logger.debug(
        "exclusive.update",
        table=model.__tablename__,
        entity_id=str(entity_id),
        won=won,
    )
    return won


async def refetch(session: AsyncSession, model: type, entity_id: Any) -> Any | None:
    """Reload a row bypassing the identity map's cached attribute values."""
    result = await session.execute(
        select(model)
        .where(model.id == entity_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
