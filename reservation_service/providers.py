import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .lifecycle import CounterDelta, ReservationStatus
from .models import Provider, Reservation

logger = logging.getLogger(__name__)

_COUNTERS = ("pending_requests", "booking_count", "completed_bookings")


async def get_provider(session: AsyncSession, provider_id: str, lock: bool = False) -> Provider | None:
    """
    Load a provider. With lock=True the row stays locked until the
    surrounding transaction ends, which serializes every booking write for
    that provider.
    """
    stmt = select(Provider).where(Provider.id == provider_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def adjust_counters(
    session: AsyncSession,
    provider_id: str,
    delta: CounterDelta,
    active_until: datetime | None = None,
) -> None:
    """
    Apply a counter delta with SQL-side arithmetic only.

    Decrements are guarded so a counter never goes below zero; a guarded
    decrement that matches no row is an invariant violation, logged and
    clamped to zero.
    """
    values = {}

    for name in _COUNTERS:
        amount = getattr(delta, name)
        column = getattr(Provider, name)
        if amount > 0:
            values[column] = column + amount
        elif amount < 0:
            await _decrement(session, provider_id, name, -amount)

    if delta.busy is True:
        values[Provider.is_busy] = True
        values[Provider.next_available_date] = active_until
    elif delta.busy is False:
        still_active = (
            select(Reservation.id)
            .where(
                Reservation.provider_id == provider_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .exists()
        )
        latest_end = (
            select(func.max(Reservation.end_at))
            .where(
                Reservation.provider_id == provider_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .scalar_subquery()
        )
        values[Provider.is_busy] = still_active
        values[Provider.next_available_date] = latest_end

    if values:
        await session.execute(
            update(Provider)
            .where(Provider.id == provider_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )


async def _decrement(session: AsyncSession, provider_id: str, name: str, amount: int) -> None:
    column = getattr(Provider, name)
    result = await session.execute(
        update(Provider)
        .where(Provider.id == provider_id, column >= amount)
        .values({column: column - amount})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    logger.error(
        "Provider counter underflow clamped to zero",
        extra={"provider_id": provider_id, "counter": name, "decrement": amount},
    )
    await session.execute(
        update(Provider)
        .where(Provider.id == provider_id)
        .values({column: 0})
        .execution_options(synchronize_session=False)
    )
