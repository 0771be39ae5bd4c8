from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .lifecycle import LOCKING_STATUSES
from .models import Reservation


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    # half-open windows: back-to-back slots do not overlap
    return a_start < b_end and b_start < a_end


async def has_conflict(
    session: AsyncSession,
    provider_id: str,
    start_at: datetime,
    end_at: datetime,
    exclude_reservation_id: str | None = None,
) -> bool:
    """
    Whether the provider already holds a Confirmed or Active reservation
    overlapping [start_at, end_at).

    Must be called on the session that performs the following write so the
    answer and the write share one transaction.
    """
    stmt = (
        select(Reservation.id)
        .where(
            Reservation.provider_id == provider_id,
            Reservation.status.in_([s.value for s in LOCKING_STATUSES]),
            Reservation.start_at < end_at,
            Reservation.end_at > start_at,
        )
        .limit(1)
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.id != exclude_reservation_id)

    result = await session.execute(stmt)
    return result.first() is not None
