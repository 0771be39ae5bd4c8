import asyncio
import logging
from datetime import datetime

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .errors import Conflict, ReservationError, SchedulingConflict, Unavailable
from .lifecycle import Actor, ActorRole, LOCKING_STATUSES, ReservationStatus
from .models import Reservation, StatusHistoryEntry, utcnow

logger = logging.getLogger(__name__)


def slot_key_for(provider_id: str, start_at: datetime, end_at: datetime) -> str:
    return f"{provider_id}|{start_at.isoformat()}|{end_at.isoformat()}"


async def run_in_transaction(session_factory, work, timeout: float):
    """
    Run `work(session)` inside one database transaction bounded by `timeout`.

    Commits when `work` returns, rolls back on any exception. Timeouts and
    transient driver failures surface as Unavailable; since nothing was
    committed the caller may retry.
    """

    async def _unit():
        async with session_factory() as session:
            async with session.begin():
                return await work(session)

    try:
        return await asyncio.wait_for(_unit(), timeout=timeout)
    except ReservationError:
        raise
    except asyncio.TimeoutError:
        logger.warning("Store call exceeded %.2fs timeout", timeout)
        raise Unavailable("Reservation store timed out, retry later")
    except IntegrityError as e:
        logger.info("Write rejected by store constraint: %s", e.orig)
        raise Conflict("Reservation changed concurrently, reload and retry")
    except (OperationalError, InterfaceError, PoolTimeoutError) as e:
        logger.warning("Reservation store unavailable: %s", e)
        raise Unavailable("Reservation store unavailable, retry later")


async def get(session: AsyncSession, reservation_id: str) -> Reservation | None:
    stmt = (
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .options(selectinload(Reservation.history))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def insert_if_absent(session: AsyncSession, reservation: Reservation) -> None:
    """
    Insert a new reservation. The unique slot key makes a second open
    reservation for the identical provider window fail here.
    """
    session.add(reservation)
    try:
        await session.flush()
    except IntegrityError:
        raise SchedulingConflict("Provider already has an open request for this exact time window")


async def conditional_update(
    session: AsyncSession,
    reservation_id: str,
    expected_status: str,
    expected_version: int,
    values: dict,
) -> bool:
    """
    Compare-and-write: only applies when the row still has the status and
    version the caller read. Returns False when another writer got there first.
    """
    stmt = (
        update(Reservation)
        .where(
            Reservation.id == reservation_id,
            Reservation.status == expected_status,
            Reservation.version == expected_version,
        )
        .values(version=Reservation.version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await session.execute(stmt)
    except IntegrityError:
        raise SchedulingConflict("Provider already has an open request for this exact time window")
    return result.rowcount == 1


async def append_history(
    session: AsyncSession,
    reservation_id: str,
    status: ReservationStatus,
    actor: Actor,
    reason: str | None = None,
) -> None:
    session.add(
        StatusHistoryEntry(
            reservation_id=reservation_id,
            status=status.value,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=reason,
        )
    )
    await session.flush()


def _owner_filter(owner_id: str, owner_role: ActorRole):
    if owner_role is ActorRole.REQUESTER:
        return Reservation.requester_id == owner_id
    if owner_role is ActorRole.PROVIDER:
        return Reservation.provider_id == owner_id
    if owner_role is ActorRole.ADMIN:
        return None
    raise ValueError(f"Unhandled owner role: {owner_role!r}")


async def list_for_owner(
    session: AsyncSession,
    owner_id: str,
    owner_role: ActorRole,
    status: ReservationStatus | None,
    offset: int,
    limit: int,
) -> tuple[list[Reservation], int]:
    conditions = []
    owner = _owner_filter(owner_id, owner_role)
    if owner is not None:
        conditions.append(owner)
    if status is not None:
        conditions.append(Reservation.status == status.value)

    total = await session.scalar(select(func.count()).select_from(Reservation).where(*conditions))

    stmt = (
        select(Reservation)
        .where(*conditions)
        .options(selectinload(Reservation.history))
        .order_by(Reservation.created_at.desc(), Reservation.id)
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total or 0)


async def provider_stats(session: AsyncSession, provider_id: str) -> dict:
    pending = await session.scalar(
        select(func.count())
        .select_from(Reservation)
        .where(
            Reservation.provider_id == provider_id,
            Reservation.status == ReservationStatus.PENDING.value,
        )
    )
    active = await session.scalar(
        select(func.count())
        .select_from(Reservation)
        .where(
            Reservation.provider_id == provider_id,
            Reservation.status.in_([s.value for s in LOCKING_STATUSES]),
        )
    )
    return {"pending": int(pending or 0), "active": int(active or 0)}


async def requester_categories(
    session: AsyncSession,
    requester_id: str,
    now: datetime,
    status: ReservationStatus | None = None,
) -> dict:
    """Upcoming / active / past counts over the requester's reservations, relative to `now`."""
    confirmed = Reservation.status == ReservationStatus.CONFIRMED.value
    upcoming = and_(confirmed, Reservation.start_at > now)
    active = or_(
        Reservation.status == ReservationStatus.ACTIVE.value,
        and_(confirmed, Reservation.start_at <= now, Reservation.end_at >= now),
    )
    past = and_(
        Reservation.end_at < now,
        Reservation.status.in_([ReservationStatus.COMPLETED.value, ReservationStatus.CANCELLED.value]),
    )

    conditions = [Reservation.requester_id == requester_id]
    if status is not None:
        conditions.append(Reservation.status == status.value)

    row = (
        await session.execute(
            select(
                func.coalesce(func.sum(case((upcoming, 1), else_=0)), 0),
                func.coalesce(func.sum(case((active, 1), else_=0)), 0),
                func.coalesce(func.sum(case((past, 1), else_=0)), 0),
            ).where(*conditions)
        )
    ).one()
    return {"upcoming": int(row[0]), "active": int(row[1]), "past": int(row[2])}
