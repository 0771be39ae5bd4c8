import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime

from . import events, lifecycle, providers, store
from .config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, STORE_TIMEOUT_SECONDS
from .conflicts import has_conflict
from .errors import Conflict, Forbidden, NotFound, ProviderBusy, SchedulingConflict, ValidationError
from .lifecycle import Actor, ActorRole, CounterDelta, ReservationStatus
from .models import Reservation, StatusHistoryEntry, as_utc, utcnow

logger = logging.getLogger(__name__)

URGENCY_PREMIUMS = {
    "Normal": 1.0,
    "Urgent": 1.2,
    "Emergency": 1.5,
}


@dataclass
class ReservationPage:
    items: list[Reservation]
    total: int
    page: int
    limit: int
    stats: dict | None = None
    categories: dict | None = None

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


def price_reservation(start_at: datetime, end_at: datetime, hourly_rate: float, urgency: str) -> tuple[int, float]:
    hours = math.ceil((end_at - start_at).total_seconds() / 3600)
    total_hours = max(hours, 1)
    total_amount = round(total_hours * hourly_rate * URGENCY_PREMIUMS[urgency], 2)
    return total_hours, total_amount


def parse_status(value) -> ReservationStatus:
    if isinstance(value, ReservationStatus):
        return value
    try:
        return ReservationStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in ReservationStatus)
        raise ValidationError(f"Unknown reservation status {value!r}; expected one of: {allowed}")


def parse_role(value) -> ActorRole:
    if isinstance(value, ActorRole):
        return value
    role = ActorRole.from_token_role(value)
    if role is None:
        raise ValidationError(f"Unknown actor role {value!r}")
    return role


def validate_window(start_at: datetime, end_at: datetime, now: datetime) -> tuple[datetime, datetime]:
    if start_at is None or end_at is None:
        raise ValidationError("Both start_at and end_at are required")
    start_at = as_utc(start_at)
    end_at = as_utc(end_at)
    if end_at <= start_at:
        raise ValidationError("end_at must be after start_at")
    if start_at < now:
        raise ValidationError("start_at cannot be in the past")
    return start_at, end_at


class ReservationService:
    """
    Entry point for every reservation read and write.

    Each public call runs as one transaction through `store.run_in_transaction`
    and is bounded by the caller's timeout (or the configured default).
    Domain events are published only after the transaction has committed.
    """

    def __init__(self, session_factory, publisher=None, timeout: float = STORE_TIMEOUT_SECONDS, clock=utcnow):
        self._session_factory = session_factory
        self._publisher = publisher
        self._timeout = timeout
        self._clock = clock

    async def create_reservation(
        self,
        requester_id: str,
        provider_id: str,
        start_at: datetime,
        end_at: datetime,
        details: dict | None = None,
        urgency: str = "Normal",
        submit: bool = True,
        timeout: float | None = None,
    ) -> Reservation:
        start_at, end_at = validate_window(start_at, end_at, self._clock())
        if urgency not in URGENCY_PREMIUMS:
            raise ValidationError(f"Unknown urgency {urgency!r}")

        status = ReservationStatus.PENDING if submit else ReservationStatus.DRAFT

        async def work(session):
            provider = await providers.get_provider(session, provider_id, lock=True)
            if provider is None or not provider.is_active:
                raise NotFound("Provider not found or not available")
            if provider.is_busy:
                raise ProviderBusy(
                    "Provider is currently busy",
                    next_available_date=as_utc(provider.next_available_date),
                )

            if await has_conflict(session, provider_id, start_at, end_at):
                logger.info(
                    "Creation rejected by overlapping reservation",
                    extra={"provider_id": provider_id},
                )
                raise SchedulingConflict("Provider is not available during this time")

            total_hours, total_amount = price_reservation(start_at, end_at, provider.hourly_rate, urgency)
            reservation = Reservation(
                id=str(uuid.uuid4()),
                requester_id=requester_id,
                provider_id=provider_id,
                start_at=start_at,
                end_at=end_at,
                status=status.value,
                version=1,
                slot_key=store.slot_key_for(provider_id, start_at, end_at) if submit else None,
                urgency=urgency,
                hourly_rate=provider.hourly_rate,
                total_hours=total_hours,
                total_amount=total_amount,
                details=dict(details or {}),
            )
            reservation.history.append(
                StatusHistoryEntry(
                    status=status.value,
                    actor_id=requester_id,
                    actor_role=ActorRole.REQUESTER.value,
                )
            )
            await store.insert_if_absent(session, reservation)

            if submit:
                await providers.adjust_counters(session, provider_id, CounterDelta(pending_requests=1))

            return await store.get(session, reservation.id)

        reservation = await store.run_in_transaction(self._session_factory, work, self._budget(timeout))
        logger.info(
            "Reservation created",
            extra={"reservation_id": reservation.id, "provider_id": provider_id, "status": status.value},
        )
        await self._publish(events.reservation_created(reservation))
        return reservation

    async def transition_reservation(
        self,
        reservation_id: str,
        actor_id: str,
        actor_role,
        target_status,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> Reservation:
        target = parse_status(target_status)
        actor = Actor(id=actor_id, role=parse_role(actor_role))

        async def work(session):
            reservation = await store.get(session, reservation_id)
            if reservation is None:
                raise NotFound("Reservation not found")

            current = ReservationStatus(reservation.status)
            if lifecycle.is_repeat(current, target, actor, reservation.history):
                return reservation, None

            plan = lifecycle.plan_transition(
                current, target, actor, reservation.requester_id, reservation.provider_id
            )

            start_at = as_utc(reservation.start_at)
            end_at = as_utc(reservation.end_at)

            if plan.claims_slot and start_at < self._clock():
                raise ValidationError("start_at cannot be in the past")

            # busy-flag recompute and overlap check both need the provider serialized
            if plan.check_conflict or plan.delta.busy is not None:
                await providers.get_provider(session, reservation.provider_id, lock=True)

            if plan.check_conflict:
                if await has_conflict(session, reservation.provider_id, start_at, end_at, reservation.id):
                    logger.info(
                        "Transition rejected by overlapping reservation",
                        extra={"reservation_id": reservation.id, "status": target.value},
                    )
                    raise SchedulingConflict("Provider already has a confirmed reservation during this time")

            values = {"status": target.value}
            if plan.claims_slot:
                values["slot_key"] = store.slot_key_for(reservation.provider_id, start_at, end_at)
            if plan.releases_slot:
                values["slot_key"] = None

            applied = await store.conditional_update(
                session, reservation.id, current.value, reservation.version, values
            )
            if not applied:
                raise Conflict("Reservation was modified concurrently, reload and retry")

            await store.append_history(session, reservation.id, target, actor, reason)

            if not plan.delta.is_empty():
                await providers.adjust_counters(
                    session, reservation.provider_id, plan.delta, active_until=end_at
                )

            return await store.get(session, reservation.id), plan

        reservation, plan = await store.run_in_transaction(self._session_factory, work, self._budget(timeout))

        if plan is None:
            logger.info(
                "Repeated transition ignored",
                extra={"reservation_id": reservation.id, "status": reservation.status},
            )
            return reservation

        logger.info(
            "Reservation %s -> %s by %s",
            plan.source.value,
            plan.target.value,
            actor.role.value,
            extra={"reservation_id": reservation.id, "provider_id": reservation.provider_id, "status": target.value},
        )
        await self._publish(events.reservation_status_changed(reservation, plan.source.value, actor, reason))
        return reservation

    async def get_reservation(self, reservation_id: str, actor_id: str, actor_role, timeout: float | None = None) -> Reservation:
        actor = Actor(id=actor_id, role=parse_role(actor_role))

        async def work(session):
            return await store.get(session, reservation_id)

        reservation = await store.run_in_transaction(self._session_factory, work, self._budget(timeout))
        if reservation is None:
            raise NotFound("Reservation not found")

        visible = (
            actor.role is ActorRole.ADMIN
            or (actor.role is ActorRole.REQUESTER and reservation.requester_id == actor.id)
            or (actor.role is ActorRole.PROVIDER and reservation.provider_id == actor.id)
        )
        if not visible:
            raise Forbidden("Not authorized to view this reservation")
        return reservation

    async def list_reservations(
        self,
        owner_id: str,
        owner_role,
        status=None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        timeout: float | None = None,
    ) -> ReservationPage:
        role = parse_role(owner_role)
        status_filter = parse_status(status) if status else None
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        async def work(session):
            items, total = await store.list_for_owner(
                session, owner_id, role, status_filter, (page - 1) * limit, limit
            )
            stats = categories = None
            if role is ActorRole.PROVIDER:
                stats = await store.provider_stats(session, owner_id)
            elif role is ActorRole.REQUESTER:
                categories = await store.requester_categories(session, owner_id, self._clock(), status_filter)
            return items, total, stats, categories

        items, total, stats, categories = await store.run_in_transaction(self._session_factory, work, self._budget(timeout))
        return ReservationPage(
            items=items, total=total, page=page, limit=limit, stats=stats, categories=categories
        )

    def _budget(self, timeout: float | None) -> float:
        return self._timeout if timeout is None else timeout

    async def _publish(self, event: tuple[str, str]) -> None:
        if self._publisher is None:
            return
        routing_key, body = event
        try:
            await self._publisher.publish(routing_key, body)
        except Exception as e:
            logger.warning("Publishing %s failed: %s", routing_key, e)
