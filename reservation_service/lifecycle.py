"""
Reservation state machine.

The workflow is a declarative table keyed by (from_status, to_status) whose
value is the set of actor roles entitled to take that edge. A single guard,
`plan_transition`, consults it and derives everything the store needs to
apply the move: provider counter deltas, whether the slot key is claimed or
released, and whether the overlap check has to run again.
"""

from dataclasses import dataclass
from enum import Enum

from .errors import Forbidden, InvalidTransition


class ReservationStatus(str, Enum):
    DRAFT = "Draft"
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    CONFIRMED = "Confirmed"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    NO_SHOW = "No-Show"
    DISPUTED = "Disputed"


class ActorRole(str, Enum):
    REQUESTER = "requester"
    PROVIDER = "provider"
    ADMIN = "admin"

    @classmethod
    def from_token_role(cls, role: str) -> "ActorRole | None":
        return _TOKEN_ROLES.get((role or "").strip().lower())


_TOKEN_ROLES = {
    "requester": ActorRole.REQUESTER,
    "user": ActorRole.REQUESTER,
    "client": ActorRole.REQUESTER,
    "provider": ActorRole.PROVIDER,
    "caregiver": ActorRole.PROVIDER,
    "handyman": ActorRole.PROVIDER,
    "admin": ActorRole.ADMIN,
}


# reservations in these states may not overlap for the same provider
LOCKING_STATUSES = frozenset({ReservationStatus.CONFIRMED, ReservationStatus.ACTIVE})

TERMINAL_STATUSES = frozenset(
    {
        ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED,
        ReservationStatus.COMPLETED,
        ReservationStatus.NO_SHOW,
        ReservationStatus.DISPUTED,
    }
)

S = ReservationStatus
R = ActorRole

TRANSITIONS: dict[tuple[ReservationStatus, ReservationStatus], frozenset[ActorRole]] = {
    (S.DRAFT, S.PENDING): frozenset({R.REQUESTER}),
    (S.PENDING, S.ACCEPTED): frozenset({R.PROVIDER}),
    (S.PENDING, S.REJECTED): frozenset({R.PROVIDER}),
    (S.PENDING, S.CANCELLED): frozenset({R.REQUESTER}),
    (S.ACCEPTED, S.CONFIRMED): frozenset({R.PROVIDER}),
    (S.ACCEPTED, S.CANCELLED): frozenset({R.REQUESTER}),
    (S.CONFIRMED, S.ACTIVE): frozenset({R.PROVIDER}),
    (S.CONFIRMED, S.CANCELLED): frozenset({R.REQUESTER}),
    (S.ACTIVE, S.COMPLETED): frozenset({R.PROVIDER}),
    (S.ACTIVE, S.NO_SHOW): frozenset({R.PROVIDER}),
    (S.ACTIVE, S.DISPUTED): frozenset({R.PROVIDER, R.ADMIN}),
}

del S, R


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole


@dataclass(frozen=True)
class CounterDelta:
    """
    Change to apply to a provider's counters.

    busy=True marks the provider busy until the reservation ends;
    busy=False recomputes the flag from the provider's remaining Active
    reservations; None leaves it alone.
    """

    pending_requests: int = 0
    booking_count: int = 0
    completed_bookings: int = 0
    busy: bool | None = None

    def is_empty(self) -> bool:
        return (
            self.pending_requests == 0
            and self.booking_count == 0
            and self.completed_bookings == 0
            and self.busy is None
        )


@dataclass(frozen=True)
class TransitionPlan:
    source: ReservationStatus
    target: ReservationStatus
    delta: CounterDelta
    check_conflict: bool
    claims_slot: bool
    releases_slot: bool


def allowed_targets(source: ReservationStatus) -> set[ReservationStatus]:
    return {target for (src, target) in TRANSITIONS if src is source}


def is_entitled(actor: Actor, roles: frozenset[ActorRole], requester_id: str, provider_id: str) -> bool:
    if actor.role is ActorRole.REQUESTER:
        return ActorRole.REQUESTER in roles and actor.id == requester_id
    if actor.role is ActorRole.PROVIDER:
        return ActorRole.PROVIDER in roles and actor.id == provider_id
    if actor.role is ActorRole.ADMIN:
        return ActorRole.ADMIN in roles
    raise ValueError(f"Unhandled actor role: {actor.role!r}")


def side_effects(source: ReservationStatus, target: ReservationStatus) -> CounterDelta:
    if target is ReservationStatus.PENDING:
        return CounterDelta(pending_requests=1)
    if target is ReservationStatus.ACCEPTED:
        return CounterDelta(pending_requests=-1, booking_count=1)
    if target is ReservationStatus.REJECTED:
        return CounterDelta(pending_requests=-1)
    if target is ReservationStatus.CANCELLED:
        if source is ReservationStatus.PENDING:
            return CounterDelta(pending_requests=-1)
        return CounterDelta()
    if target is ReservationStatus.ACTIVE:
        return CounterDelta(busy=True)
    if target is ReservationStatus.COMPLETED:
        return CounterDelta(completed_bookings=1, busy=False)
    if target in (ReservationStatus.NO_SHOW, ReservationStatus.DISPUTED):
        return CounterDelta(busy=False)
    return CounterDelta()


def plan_transition(
    source: ReservationStatus,
    target: ReservationStatus,
    actor: Actor,
    requester_id: str,
    provider_id: str,
) -> TransitionPlan:
    roles = TRANSITIONS.get((source, target))
    if roles is None:
        raise InvalidTransition(f"Cannot move reservation from {source.value} to {target.value}")

    if not is_entitled(actor, roles, requester_id, provider_id):
        raise Forbidden(
            f"{actor.role.value} {actor.id} may not move this reservation from {source.value} to {target.value}"
        )

    submitting = source is ReservationStatus.DRAFT and target is ReservationStatus.PENDING
    return TransitionPlan(
        source=source,
        target=target,
        delta=side_effects(source, target),
        check_conflict=submitting or target is ReservationStatus.CONFIRMED,
        claims_slot=submitting,
        releases_slot=target in TERMINAL_STATUSES,
    )


def is_repeat(current: ReservationStatus, target: ReservationStatus, actor: Actor, history) -> bool:
    """
    True when `target` is already the current status and the last recorded
    change was made by this same actor, i.e. the request is a retry of a
    transition that has already been applied.
    """
    if current is not target or not history:
        return False
    last = history[-1]
    return last.status == target.value and last.actor_id == actor.id and last.actor_role == actor.role.value
