import json
import logging
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import DAY, NOW, at
from reservation_service.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    ProviderBusy,
    SchedulingConflict,
    ValidationError,
)
from reservation_service.lifecycle import ActorRole, CounterDelta, ReservationStatus
from reservation_service.models import Provider, as_utc
from reservation_service.providers import adjust_counters
from reservation_service.service import ReservationService
from reservation_service import store

S = ReservationStatus


async def book(service, start, end, requester_id="req-1", provider_id="prov-1", **kwargs):
    return await service.create_reservation(requester_id, provider_id, start, end, **kwargs)


async def move(service, reservation, target, actor_id=None, role=None, reason=None):
    if role is None:
        role = ActorRole.REQUESTER if target in (S.CANCELLED, S.PENDING) else ActorRole.PROVIDER
    if actor_id is None:
        actor_id = reservation.requester_id if role is ActorRole.REQUESTER else reservation.provider_id
    return await service.transition_reservation(reservation.id, actor_id, role, target, reason=reason)


async def confirmed(service, start, end, **kwargs):
    reservation = await book(service, start, end, **kwargs)
    reservation = await move(service, reservation, S.ACCEPTED)
    return await move(service, reservation, S.CONFIRMED)


async def test_create_snapshots_rate_and_counts_pending(service, add_provider, read_provider, publisher):
    await add_provider(hourly_rate=25.0)

    reservation = await book(service, at(10), at(12, 30), urgency="Urgent", details={"notes": "gate code 12"})

    assert reservation.status == S.PENDING.value
    assert reservation.version == 1
    assert reservation.hourly_rate == 25.0
    assert reservation.total_hours == 3
    assert reservation.total_amount == pytest.approx(90.0)
    assert reservation.details == {"notes": "gate code 12"}
    assert as_utc(reservation.start_at) == at(10)
    assert [h.status for h in reservation.history] == [S.PENDING.value]
    assert reservation.history[0].actor_role == ActorRole.REQUESTER.value

    provider = await read_provider()
    assert provider.pending_requests == 1
    assert provider.booking_count == 0

    assert publisher.routing_keys == ["reservation.created"]
    event = json.loads(publisher.published[0][1])
    assert event["event_type"] == "reservation.created"
    assert event["data"]["reservation_id"] == reservation.id


async def test_hourly_rate_is_frozen_at_creation(service, add_provider, session_factory):
    await add_provider(hourly_rate=20.0)
    reservation = await book(service, at(10), at(11))

    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(Provider).where(Provider.id == "prov-1").values(hourly_rate=99.0))

    accepted = await move(service, reservation, S.ACCEPTED)
    assert accepted.hourly_rate == 20.0
    assert accepted.total_amount == pytest.approx(20.0)


async def test_short_window_bills_at_least_one_hour(service, add_provider):
    await add_provider(hourly_rate=30.0)
    reservation = await book(service, at(10), at(10, 20), urgency="Emergency")
    assert reservation.total_hours == 1
    assert reservation.total_amount == pytest.approx(45.0)


@pytest.mark.parametrize(
    "start,end",
    [
        (at(12), at(10)),
        (at(10), at(10)),
        (NOW.replace(hour=6), NOW.replace(hour=7)),
    ],
)
async def test_invalid_windows_are_rejected(service, add_provider, read_provider, start, end):
    await add_provider()
    with pytest.raises(ValidationError):
        await book(service, start, end)
    assert (await read_provider()).pending_requests == 0


async def test_unknown_urgency_is_rejected(service, add_provider):
    await add_provider()
    with pytest.raises(ValidationError):
        await book(service, at(10), at(11), urgency="Whenever")


async def test_missing_or_inactive_provider_is_not_found(service, add_provider):
    await add_provider("prov-off", is_active=False)
    with pytest.raises(NotFound):
        await book(service, at(10), at(11), provider_id="nobody")
    with pytest.raises(NotFound):
        await book(service, at(10), at(11), provider_id="prov-off")


async def test_busy_provider_reports_next_available_date(service, add_provider):
    await add_provider(is_busy=True, next_available_date=at(18))

    with pytest.raises(ProviderBusy) as excinfo:
        await book(service, at(20), at(21))

    assert excinfo.value.next_available_date == at(18)
    assert excinfo.value.to_dict()["next_available_date"] == at(18).isoformat()


async def test_scenario_a_overlap_with_confirmed_is_a_conflict(service, add_provider, read_provider):
    await add_provider()
    await confirmed(service, at(10), at(12))

    with pytest.raises(SchedulingConflict):
        await book(service, at(11), at(13), requester_id="req-2")

    assert (await read_provider()).pending_requests == 0


async def test_scenario_b_back_to_back_window_is_accepted(service, add_provider, read_provider):
    await add_provider()
    await confirmed(service, at(10), at(12))

    reservation = await book(service, at(12), at(13), requester_id="req-2")

    assert reservation.status == S.PENDING.value
    assert (await read_provider()).pending_requests == 1


async def test_scenario_d_accept_then_cancel_after_active(service, add_provider, read_provider):
    await add_provider()
    reservation = await book(service, at(10), at(12))

    reservation = await move(service, reservation, S.ACCEPTED)
    assert reservation.status == S.ACCEPTED.value
    provider = await read_provider()
    assert provider.pending_requests == 0
    assert provider.booking_count == 1

    reservation = await move(service, reservation, S.CONFIRMED)
    reservation = await move(service, reservation, S.ACTIVE)
    provider = await read_provider()
    assert provider.is_busy is True
    assert as_utc(provider.next_available_date) == at(12)

    with pytest.raises(InvalidTransition):
        await move(service, reservation, S.CANCELLED)

    current = await service.get_reservation(reservation.id, "req-1", ActorRole.REQUESTER)
    assert current.status == S.ACTIVE.value
    assert len(current.history) == 4


async def test_scenario_e_cancel_while_pending(service, add_provider, read_provider):
    await add_provider()
    reservation = await book(service, at(10), at(12))
    before = await read_provider()

    cancelled = await move(service, reservation, S.CANCELLED, reason="changed plans")

    after = await read_provider()
    assert cancelled.status == S.CANCELLED.value
    assert cancelled.history[-1].reason == "changed plans"
    assert after.pending_requests == before.pending_requests - 1
    assert after.booking_count == before.booking_count
    assert after.completed_bookings == before.completed_bookings
    assert after.is_busy == before.is_busy


async def test_completion_frees_provider(service, add_provider, read_provider, publisher):
    await add_provider()
    reservation = await confirmed(service, at(10), at(12))
    reservation = await move(service, reservation, S.ACTIVE)
    reservation = await move(service, reservation, S.COMPLETED)

    provider = await read_provider()
    assert provider.is_busy is False
    assert provider.next_available_date is None
    assert provider.completed_bookings == 1
    assert reservation.slot_key is None
    assert publisher.routing_keys.count("reservation.status_changed") == 4


async def test_provider_stays_busy_while_another_reservation_is_active(service, add_provider, read_provider):
    await add_provider()
    first = await confirmed(service, at(10), at(12))
    second = await confirmed(service, at(12), at(14), requester_id="req-2")
    first = await move(service, first, S.ACTIVE)
    second = await move(service, second, S.ACTIVE)

    await move(service, first, S.COMPLETED)

    provider = await read_provider()
    assert provider.is_busy is True
    assert as_utc(provider.next_available_date) == at(14)

    await move(service, second, S.NO_SHOW)
    assert (await read_provider()).is_busy is False


async def test_invalid_transition_leaves_state_untouched(service, add_provider, read_provider, publisher):
    await add_provider()
    reservation = await book(service, at(10), at(12))
    published = len(publisher.published)

    with pytest.raises(InvalidTransition):
        await move(service, reservation, S.COMPLETED)
    with pytest.raises(Forbidden):
        await move(service, reservation, S.ACCEPTED, actor_id="req-1", role=ActorRole.REQUESTER)
    with pytest.raises(Forbidden):
        await move(service, reservation, S.ACCEPTED, actor_id="prov-2", role=ActorRole.PROVIDER)

    current = await service.get_reservation(reservation.id, "req-1", ActorRole.REQUESTER)
    assert current.status == S.PENDING.value
    assert current.version == 1
    assert len(current.history) == 1
    assert (await read_provider()).pending_requests == 1
    assert len(publisher.published) == published


async def test_unknown_target_status_is_a_validation_error(service, add_provider):
    await add_provider()
    reservation = await book(service, at(10), at(12))
    with pytest.raises(ValidationError):
        await service.transition_reservation(reservation.id, "prov-1", "provider", "Teleported")


async def test_transition_on_missing_reservation(service):
    with pytest.raises(NotFound):
        await service.transition_reservation("missing", "prov-1", ActorRole.PROVIDER, S.ACCEPTED)


async def test_reissued_transition_is_a_noop(service, add_provider, read_provider, publisher):
    await add_provider()
    reservation = await book(service, at(10), at(12))
    accepted = await move(service, reservation, S.ACCEPTED)
    published = len(publisher.published)

    again = await move(service, reservation, S.ACCEPTED)

    assert again.status == S.ACCEPTED.value
    assert again.version == accepted.version
    assert len(again.history) == 2
    provider = await read_provider()
    assert provider.pending_requests == 0
    assert provider.booking_count == 1
    assert len(publisher.published) == published


async def test_reissued_cancel_by_other_actor_fails(service, add_provider):
    await add_provider()
    reservation = await book(service, at(10), at(12))
    await move(service, reservation, S.CANCELLED)

    with pytest.raises(InvalidTransition):
        await service.transition_reservation(reservation.id, "admin-1", ActorRole.ADMIN, S.CANCELLED)


async def test_confirm_rejected_when_window_already_taken(service, add_provider, read_provider):
    await add_provider()
    first = await move(service, await book(service, at(10), at(12)), S.ACCEPTED)
    second = await move(service, await book(service, at(11), at(13), requester_id="req-2"), S.ACCEPTED)

    await move(service, first, S.CONFIRMED)
    with pytest.raises(SchedulingConflict):
        await move(service, second, S.CONFIRMED)

    current = await service.get_reservation(second.id, "req-2", ActorRole.REQUESTER)
    assert current.status == S.ACCEPTED.value


async def test_identical_open_slot_cannot_be_requested_twice(service, add_provider, read_provider):
    await add_provider()
    first = await book(service, at(9), at(10))

    with pytest.raises(SchedulingConflict):
        await book(service, at(9), at(10), requester_id="req-2")

    await move(service, first, S.CANCELLED)
    again = await book(service, at(9), at(10), requester_id="req-2")
    assert again.status == S.PENDING.value
    assert (await read_provider()).pending_requests == 1


async def test_draft_is_not_counted_until_submitted(service, add_provider, read_provider):
    await add_provider()
    draft = await book(service, at(10), at(12), submit=False)

    assert draft.status == S.DRAFT.value
    assert draft.slot_key is None
    assert (await read_provider()).pending_requests == 0

    submitted = await move(service, draft, S.PENDING)
    assert submitted.status == S.PENDING.value
    assert submitted.slot_key is not None
    assert (await read_provider()).pending_requests == 1


async def test_draft_submit_is_checked_against_confirmed_bookings(service, add_provider):
    await add_provider()
    draft = await book(service, at(10), at(12), submit=False)
    await confirmed(service, at(11), at(12), requester_id="req-2")

    with pytest.raises(SchedulingConflict):
        await move(service, draft, S.PENDING)


async def test_stale_version_is_a_conflict(service, add_provider, session_factory):
    await add_provider()
    reservation = await book(service, at(10), at(12))

    async with session_factory() as session:
        async with session.begin():
            applied = await store.conditional_update(
                session, reservation.id, S.PENDING.value, reservation.version + 5, {"status": S.ACCEPTED.value}
            )
    assert applied is False


async def test_counter_underflow_is_clamped_and_logged(session_factory, add_provider, read_provider, caplog):
    await add_provider(pending_requests=0, booking_count=2)

    with caplog.at_level(logging.ERROR, logger="reservation_service.providers"):
        async with session_factory() as session:
            async with session.begin():
                await adjust_counters(session, "prov-1", CounterDelta(pending_requests=-1, booking_count=1))

    provider = await read_provider()
    assert provider.pending_requests == 0
    assert provider.booking_count == 3
    assert any("underflow" in r.getMessage() for r in caplog.records)


async def test_get_reservation_visibility(service, add_provider):
    await add_provider()
    reservation = await book(service, at(10), at(12))

    assert (await service.get_reservation(reservation.id, "req-1", ActorRole.REQUESTER)).id == reservation.id
    assert (await service.get_reservation(reservation.id, "prov-1", "caregiver")).id == reservation.id
    assert (await service.get_reservation(reservation.id, "ops", "admin")).id == reservation.id
    with pytest.raises(Forbidden):
        await service.get_reservation(reservation.id, "req-2", ActorRole.REQUESTER)
    with pytest.raises(NotFound):
        await service.get_reservation("missing", "req-1", ActorRole.REQUESTER)


async def test_list_reservations_by_owner(service, add_provider):
    await add_provider("prov-1")
    await add_provider("prov-2")
    mine = [await book(service, at(h), at(h + 1)) for h in (9, 11, 13)]
    await book(service, at(9), at(10), provider_id="prov-2", requester_id="req-2")
    await move(service, mine[0], S.ACCEPTED)

    page = await service.list_reservations("req-1", ActorRole.REQUESTER, page=1, limit=2)
    assert page.total == 3
    assert page.pages == 2
    assert len(page.items) == 2
    assert page.stats is None

    second = await service.list_reservations("req-1", "user", page=2, limit=2)
    assert len(second.items) == 1
    seen = {r.id for r in page.items} | {r.id for r in second.items}
    assert seen == {r.id for r in mine}

    pending = await service.list_reservations("req-1", ActorRole.REQUESTER, status="Pending")
    assert pending.total == 2

    as_provider = await service.list_reservations("prov-1", ActorRole.PROVIDER)
    assert as_provider.total == 3
    assert as_provider.stats == {"pending": 2, "active": 0}

    everything = await service.list_reservations("ops", ActorRole.ADMIN)
    assert everything.total == 4


@pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 10_000)])
async def test_list_rejects_bad_paging(service, page, limit):
    with pytest.raises(ValidationError):
        await service.list_reservations("req-1", ActorRole.REQUESTER, page=page, limit=limit)


async def test_history_is_ordered_and_attributed(service, add_provider):
    await add_provider()
    reservation = await confirmed(service, at(10), at(12))

    assert [h.status for h in reservation.history] == ["Pending", "Accepted", "Confirmed"]
    assert [h.actor_id for h in reservation.history] == ["req-1", "prov-1", "prov-1"]
    assert reservation.version == 3
    assert DAY.date() == as_utc(reservation.start_at).date()


async def test_draft_cannot_be_submitted_after_its_start(service, session_factory, publisher, add_provider, read_provider):
    await add_provider()
    draft = await book(service, at(9), at(10), submit=False)

    later = ReservationService(session_factory, publisher=publisher, timeout=30, clock=lambda: at(0, day=DAY + timedelta(days=5)))
    with pytest.raises(ValidationError):
        await move(later, draft, S.PENDING)

    current = await service.get_reservation(draft.id, "req-1", ActorRole.REQUESTER)
    assert current.status == S.DRAFT.value
    assert current.slot_key is None
    assert (await read_provider()).pending_requests == 0


async def test_requester_listing_categorises_by_clock(session_factory, publisher, add_provider):
    await add_provider()
    await add_provider("prov-2")
    booking = ReservationService(session_factory, publisher=publisher, timeout=30, clock=lambda: NOW)

    upcoming = await confirmed(booking, at(14), at(16))
    ongoing = await confirmed(booking, at(9), at(11))
    done = await move(booking, await confirmed(booking, at(6), at(8), provider_id="prov-2"), S.ACTIVE)
    done = await move(booking, done, S.COMPLETED)
    dropped = await move(booking, await book(booking, at(18), at(19)), S.CANCELLED)
    await book(booking, at(20), at(21), requester_id="req-2")

    # observe the day from 10:00 onwards
    observer = ReservationService(session_factory, publisher=publisher, timeout=30, clock=lambda: at(10))
    page = await observer.list_reservations("req-1", ActorRole.REQUESTER)

    assert page.total == 4
    assert page.stats is None
    # cancelled 18:00 booking has not ended yet, so it is not "past"
    assert page.categories == {"upcoming": 1, "active": 1, "past": 1}
    assert {upcoming.id, ongoing.id, done.id, dropped.id} == {r.id for r in page.items}

    filtered = await observer.list_reservations("req-1", ActorRole.REQUESTER, status="Confirmed")
    assert filtered.categories == {"upcoming": 1, "active": 1, "past": 0}

    as_provider = await observer.list_reservations("prov-1", ActorRole.PROVIDER)
    assert as_provider.categories is None
