"""
Domain events emitted after a reservation write commits.

Each builder returns `(routing_key, body)` ready for the publisher. Bodies use
the platform envelope `{event_id, event_type, occurred_at, data}`.
"""

import json
import uuid

from .models import as_utc, utcnow

RESERVATION_CREATED = "reservation.created"
RESERVATION_STATUS_CHANGED = "reservation.status_changed"


def _encode(event_type: str, data: dict) -> tuple[str, str]:
    envelope = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "data": data,
    }
    return event_type, json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)


def reservation_payload(reservation) -> dict:
    return {
        "reservation_id": reservation.id,
        "requester_id": reservation.requester_id,
        "provider_id": reservation.provider_id,
        "status": reservation.status,
        "start_at": as_utc(reservation.start_at).isoformat(),
        "end_at": as_utc(reservation.end_at).isoformat(),
        "urgency": reservation.urgency,
        "total_amount": reservation.total_amount,
    }


def reservation_created(reservation) -> tuple[str, str]:
    return _encode(RESERVATION_CREATED, reservation_payload(reservation))


def reservation_status_changed(reservation, previous_status: str, actor, reason: str | None) -> tuple[str, str]:
    data = reservation_payload(reservation)
    data["previous_status"] = previous_status
    data["actor_id"] = actor.id
    data["actor_role"] = actor.role.value
    data["reason"] = reason
    return _encode(RESERVATION_STATUS_CHANGED, data)
