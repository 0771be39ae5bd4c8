from fastapi import APIRouter, Depends, Header, Query, Request

from .config import DEFAULT_PAGE_SIZE
from .idempotency import IdempotencyStore
from .lifecycle import Actor, ActorRole, ReservationStatus
from .rbac import get_actor, require_role
from .schemas import (
    CancelRequest,
    CreateReservationRequest,
    ReservationPageResponse,
    ReservationResponse,
    TransitionRequest,
)
from .service import ReservationService

router = APIRouter()


def get_service(request: Request) -> ReservationService:
    return request.app.state.reservation_service


def get_idempotency_store(request: Request) -> IdempotencyStore:
    return request.app.state.idempotency_store


@router.post("/reservations", response_model=ReservationResponse, status_code=201)
async def create_reservation(
    data: CreateReservationRequest,
    actor: Actor = Depends(get_actor),
    service: ReservationService = Depends(get_service),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
    idempotency_key: str | None = Header(default=None),
):
    require_role(actor, {ActorRole.REQUESTER})

    existing_id = await idempotency.claim(actor.id, idempotency_key)
    if existing_id:
        reservation = await service.get_reservation(existing_id, actor.id, actor.role)
        return ReservationResponse.from_model(reservation)

    try:
        reservation = await service.create_reservation(
            requester_id=actor.id,
            provider_id=data.provider_id,
            start_at=data.start_at,
            end_at=data.end_at,
            details=data.details.model_dump(exclude_none=True),
            urgency=data.urgency,
            submit=data.submit,
        )
    except Exception:
        await idempotency.release(actor.id, idempotency_key)
        raise

    await idempotency.remember(actor.id, idempotency_key, reservation.id)
    return ReservationResponse.from_model(reservation)


@router.get("/reservations", response_model=ReservationPageResponse)
async def list_reservations(
    status: str | None = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    service: ReservationService = Depends(get_service),
):
    result = await service.list_reservations(actor.id, actor.role, status=status, page=page, limit=limit)
    return ReservationPageResponse(
        items=[ReservationResponse.from_model(r) for r in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
        stats=result.stats,
        categories=result.categories,
    )


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: str,
    actor: Actor = Depends(get_actor),
    service: ReservationService = Depends(get_service),
):
    reservation = await service.get_reservation(reservation_id, actor.id, actor.role)
    return ReservationResponse.from_model(reservation)


@router.post("/reservations/{reservation_id}/transitions", response_model=ReservationResponse)
async def transition_reservation(
    reservation_id: str,
    data: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: ReservationService = Depends(get_service),
):
    reservation = await service.transition_reservation(
        reservation_id, actor.id, actor.role, data.target_status, reason=data.reason
    )
    return ReservationResponse.from_model(reservation)


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: str,
    data: CancelRequest | None = None,
    actor: Actor = Depends(get_actor),
    service: ReservationService = Depends(get_service),
):
    reservation = await service.transition_reservation(
        reservation_id,
        actor.id,
        actor.role,
        ReservationStatus.CANCELLED,
        reason=data.reason if data else None,
    )
    return ReservationResponse.from_model(reservation)
