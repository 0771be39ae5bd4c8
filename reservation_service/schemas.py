from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import as_utc

Urgency = Literal["Normal", "Urgent", "Emergency"]


class ReservationDetails(BaseModel):
    # free-form service fields, carried through untouched
    model_config = ConfigDict(extra="allow")

    service_type: str | None = None
    notes: str | None = None
    address: str | None = None


class CreateReservationRequest(BaseModel):
    provider_id: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    urgency: Urgency = "Normal"
    details: ReservationDetails = Field(default_factory=ReservationDetails)
    submit: bool = True


class TransitionRequest(BaseModel):
    target_status: str
    reason: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    actor_id: str
    actor_role: str
    reason: str | None = None
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)


class PaymentResponse(BaseModel):
    hourly_rate: float
    total_hours: int
    total_amount: float
    urgency: str


class ReservationResponse(BaseModel):
    id: str
    requester_id: str
    provider_id: str
    start_at: datetime
    end_at: datetime
    status: str
    version: int
    payment: PaymentResponse
    details: dict
    status_history: list[StatusHistoryResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, reservation) -> "ReservationResponse":
        return cls(
            id=reservation.id,
            requester_id=reservation.requester_id,
            provider_id=reservation.provider_id,
            start_at=as_utc(reservation.start_at),
            end_at=as_utc(reservation.end_at),
            status=reservation.status,
            version=reservation.version,
            payment=PaymentResponse(
                hourly_rate=reservation.hourly_rate,
                total_hours=reservation.total_hours,
                total_amount=reservation.total_amount,
                urgency=reservation.urgency,
            ),
            details=reservation.details or {},
            status_history=[StatusHistoryResponse.model_validate(h) for h in reservation.history],
            created_at=as_utc(reservation.created_at),
            updated_at=as_utc(reservation.updated_at),
        )


class ProviderStatsResponse(BaseModel):
    pending: int
    active: int


class RequesterCategoriesResponse(BaseModel):
    upcoming: int
    active: int
    past: int


class ReservationPageResponse(BaseModel):
    items: list[ReservationResponse]
    total: int
    page: int
    limit: int
    pages: int
    stats: ProviderStatsResponse | None = None
    categories: RequesterCategoriesResponse | None = None
