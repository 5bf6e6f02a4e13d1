from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from .models import Event, EventType, ParticipationStatus, SignUp, SignUpAvailability, Slot
from .utils.time import to_utc_naive


def _utc_iso(dt: datetime) -> str:
    return dt.replace(tzinfo=timezone.utc).isoformat()


class SignUpRead(BaseModel):
    sign_up_id: int
    event_id: int
    user_id: int
    slot_id: Optional[int]
    order_id: Optional[str]
    participation_status: ParticipationStatus
    active: bool
    version: int
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return _utc_iso(dt)

    @classmethod
    def from_db(cls, *, sign_up: SignUp) -> "SignUpRead":
        return cls(
            sign_up_id=sign_up.id,
            event_id=sign_up.event_id,
            user_id=sign_up.user_id,
            slot_id=sign_up.slot_id,
            order_id=sign_up.order_id,
            participation_status=sign_up.participation_status,
            active=sign_up.active,
            version=sign_up.version,
            created_at=sign_up.created_at,
            updated_at=sign_up.updated_at,
        )


class SignUpList(BaseModel):
    items: List[SignUpRead]
    total: int


class AvailabilityRead(BaseModel):
    event_id: int
    availability: SignUpAvailability


class WaitlistPositionRead(BaseModel):
    event_id: int
    position: int


class SlotCreate(BaseModel):
    capacity: int = Field(ge=0)
    grade_years: List[int] = Field(default_factory=list)


class SlotRead(BaseModel):
    slot_id: int
    event_id: int
    capacity: int
    remaining_capacity: int
    grade_years: List[int]
    version: int

    @classmethod
    def from_db(cls, *, slot: Slot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            event_id=slot.event_id,
            capacity=slot.capacity,
            remaining_capacity=slot.remaining_capacity,
            grade_years=list(slot.grade_years or []),
            version=slot.version,
        )


class EventCreate(BaseModel):
    organization_id: int
    name: str = Field(min_length=1, max_length=200)
    type: EventType = EventType.BASIC
    starts_at: datetime
    ends_at: datetime
    sign_ups_enabled: bool = False
    sign_ups_start_at: Optional[datetime] = None
    sign_ups_end_at: Optional[datetime] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    product_id: Optional[str] = Field(default=None, max_length=64)
    slots: List[SlotCreate] = Field(default_factory=list)

    @field_validator("starts_at", "ends_at", "sign_ups_start_at", "sign_ups_end_at")
    @classmethod
    def _to_utc(cls, dt: Optional[datetime]) -> Optional[datetime]:
        # Naive input is taken as UTC.
        if dt is None or dt.tzinfo is None:
            return dt
        return to_utc_naive(dt)


class EventRead(BaseModel):
    event_id: int
    organization_id: int
    name: str
    type: EventType
    product_id: Optional[str]
    starts_at: datetime
    ends_at: datetime
    sign_ups_enabled: bool
    sign_ups_start_at: Optional[datetime]
    sign_ups_end_at: Optional[datetime]
    capacity: Optional[int]
    remaining_capacity: Optional[int]
    version: int
    slots: List[SlotRead] = Field(default_factory=list)

    @field_serializer("starts_at", "ends_at", "sign_ups_start_at", "sign_ups_end_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _utc_iso(dt) if dt is not None else None

    @classmethod
    def from_db(cls, *, event: Event, slots: Optional[List[Slot]] = None) -> "EventRead":
        return cls(
            event_id=event.id,
            organization_id=event.organization_id,
            name=event.name,
            type=event.type,
            product_id=event.product_id,
            starts_at=event.starts_at,
            ends_at=event.ends_at,
            sign_ups_enabled=event.sign_ups_enabled,
            sign_ups_start_at=event.sign_ups_start_at,
            sign_ups_end_at=event.sign_ups_end_at,
            capacity=event.capacity,
            remaining_capacity=event.remaining_capacity,
            version=event.version,
            slots=[SlotRead.from_db(slot=slot) for slot in slots or []],
        )


class CapacityUpdate(BaseModel):
    capacity: int = Field(ge=0)
