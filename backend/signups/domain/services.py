from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from ..models import Event, EventType, ParticipationStatus, SignUp, SignUpAvailability, Slot
from .errors import (
    InvalidArgumentError,
    SignUpsClosedError,
    SignUpsDisabledError,
    SignUpsNotOpenError,
)
from .repositories import NewSlot

PROGRAMME_YEARS = 5
ACADEMIC_YEAR_START_MONTH = 8

ACTIVE_STATUSES = frozenset({ParticipationStatus.CONFIRMED, ParticipationStatus.ON_WAITLIST})
TERMINAL_STATUSES = frozenset({ParticipationStatus.RETRACTED, ParticipationStatus.REMOVED})

ALLOWED_TRANSITIONS: dict[ParticipationStatus, frozenset[ParticipationStatus]] = {
    ParticipationStatus.ON_WAITLIST: frozenset(
        {ParticipationStatus.CONFIRMED, ParticipationStatus.RETRACTED, ParticipationStatus.REMOVED}
    ),
    ParticipationStatus.CONFIRMED: frozenset({ParticipationStatus.RETRACTED, ParticipationStatus.REMOVED}),
    ParticipationStatus.RETRACTED: frozenset(),
    ParticipationStatus.REMOVED: frozenset(),
}


def grade_year(graduation_year: int | None, now: datetime) -> int | None:
    """
    Grade year of a student in a five-year programme, counted from 1.
    Academic years start in August, so a student graduating in June of the
    current academic year is in their final year.
    """
    if graduation_year is None:
        return None
    academic_year_end = now.year + 1 if now.month >= ACADEMIC_YEAR_START_MONTH else now.year
    return max(1, PROGRAMME_YEARS - (graduation_year - academic_year_end))


def is_eligible(slot: Slot, grade: int | None) -> bool:
    if not slot.grade_years:
        return True
    return grade is not None and grade in slot.grade_years


def eligible_slots(slots: Iterable[Slot], grade: int | None) -> list[Slot]:
    return [slot for slot in slots if is_eligible(slot, grade)]


def select_slot(slots: Iterable[Slot], grade: int | None) -> Slot | None:
    """Eligible slot with the most remaining capacity; ties go to the lowest id."""
    candidates = [slot for slot in eligible_slots(slots, grade) if slot.remaining_capacity > 0]
    if not candidates:
        return None
    return min(candidates, key=lambda slot: (-slot.remaining_capacity, slot.id))


def is_sign_up_event(event: Event) -> bool:
    return event.type != EventType.BASIC and event.sign_ups_enabled


def has_remaining_capacity(event: Event) -> bool:
    # Untracked event capacity leaves the decision to the slots.
    return event.capacity is None or (event.remaining_capacity or 0) > 0


def ensure_sign_ups_open(event: Event, *, now: datetime) -> None:
    if not is_sign_up_event(event):
        raise SignUpsDisabledError("event is not accepting sign-ups")
    if event.sign_ups_start_at is not None and now < event.sign_ups_start_at:
        raise SignUpsNotOpenError("sign-ups have not opened yet")
    if event.sign_ups_end_at is not None and now > event.sign_ups_end_at:
        raise SignUpsClosedError("sign-ups have closed")


def ensure_transition(current: ParticipationStatus, new: ParticipationStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidArgumentError(f"cannot change sign-up status from {current} to {new}")


@dataclass(frozen=True)
class AvailabilitySnapshot:
    event: Event
    now: datetime
    user_known: bool
    active_sign_up: SignUp | None
    slots: Sequence[Slot]
    grade: int | None


def compute_availability(snapshot: AvailabilitySnapshot) -> SignUpAvailability:
    """
    Pure availability decision. Timing gates come first, then the user's own
    active sign-up, then slot eligibility, and only then capacity.
    """
    event = snapshot.event
    if not is_sign_up_event(event):
        return SignUpAvailability.DISABLED
    if event.sign_ups_start_at is not None and snapshot.now < event.sign_ups_start_at:
        return SignUpAvailability.NOT_OPEN
    if event.sign_ups_end_at is not None and snapshot.now > event.sign_ups_end_at:
        return SignUpAvailability.CLOSED
    if not snapshot.user_known:
        return SignUpAvailability.UNAVAILABLE

    active = snapshot.active_sign_up
    if active is not None:
        if active.participation_status == ParticipationStatus.CONFIRMED:
            return SignUpAvailability.CONFIRMED
        if active.participation_status == ParticipationStatus.ON_WAITLIST:
            return SignUpAvailability.ON_WAITLIST

    if not eligible_slots(snapshot.slots, snapshot.grade):
        return SignUpAvailability.UNAVAILABLE
    if not has_remaining_capacity(event):
        return SignUpAvailability.WAITLIST_AVAILABLE
    if select_slot(snapshot.slots, snapshot.grade) is None:
        return SignUpAvailability.WAITLIST_AVAILABLE
    return SignUpAvailability.AVAILABLE


def validate_event_details(
    *,
    type: EventType,
    starts_at: datetime,
    ends_at: datetime,
    sign_ups_start_at: datetime | None,
    sign_ups_end_at: datetime | None,
    capacity: int | None,
    product_id: str | None,
    slots: Sequence[NewSlot],
) -> None:
    if starts_at >= ends_at:
        raise InvalidArgumentError("starts_at must be earlier than ends_at")
    if type == EventType.BASIC:
        if slots:
            raise InvalidArgumentError("basic events cannot have slots")
        return
    if sign_ups_start_at is None or sign_ups_end_at is None:
        raise InvalidArgumentError("sign-up events need a sign-up window")
    if sign_ups_start_at >= sign_ups_end_at:
        raise InvalidArgumentError("sign_ups_start_at must be earlier than sign_ups_end_at")
    if capacity is not None and capacity < 0:
        raise InvalidArgumentError("capacity must be >= 0")
    if type == EventType.TICKETS and not product_id:
        raise InvalidArgumentError("ticketed events need a product")
    for slot in slots:
        if slot.capacity < 0:
            raise InvalidArgumentError("slot capacity must be >= 0")
        if any(year < 1 for year in slot.grade_years):
            raise InvalidArgumentError("grade years must be positive")
