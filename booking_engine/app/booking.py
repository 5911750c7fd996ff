# booking.py
import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import GUEST
from .errors import (DomainStateError, NotFoundError, PermissionDeniedError, SlotUnavailableError, ValidationError,
                     as_result)
from .metrics import BOOKING_CANCELLATIONS, SLOT_CLAIMS
from .models import AvailabilityWindow, Booking, BookingStatus, CalculatedSlot, SlotStatus, User, WindowStatus, utcnow
from .notifications import NotificationTemplate, booking_recipient, dispatch_notification
from .reconciler import busy_interval_for_slot
from .utils import isoformat_utc

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_NOTES_LENGTH = 2000

CANCELLABLE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)
OUTCOME_STATUSES = (BookingStatus.COMPLETED.value, BookingStatus.NO_SHOW.value)


@dataclass
class ClientIdentity:
    """Who the booking is for: a registered client, or a guest reachable by email or phone."""
    client_id: Optional[int] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None

    @property
    def is_guest(self):
        return self.client_id is None

    def validate(self):
        if self.client_id is not None:
            return
        if not self.guest_name or not self.guest_name.strip():
            raise ValidationError("Guest bookings need a name", "invalid_client")
        if not self.guest_email and not self.guest_phone:
            raise ValidationError("Guest bookings need an email address or phone number", "invalid_client")
        if self.guest_email and not EMAIL_PATTERN.match(self.guest_email):
            raise ValidationError(f"Invalid email address: {self.guest_email}", "invalid_client")


def _live_window_ids():
    return select(AvailabilityWindow.id).where(
        AvailabilityWindow.status == WindowStatus.ACCEPTED.value,
        AvailabilityWindow.retired_at.is_(None),
    )


def _is_pre_authorized(actor, window):
    return actor.is_admin or actor.is_provider(window.provider_id) or actor.is_member_of(window.organization_id)


def _check_booking_on_behalf(db: Session, slot_id, client, actor):
    """Only the client themselves or the slot's provider side may book for a registered client."""
    if client.client_id is None or client.client_id == actor.user_id:
        return
    slot = db.get(CalculatedSlot, slot_id)
    if slot is None:
        raise NotFoundError(f"Slot {slot_id} not found", "slot_not_found")
    if not _is_pre_authorized(actor, slot.window):
        raise PermissionDeniedError("Not authorized to book on behalf of another client")


def _booking_summary(booking, slot):
    return {
        "booking_id": booking.id,
        "slot_id": slot.id if slot else None,
        "start_time": isoformat_utc(slot.start_time) if slot else None,
        "end_time": isoformat_utc(slot.end_time) if slot else None,
        "status": booking.status,
    }


def _explain_lost_claim(db: Session, slot_id, now):
    """Name the reason a conditional claim changed no row. Only called after that write failed."""
    slot = db.get(CalculatedSlot, slot_id, populate_existing=True)
    if slot is None:
        return NotFoundError(f"Slot {slot_id} not found", "slot_not_found")
    window = slot.window
    if slot.retired_at is not None or window.retired_at is not None or window.status != WindowStatus.ACCEPTED.value:
        return DomainStateError(f"Slot {slot_id} has been withdrawn", "slot_withdrawn")
    if slot.start_time <= now:
        return DomainStateError(f"Slot {slot_id} has already started", "slot_in_past")
    return SlotUnavailableError(slot_id)


@as_result
def claim_slot(db: Session, slot_id, client: ClientIdentity, actor=GUEST, notes=None, cache=None, notifier=None,
               background_tasks=None):
    """
    Reserve a slot with a single conditional write.

    The slot moves AVAILABLE -> BOOKED only when the UPDATE's WHERE clause
    still matches, and the Booking row is inserted only after that UPDATE
    changed exactly one row. Whichever caller's UPDATE lands first wins; every
    other caller gets ``slot_unavailable``. The partial unique index on
    bookings.slot_id backs this up across processes.

    Claims are never retried here. A lost race means the slot is gone and the
    caller should pick another one.
    """
    client.validate()
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters", "invalid_notes")
    _check_booking_on_behalf(db, slot_id, client, actor)
    if client.client_id is not None and db.get(User, client.client_id) is None:
        raise NotFoundError(f"Client {client.client_id} not found", "client_not_found")

    now = utcnow()
    claimed = db.execute(
        update(CalculatedSlot)
        .where(
            CalculatedSlot.id == slot_id,
            CalculatedSlot.status == SlotStatus.AVAILABLE.value,
            CalculatedSlot.retired_at.is_(None),
            CalculatedSlot.start_time > now,
            CalculatedSlot.window_id.in_(_live_window_ids()),
        )
        .values(status=SlotStatus.BOOKED.value, version=CalculatedSlot.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount

    if claimed != 1:
        db.rollback()
        error = _explain_lost_claim(db, slot_id, now)
        db.rollback()
        SLOT_CLAIMS.labels(outcome=error.code).inc()
        raise error

    slot = db.get(CalculatedSlot, slot_id, populate_existing=True)
    window = slot.window
    booking = Booking(
        slot_id=slot.id,
        client_id=client.client_id,
        created_by_id=actor.user_id,
        is_guest_booking=client.is_guest,
        guest_name=client.guest_name,
        guest_email=client.guest_email,
        guest_phone=client.guest_phone,
        price=slot.price,
        is_online=slot.is_online_available,
        notes=notes,
        created_at=now,
    )
    if _is_pre_authorized(actor, window):
        booking.status = BookingStatus.CONFIRMED.value
        booking.confirmed_by_id = actor.user_id
        booking.confirmed_at = now
    else:
        booking.status = BookingStatus.PENDING.value

    try:
        db.add(booking)
        db.flush()
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logging.info(f"Booking insert for slot {slot_id} collided with an existing booking: {e}")
        SLOT_CLAIMS.labels(outcome="slot_unavailable").inc()
        raise SlotUnavailableError(slot_id)

    db.refresh(booking)
    SLOT_CLAIMS.labels(outcome="success").inc()
    logging.info(f"Slot {slot_id} booked: booking {booking.id} ({booking.status})")

    if cache is not None:
        cache.invalidate_window(window)
    dispatch_notification(notifier, booking_recipient(booking), NotificationTemplate.BOOKING_CONFIRMATION,
                          _booking_summary(booking, slot), background_tasks)
    return booking


def _get_booking(db: Session, booking_id):
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", "booking_not_found")
    return booking


def _can_manage_booking(actor, booking):
    window = booking.slot.window if booking.slot is not None else None
    if window is None:
        return actor.is_admin
    return _is_pre_authorized(actor, window)


def _can_cancel(actor, booking, guest_email=None):
    if _can_manage_booking(actor, booking):
        return True
    if not actor.is_guest:
        return booking.client_id is not None and booking.client_id == actor.user_id
    return (booking.is_guest_booking and guest_email is not None and booking.guest_email is not None
            and booking.guest_email.lower() == guest_email.lower())


@as_result
def cancel_booking(db: Session, booking_id, actor=GUEST, reason=None, guest_email=None, cache=None, notifier=None,
                   background_tasks=None):
    """
    Cancel a booking and hand its slot back, in one transaction.

    The slot reopens as AVAILABLE unless it or its window has been retired,
    in which case it is released but stays withdrawn. A slot that the last
    external busy snapshot still covers goes back to BLOCKED_EXTERNAL instead.
    """
    booking = _get_booking(db, booking_id)
    if not _can_cancel(actor, booking, guest_email):
        raise PermissionDeniedError("Not authorized to cancel this booking")

    now = utcnow()
    cancelled = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status.in_(CANCELLABLE_STATUSES))
        .values(status=BookingStatus.CANCELLED.value, cancelled_at=now, cancellation_reason=reason,
                version=Booking.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if cancelled != 1:
        db.rollback()
        raise DomainStateError(f"Booking {booking_id} cannot be cancelled in its current state",
                               "booking_not_cancellable")

    slot_outcome = "none"
    slot_id = booking.slot_id
    if slot_id is not None:
        busy = busy_interval_for_slot(db, booking.slot)
        reopen_status = SlotStatus.BLOCKED_EXTERNAL.value if busy is not None else SlotStatus.AVAILABLE.value
        reopened = db.execute(
            update(CalculatedSlot)
            .where(
                CalculatedSlot.id == slot_id,
                CalculatedSlot.status == SlotStatus.BOOKED.value,
                CalculatedSlot.retired_at.is_(None),
                CalculatedSlot.window_id.in_(_live_window_ids()),
            )
            .values(status=reopen_status, blocked_by_event_id=busy.event_id if busy is not None else None,
                    version=CalculatedSlot.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if reopened == 1:
            slot_outcome = "reopened" if busy is None else "blocked"
        else:
            released = db.execute(
                update(CalculatedSlot)
                .where(CalculatedSlot.id == slot_id, CalculatedSlot.status == SlotStatus.BOOKED.value)
                .values(status=SlotStatus.AVAILABLE.value, retired_at=now, version=CalculatedSlot.version + 1,
                        updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            slot_outcome = "retired" if released == 1 else "none"
    db.commit()

    booking = db.get(Booking, booking_id, populate_existing=True)
    slot = db.get(CalculatedSlot, slot_id, populate_existing=True) if slot_id is not None else None
    BOOKING_CANCELLATIONS.labels(slot_outcome=slot_outcome).inc()
    logging.info(f"Booking {booking_id} cancelled, slot {slot_id} {slot_outcome}")

    if cache is not None and slot is not None:
        cache.invalidate_window(slot.window)
    dispatch_notification(notifier, booking_recipient(booking), NotificationTemplate.BOOKING_CANCELLATION,
                          _booking_summary(booking, slot), background_tasks)
    return {"booking": booking, "slot_outcome": slot_outcome}


@as_result
def confirm_booking(db: Session, booking_id, actor, cache=None, notifier=None, background_tasks=None):
    booking = _get_booking(db, booking_id)
    if not _can_manage_booking(actor, booking):
        raise PermissionDeniedError("Only the provider side can confirm a booking")

    now = utcnow()
    confirmed = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING.value)
        .values(status=BookingStatus.CONFIRMED.value, confirmed_by_id=actor.user_id, confirmed_at=now,
                version=Booking.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if confirmed != 1:
        db.rollback()
        raise DomainStateError(f"Booking {booking_id} is not pending confirmation", "booking_not_pending")
    db.commit()

    booking = db.get(Booking, booking_id, populate_existing=True)
    logging.info(f"Booking {booking_id} confirmed by user {actor.user_id}")
    dispatch_notification(notifier, booking_recipient(booking), NotificationTemplate.BOOKING_CONFIRMATION,
                          _booking_summary(booking, booking.slot), background_tasks)
    return booking


@as_result
def record_booking_outcome(db: Session, booking_id, actor, outcome):
    """Close a confirmed booking as COMPLETED or NO_SHOW once its slot has ended."""
    if outcome not in OUTCOME_STATUSES:
        raise ValidationError(f"Outcome must be one of {OUTCOME_STATUSES}", "invalid_outcome")
    booking = _get_booking(db, booking_id)
    if not _can_manage_booking(actor, booking):
        raise PermissionDeniedError("Only the provider side can record a booking outcome")
    if booking.status != BookingStatus.CONFIRMED.value:
        raise DomainStateError(f"Booking {booking_id} is {booking.status}, not CONFIRMED", "booking_not_confirmed")

    now = utcnow()
    if booking.slot is None or booking.slot.end_time > now:
        raise DomainStateError(f"Booking {booking_id} has not finished yet", "booking_not_finished")

    recorded = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == BookingStatus.CONFIRMED.value)
        .values(status=outcome, version=Booking.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if recorded != 1:
        db.rollback()
        raise DomainStateError(f"Booking {booking_id} changed while recording its outcome", "booking_not_confirmed")
    db.commit()
    logging.info(f"Booking {booking_id} closed as {outcome}")
    return db.get(Booking, booking_id, populate_existing=True)
