# reconciler.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .dependencies import RECONCILIATION_MAX_ATTEMPTS, UserRole
from .errors import NotFoundError, PermissionDeniedError, ValidationError, as_result
from .metrics import RECONCILED_SLOTS
from .models import (ACTIVE_BOOKING_STATUSES, AvailabilityWindow, Booking, CalculatedSlot, ExternalBusyInterval,
                     SlotStatus, User, WindowStatus, utcnow)
from .utils import isoformat_utc, to_utc_naive


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    event_id: Optional[str] = None

    def overlaps(self, start, end):
        return self.start < end and start < self.end


@dataclass
class ConflictEntry:
    """A booked slot that an external calendar now says is busy. Reported, never changed."""
    slot_id: int
    booking_id: Optional[int]
    interval: BusyInterval

    def to_dict(self):
        return {
            "slot_id": self.slot_id,
            "booking_id": self.booking_id,
            "busy_start": isoformat_utc(self.interval.start),
            "busy_end": isoformat_utc(self.interval.end),
            "event_id": self.interval.event_id,
        }


@dataclass
class ReconciliationResult:
    provider_id: int
    slots_blocked: int = 0
    slots_released: int = 0
    slots_unchanged: int = 0
    conflicts: List[ConflictEntry] = field(default_factory=list)
    attempts: int = 0

    def to_dict(self):
        return {
            "provider_id": self.provider_id,
            "slots_blocked": self.slots_blocked,
            "slots_released": self.slots_released,
            "slots_unchanged": self.slots_unchanged,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "attempts": self.attempts,
        }


def merge_busy_intervals(intervals):
    """Validate busy intervals and merge the ones that overlap or touch.

    A merged interval keeps the event id of its earliest member.
    """
    normalized = []
    for interval in intervals:
        start, end = to_utc_naive(interval.start), to_utc_naive(interval.end)
        if start is None or end is None or end <= start:
            raise ValidationError(f"Busy interval must end after it starts: {interval.start} - {interval.end}",
                                  "invalid_busy_interval")
        normalized.append(BusyInterval(start, end, interval.event_id))

    merged = []
    for interval in sorted(normalized, key=lambda i: (i.start, i.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = BusyInterval(last.start, max(last.end, interval.end), last.event_id)
        else:
            merged.append(interval)
    return merged


def busy_interval_at(busy, start, end):
    """First interval of a start-ordered busy list that overlaps [start, end), or None."""
    for interval in busy:
        if interval.start >= end:
            break
        if interval.overlaps(start, end):
            return interval
    return None


def stored_busy_intervals(db: Session, provider_id, location_id, start, end):
    """Busy intervals from the last snapshots that apply to a window at this location and overlap [start, end).

    A snapshot reported without a location covers all of the provider's windows.
    """
    rows = db.query(ExternalBusyInterval).filter(
        ExternalBusyInterval.provider_id == provider_id,
        or_(ExternalBusyInterval.location_id.is_(None), ExternalBusyInterval.location_id == location_id),
        ExternalBusyInterval.start_time < end,
        ExternalBusyInterval.end_time > start,
    ).order_by(ExternalBusyInterval.start_time).all()
    return [BusyInterval(row.start_time, row.end_time, row.event_id) for row in rows]


def busy_interval_for_slot(db: Session, slot):
    window = slot.window
    busy = stored_busy_intervals(db, window.provider_id, window.location_id, slot.start_time, slot.end_time)
    return busy_interval_at(busy, slot.start_time, slot.end_time)


def _store_snapshot(db: Session, provider_id, location_id, busy, now):
    scope = (ExternalBusyInterval.location_id.is_(None) if location_id is None
             else ExternalBusyInterval.location_id == location_id)
    db.query(ExternalBusyInterval).filter(ExternalBusyInterval.provider_id == provider_id, scope).delete(
        synchronize_session=False)
    db.add_all(ExternalBusyInterval(provider_id=provider_id, location_id=location_id, start_time=interval.start,
                                    end_time=interval.end, event_id=interval.event_id, received_at=now)
               for interval in busy if interval.end > now)


def _upcoming_slots(db: Session, provider_id, location_id, now):
    query = db.query(CalculatedSlot).join(AvailabilityWindow).filter(
        AvailabilityWindow.provider_id == provider_id,
        AvailabilityWindow.status == WindowStatus.ACCEPTED.value,
        AvailabilityWindow.retired_at.is_(None),
        CalculatedSlot.retired_at.is_(None),
        CalculatedSlot.end_time > now,
    )
    if location_id is not None:
        query = query.filter(AvailabilityWindow.location_id == location_id)
    return query.order_by(CalculatedSlot.start_time).all()


def _set_slot_status(db: Session, slot, from_status, to_status, event_id, now):
    return db.execute(
        update(CalculatedSlot)
        .where(CalculatedSlot.id == slot.id, CalculatedSlot.status == from_status,
               CalculatedSlot.retired_at.is_(None))
        .values(status=to_status, blocked_by_event_id=event_id, version=CalculatedSlot.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount == 1


def _reconcile_once(db: Session, provider_id, busy, location_id, result):
    now = utcnow()
    changed = []
    for slot in _upcoming_slots(db, provider_id, location_id, now):
        interval = busy_interval_at(busy, slot.start_time, slot.end_time)
        if slot.status == SlotStatus.AVAILABLE.value and interval is not None:
            if _set_slot_status(db, slot, SlotStatus.AVAILABLE.value, SlotStatus.BLOCKED_EXTERNAL.value,
                                interval.event_id, now):
                result.slots_blocked += 1
                changed.append(slot)
        elif slot.status == SlotStatus.BLOCKED_EXTERNAL.value and interval is None:
            if _set_slot_status(db, slot, SlotStatus.BLOCKED_EXTERNAL.value, SlotStatus.AVAILABLE.value, None, now):
                result.slots_released += 1
                changed.append(slot)
        elif slot.status == SlotStatus.BOOKED.value and interval is not None:
            booking = db.query(Booking).filter(
                Booking.slot_id == slot.id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            ).first()
            result.conflicts.append(ConflictEntry(slot.id, booking.id if booking else None, interval))
        else:
            result.slots_unchanged += 1
    _store_snapshot(db, provider_id, location_id, busy, now)
    db.commit()
    return changed


@as_result
def reconcile_external_busy(db: Session, provider_id, intervals, actor=None, location_id=None, cache=None,
                            max_attempts=None):
    """
    Bring a provider's upcoming slots in line with an external busy snapshot.

    Free slots under a busy interval become BLOCKED_EXTERNAL, blocked slots no
    longer under one become AVAILABLE again, and booked slots under one are
    reported as conflicts without being touched. Running it twice with the
    same snapshot changes nothing the second time.
    """
    busy = merge_busy_intervals(intervals)
    provider = db.get(User, provider_id)
    if provider is None or provider.role != UserRole.PROVIDER.value:
        raise NotFoundError(f"Provider {provider_id} not found", "provider_not_found")
    if actor is not None and not (actor.is_admin or actor.is_provider(provider_id)):
        raise PermissionDeniedError("Not authorized to reconcile this provider's calendar")

    max_attempts = max_attempts or RECONCILIATION_MAX_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        result = ReconciliationResult(provider_id=provider_id, attempts=attempt)
        try:
            changed = _reconcile_once(db, provider_id, busy, location_id, result)
        except SQLAlchemyError as e:
            db.rollback()
            logging.warning(f"Reconciliation attempt {attempt} for provider {provider_id} failed: {e}")
            if attempt == max_attempts:
                raise
            continue
        break

    RECONCILED_SLOTS.labels(action="blocked").inc(result.slots_blocked)
    RECONCILED_SLOTS.labels(action="released").inc(result.slots_released)
    RECONCILED_SLOTS.labels(action="conflict").inc(len(result.conflicts))
    logging.info(f"Reconciled provider {provider_id}: {result.slots_blocked} blocked, "
                 f"{result.slots_released} released, {len(result.conflicts)} conflicts")
    if cache is not None and changed:
        cache.invalidate_slots(provider_id, changed)
    return result
