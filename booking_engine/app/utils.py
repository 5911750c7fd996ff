from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from .models import AvailabilityWindow, CalculatedSlot, SlotStatus, WindowStatus


def to_utc_naive(dt):
    """Normalize a datetime to naive UTC. Naive input is taken to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_utc(dt):
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc).isoformat()


def get_available_slots(db: Session, provider_id: int, start_date, end_date, cache=None, service_id=None):
    """Bookable slots of a provider between two dates (inclusive), read through the day cache."""
    available_slots = []
    current_date = start_date
    while current_date <= end_date:
        daily_slots_serializable = cache.get_daily_slots(provider_id, current_date) if cache else None
        if daily_slots_serializable is None:
            daily_slots_serializable = get_slots_from_db(db, provider_id, current_date)
            if cache:
                cache.set_daily_slots(provider_id, current_date, daily_slots_serializable)
        available_slots.extend([
            slot for slot in daily_slots_serializable
            if slot['status'] == SlotStatus.AVAILABLE.value and (service_id is None or slot['service_id'] == service_id)
        ])
        current_date += timedelta(days=1)
    return available_slots


def get_slots_from_db(db: Session, provider_id: int, day):
    day_start = datetime.combine(day, datetime.min.time())
    next_day = day_start + timedelta(days=1)
    daily_slots = db.query(CalculatedSlot).join(AvailabilityWindow).filter(
        AvailabilityWindow.provider_id == provider_id,
        AvailabilityWindow.status == WindowStatus.ACCEPTED.value,
        AvailabilityWindow.retired_at.is_(None),
        CalculatedSlot.retired_at.is_(None),
        CalculatedSlot.start_time >= day_start,
        CalculatedSlot.start_time < next_day,
    ).order_by(CalculatedSlot.start_time, CalculatedSlot.service_id).all()
    return [serialize_slot(slot, provider_id=provider_id) for slot in daily_slots]


def serialize_slot(slot: CalculatedSlot, provider_id=None, include_private_info: bool = False):
    serialized = {
        "id": slot.id,
        "window_id": slot.window_id,
        "provider_id": provider_id if provider_id is not None else slot.window.provider_id,
        "service_id": slot.service_id,
        "start_time": isoformat_utc(slot.start_time),
        "end_time": isoformat_utc(slot.end_time),
        "duration_minutes": slot.duration_minutes,
        "price": str(slot.price),
        "is_online_available": slot.is_online_available,
        "status": slot.status,
    }
    if include_private_info:
        serialized.update({
            "blocked_by_event_id": slot.blocked_by_event_id,
            "retired_at": isoformat_utc(slot.retired_at),
            "version": slot.version,
        })
    return serialized


def serialize_window(window: AvailabilityWindow):
    owner = window.owner
    return {
        "id": window.id,
        "provider_id": window.provider_id,
        "organization_id": window.organization_id,
        "location_id": window.location_id,
        "owner_kind": owner.kind.value,
        "start_time": isoformat_utc(window.start_time),
        "end_time": isoformat_utc(window.end_time),
        "scheduling_rule": window.scheduling_rule,
        "scheduling_interval": window.scheduling_interval,
        "status": window.status,
        "is_provider_created": window.is_provider_created,
        "accepted_by_id": window.accepted_by_id,
        "accepted_at": isoformat_utc(window.accepted_at),
        "rejection_reason": window.rejection_reason,
        "retired_at": isoformat_utc(window.retired_at),
        "materialization_status": window.materialization_status,
        "materialization_error": window.materialization_error,
        "services": [
            {
                "service_id": config.service_id,
                "duration_minutes": config.duration_minutes,
                "gap_minutes": config.gap_minutes,
                "price": str(config.price),
                "is_online_available": config.is_online_available,
                "is_in_person": config.is_in_person,
                "location_id": config.location_id,
            }
            for config in window.services
        ],
    }


def serialize_booking(booking):
    return {
        "id": booking.id,
        "slot_id": booking.slot_id,
        "client_id": booking.client_id,
        "is_guest_booking": booking.is_guest_booking,
        "guest_name": booking.guest_name,
        "guest_email": booking.guest_email,
        "status": booking.status,
        "price": str(booking.price),
        "is_online": booking.is_online,
        "notes": booking.notes,
        "created_at": isoformat_utc(booking.created_at),
        "confirmed_at": isoformat_utc(booking.confirmed_at),
        "cancelled_at": isoformat_utc(booking.cancelled_at),
    }
