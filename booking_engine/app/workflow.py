# workflow.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import (BookingEngineError, DomainStateError, NotFoundError, PermissionDeniedError, ValidationError,
                     as_result)
from .materializer import MaterializationResult, materialize_window
from .metrics import WINDOW_TRANSITIONS
from .models import (ACTIVE_BOOKING_STATUSES, AvailabilityWindow, Booking, BookingStatus, CalculatedSlot, Location,
                     MaterializationStatus, SchedulingRule, Service, ServiceConfig, SlotStatus, User, WindowOwner,
                     WindowStatus, utcnow)
from .dependencies import UserRole
from .notifications import NotificationTemplate, dispatch_notification, user_recipient
from .scheduling import ServiceSchedule, validate_schedule
from .utils import isoformat_utc, serialize_window, to_utc_naive

# Organization proposals are the only windows that ever sit in PENDING.
ALLOWED_TRANSITIONS = {
    WindowStatus.PENDING: {WindowStatus.ACCEPTED, WindowStatus.REJECTED},
    WindowStatus.ACCEPTED: set(),
    WindowStatus.REJECTED: set(),
}

LIVE_WINDOW_STATUSES = (WindowStatus.PENDING.value, WindowStatus.ACCEPTED.value)


@dataclass
class ServiceConfigInput:
    service_id: int
    duration_minutes: int
    gap_minutes: int = 0
    price: Decimal = Decimal("0")
    is_online_available: bool = False
    is_in_person: bool = True
    location_id: Optional[int] = None


@dataclass
class AvailabilityProposal:
    provider_id: int
    start_time: datetime
    end_time: datetime
    services: List[ServiceConfigInput] = field(default_factory=list)
    organization_id: Optional[int] = None
    location_id: Optional[int] = None
    scheduling_rule: str = SchedulingRule.CONTINUOUS.value
    scheduling_interval: Optional[int] = None


@dataclass
class WorkflowOutcome:
    window: AvailabilityWindow
    materialization: Optional[MaterializationResult] = None

    def to_dict(self):
        return {
            "window": serialize_window(self.window),
            "materialization": self.materialization.to_dict() if self.materialization else None,
        }


def check_transition(window, target):
    current = WindowStatus(window.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise DomainStateError(f"Availability window {window.id} is {current.value}, not pending acceptance",
                               "not_pending_acceptance")


def _get_window(db: Session, window_id):
    window = db.get(AvailabilityWindow, window_id)
    if window is None:
        raise NotFoundError(f"Availability window {window_id} not found", "window_not_found")
    return window


def _can_manage(actor, window):
    return actor.is_admin or actor.is_provider(window.provider_id) or actor.is_member_of(window.organization_id)


def _validate_services(db: Session, services):
    if not services:
        raise ValidationError("At least one service must be configured", "no_services")
    for config in services:
        try:
            price = Decimal(str(config.price))
        except InvalidOperation:
            raise ValidationError(f"Invalid price for service {config.service_id}", "invalid_price")
        if price < 0:
            raise ValidationError(f"Price for service {config.service_id} cannot be negative", "invalid_price")
        if db.get(Service, config.service_id) is None:
            raise NotFoundError(f"Service {config.service_id} not found", "service_not_found")


def _validate_proposal(db: Session, proposal):
    start = to_utc_naive(proposal.start_time)
    end = to_utc_naive(proposal.end_time)
    schedules = [ServiceSchedule(config.service_id, config.duration_minutes, config.gap_minutes or 0)
                 for config in proposal.services]
    validate_schedule(start, end, schedules, proposal.scheduling_rule, proposal.scheduling_interval)
    _validate_services(db, proposal.services)

    try:
        owner = WindowOwner.infer(proposal.provider_id, proposal.organization_id, proposal.location_id)
    except ValueError as e:
        raise ValidationError(str(e), "invalid_owner")

    provider = db.get(User, proposal.provider_id)
    if provider is None or provider.role != UserRole.PROVIDER.value:
        raise NotFoundError(f"Provider {proposal.provider_id} not found", "provider_not_found")
    if proposal.location_id is not None:
        location = db.get(Location, proposal.location_id)
        if location is None:
            raise NotFoundError(f"Location {proposal.location_id} not found", "location_not_found")
        if location.organization_id != proposal.organization_id:
            raise ValidationError("Location does not belong to the window's organization", "invalid_owner")
    return start, end, owner, provider


def _find_overlapping_window(db: Session, provider_id, start, end, exclude_id=None):
    query = db.query(AvailabilityWindow).filter(
        AvailabilityWindow.provider_id == provider_id,
        AvailabilityWindow.status.in_(LIVE_WINDOW_STATUSES),
        AvailabilityWindow.retired_at.is_(None),
        AvailabilityWindow.start_time < end,
        AvailabilityWindow.end_time > start,
    )
    if exclude_id is not None:
        query = query.filter(AvailabilityWindow.id != exclude_id)
    return query.first()


def _materialize_after_commit(db: Session, window, cache):
    """Materialize a window whose ACCEPTED state is already committed. Never undoes that state."""
    try:
        return materialize_window(db, window.id, cache=cache)
    except BookingEngineError as e:
        logging.error(f"Materialization skipped for accepted window {window.id}: {e.message}")
        return MaterializationResult(window_id=window.id, success=False, errors=[e.message])


def _window_summary(window):
    return {
        "window_id": window.id,
        "provider_id": window.provider_id,
        "organization_id": window.organization_id,
        "start_time": isoformat_utc(window.start_time),
        "end_time": isoformat_utc(window.end_time),
        "status": window.status,
        "rejection_reason": window.rejection_reason,
    }


@as_result
def propose_availability(db: Session, actor, proposal: AvailabilityProposal, cache=None, notifier=None,
                         background_tasks=None) -> WorkflowOutcome:
    start, end, owner, provider = _validate_proposal(db, proposal)

    if actor.is_provider(proposal.provider_id) or (actor.is_admin and proposal.organization_id is None):
        provider_created = True
    elif actor.is_member_of(proposal.organization_id) or actor.is_admin:
        provider_created = False
    else:
        raise PermissionDeniedError("Not authorized to publish availability for this provider")

    overlapping = _find_overlapping_window(db, proposal.provider_id, start, end)
    if overlapping is not None:
        raise DomainStateError(f"Overlaps availability window {overlapping.id} of this provider",
                               "overlapping_availability")

    now = utcnow()
    window = AvailabilityWindow(
        provider_id=owner.provider_id,
        organization_id=owner.organization_id,
        location_id=owner.location_id,
        start_time=start,
        end_time=end,
        scheduling_rule=SchedulingRule(proposal.scheduling_rule).value,
        scheduling_interval=proposal.scheduling_interval,
        is_provider_created=provider_created,
        created_by_id=actor.user_id,
    )
    if provider_created:
        window.status = WindowStatus.ACCEPTED.value
        window.accepted_by_id = actor.user_id
        window.accepted_at = now
        window.materialization_status = MaterializationStatus.PENDING.value
    else:
        window.status = WindowStatus.PENDING.value
        window.materialization_status = MaterializationStatus.NOT_REQUIRED.value
    for position, config in enumerate(proposal.services):
        window.services.append(_build_config(config, position))

    db.add(window)
    db.commit()
    db.refresh(window)
    logging.info(f"Availability window {window.id} created for provider {window.provider_id} "
                 f"({'provider-created' if provider_created else 'organization proposal'})")

    if cache is not None:
        cache.invalidate_window(window)
    if not provider_created:
        WINDOW_TRANSITIONS.labels(transition="proposed").inc()
        dispatch_notification(notifier, user_recipient(provider), NotificationTemplate.AVAILABILITY_PROPOSED,
                              _window_summary(window), background_tasks)
        return WorkflowOutcome(window=window)

    WINDOW_TRANSITIONS.labels(transition="created").inc()
    materialization = _materialize_after_commit(db, window, cache)
    db.refresh(window)
    return WorkflowOutcome(window=window, materialization=materialization)


def _build_config(config, position):
    return ServiceConfig(
        service_id=config.service_id,
        position=position,
        duration_minutes=config.duration_minutes,
        gap_minutes=config.gap_minutes or 0,
        price=Decimal(str(config.price)),
        is_online_available=config.is_online_available,
        is_in_person=config.is_in_person,
        location_id=config.location_id,
    )


@as_result
def accept_availability(db: Session, window_id, actor, cache=None, notifier=None, background_tasks=None) -> WorkflowOutcome:
    window = _get_window(db, window_id)
    check_transition(window, WindowStatus.ACCEPTED)
    if not (actor.is_provider(window.provider_id) or actor.is_admin):
        raise PermissionDeniedError("Only the window's provider can accept this availability")

    now = utcnow()
    accepted = db.execute(
        update(AvailabilityWindow)
        .where(AvailabilityWindow.id == window_id, AvailabilityWindow.status == WindowStatus.PENDING.value)
        .values(status=WindowStatus.ACCEPTED.value, accepted_by_id=actor.user_id, accepted_at=now,
                materialization_status=MaterializationStatus.PENDING.value, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if accepted != 1:
        db.rollback()
        raise DomainStateError(f"Availability window {window_id} is no longer pending acceptance",
                               "not_pending_acceptance")
    db.commit()
    db.refresh(window)
    WINDOW_TRANSITIONS.labels(transition="accepted").inc()
    logging.info(f"Availability window {window_id} accepted by user {actor.user_id}")

    materialization = _materialize_after_commit(db, window, cache)
    db.refresh(window)
    if cache is not None:
        cache.invalidate_window(window)
    creator = db.get(User, window.created_by_id) if window.created_by_id else None
    dispatch_notification(notifier, user_recipient(creator), NotificationTemplate.AVAILABILITY_ACCEPTED,
                          _window_summary(window), background_tasks)
    return WorkflowOutcome(window=window, materialization=materialization)


@as_result
def reject_availability(db: Session, window_id, actor, reason=None, cache=None, notifier=None, background_tasks=None):
    window = _get_window(db, window_id)
    check_transition(window, WindowStatus.REJECTED)
    if not _can_manage(actor, window):
        raise PermissionDeniedError("Not authorized to reject this availability")

    now = utcnow()
    rejected = db.execute(
        update(AvailabilityWindow)
        .where(AvailabilityWindow.id == window_id, AvailabilityWindow.status == WindowStatus.PENDING.value)
        .values(status=WindowStatus.REJECTED.value, rejected_by_id=actor.user_id, rejected_at=now,
                rejection_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if rejected != 1:
        db.rollback()
        raise DomainStateError(f"Availability window {window_id} is no longer pending acceptance",
                               "not_pending_acceptance")
    db.commit()
    db.refresh(window)
    WINDOW_TRANSITIONS.labels(transition="rejected").inc()
    logging.info(f"Availability window {window_id} rejected by user {actor.user_id}")

    if cache is not None:
        cache.invalidate_window(window)
    creator = db.get(User, window.created_by_id) if window.created_by_id else None
    dispatch_notification(notifier, user_recipient(creator), NotificationTemplate.AVAILABILITY_REJECTED,
                          _window_summary(window), background_tasks)
    return WorkflowOutcome(window=window)


@as_result
def update_window_services(db: Session, window_id, actor, services, cache=None):
    window = _get_window(db, window_id)
    if not _can_manage(actor, window):
        raise PermissionDeniedError("Not authorized to change this availability")
    if window.status == WindowStatus.REJECTED.value:
        raise DomainStateError(f"Availability window {window_id} was rejected", "window_rejected")
    if window.retired_at is not None:
        raise DomainStateError(f"Availability window {window_id} has been retired", "window_retired")

    schedules = [ServiceSchedule(config.service_id, config.duration_minutes, config.gap_minutes or 0)
                 for config in services]
    validate_schedule(window.start_time, window.end_time, schedules, window.scheduling_rule,
                      window.scheduling_interval)
    _validate_services(db, services)

    # Same-service rows are updated in place so the (window, service) constraint never sees two rows.
    existing = {config.service_id: config for config in window.services}
    wanted = {config.service_id for config in services}
    for config in list(window.services):
        if config.service_id not in wanted:
            window.services.remove(config)
    for position, config in enumerate(services):
        current = existing.get(config.service_id)
        if current is None:
            window.services.append(_build_config(config, position))
            continue
        current.position = position
        current.duration_minutes = config.duration_minutes
        current.gap_minutes = config.gap_minutes or 0
        current.price = Decimal(str(config.price))
        current.is_online_available = config.is_online_available
        current.is_in_person = config.is_in_person
        current.location_id = config.location_id

    accepted = window.status == WindowStatus.ACCEPTED.value
    if accepted:
        window.materialization_status = MaterializationStatus.PENDING.value
    db.commit()
    db.refresh(window)
    logging.info(f"Service configuration of availability window {window_id} updated")

    materialization = _materialize_after_commit(db, window, cache) if accepted else None
    db.refresh(window)
    return WorkflowOutcome(window=window, materialization=materialization)


@as_result
def retire_availability(db: Session, window_id, actor, cache=None):
    window = _get_window(db, window_id)
    if not _can_manage(actor, window):
        raise PermissionDeniedError("Not authorized to retire this availability")
    if window.status != WindowStatus.ACCEPTED.value:
        raise DomainStateError(f"Availability window {window_id} is {window.status}, only accepted windows retire",
                               "window_not_accepted")
    if window.retired_at is not None:
        raise DomainStateError(f"Availability window {window_id} has already been retired", "window_retired")

    now = utcnow()
    window.retired_at = now
    retired = db.execute(
        update(CalculatedSlot)
        .where(CalculatedSlot.window_id == window_id, CalculatedSlot.retired_at.is_(None),
               CalculatedSlot.status != SlotStatus.BOOKED.value)
        .values(retired_at=now, version=CalculatedSlot.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    db.refresh(window)
    booked = db.query(func.count(CalculatedSlot.id)).filter(
        CalculatedSlot.window_id == window_id,
        CalculatedSlot.retired_at.is_(None),
        CalculatedSlot.status == SlotStatus.BOOKED.value,
    ).scalar()
    WINDOW_TRANSITIONS.labels(transition="retired").inc()
    logging.info(f"Availability window {window_id} retired: {retired} slots withdrawn, {booked} booked slots kept")
    if cache is not None:
        cache.invalidate_window(window)
    return {"window_id": window_id, "slots_retired": retired, "booked_slots_kept": booked}


@as_result
def delete_availability(db: Session, window_id, actor, cache=None):
    window = _get_window(db, window_id)
    if not _can_manage(actor, window):
        raise PermissionDeniedError("Not authorized to delete this availability")

    # Withdraw the slots first so no claim can land while bookings are counted.
    now = utcnow()
    db.execute(
        update(CalculatedSlot)
        .where(CalculatedSlot.window_id == window_id, CalculatedSlot.retired_at.is_(None),
               CalculatedSlot.status != SlotStatus.BOOKED.value)
        .values(retired_at=now, version=CalculatedSlot.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    slot_ids = select(CalculatedSlot.id).where(CalculatedSlot.window_id == window_id)
    active = db.query(func.count(Booking.id)).filter(
        Booking.slot_id.in_(slot_ids),
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    ).scalar()
    if active:
        db.rollback()
        raise DomainStateError(f"Cannot delete availability window {window_id} with {active} booking(s). "
                               f"Cancel the bookings first.", "window_has_bookings")

    db.execute(
        update(Booking)
        .where(Booking.slot_id.in_(slot_ids), Booking.status == BookingStatus.CANCELLED.value)
        .values(slot_id=None)
        .execution_options(synchronize_session=False)
    )
    provider_id, organization_id = window.provider_id, window.organization_id
    start, end = window.start_time, window.end_time
    db.expire(window)
    db.delete(window)
    db.commit()
    WINDOW_TRANSITIONS.labels(transition="deleted").inc()
    logging.info(f"Availability window {window_id} deleted")
    if cache is not None:
        cache.invalidate_owner(provider_id, organization_id, start, end)
    return {"window_id": window_id, "deleted": True}


def compute_workflow_statistics(db: Session, entity_type, entity_id):
    if entity_type == "organization":
        condition = AvailabilityWindow.organization_id == entity_id
    elif entity_type == "provider":
        condition = AvailabilityWindow.provider_id == entity_id
    else:
        raise ValidationError(f"Unknown entity type: {entity_type}", "invalid_entity_type")

    counts = dict(
        db.query(AvailabilityWindow.status, func.count(AvailabilityWindow.id))
        .filter(condition)
        .group_by(AvailabilityWindow.status)
        .all()
    )
    live_slots = db.query(CalculatedSlot).join(AvailabilityWindow).filter(condition, CalculatedSlot.retired_at.is_(None))
    total_slots = live_slots.count()
    booked_slots = live_slots.filter(CalculatedSlot.status == SlotStatus.BOOKED.value).count()
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "total_proposals": sum(counts.values()),
        "pending_proposals": counts.get(WindowStatus.PENDING.value, 0),
        "accepted_proposals": counts.get(WindowStatus.ACCEPTED.value, 0),
        "rejected_proposals": counts.get(WindowStatus.REJECTED.value, 0),
        "total_slots_generated": total_slots,
        "booked_slots": booked_slots,
        "utilization_rate": booked_slots / total_slots if total_slots else 0.0,
    }


@as_result
def get_workflow_statistics(db: Session, entity_type, entity_id, cache=None):
    cached = cache.get_statistics(entity_type, entity_id) if cache is not None else None
    if cached is not None:
        return cached
    statistics = compute_workflow_statistics(db, entity_type, entity_id)
    if cache is not None:
        cache.set_statistics(entity_type, entity_id, statistics)
    return statistics


