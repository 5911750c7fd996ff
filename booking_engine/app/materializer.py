# materializer.py
import logging
from dataclasses import dataclass, field
from typing import List

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .dependencies import MATERIALIZATION_MAX_ATTEMPTS
from .errors import DomainStateError, NotFoundError, as_result
from .metrics import MATERIALIZATIONS, MATERIALIZATION_LATENCY
from .models import (AvailabilityWindow, CalculatedSlot, MaterializationStatus, SlotStatus, WindowStatus,
                     utcnow)
from .reconciler import busy_interval_at, stored_busy_intervals
from .scheduling import CandidateSlot, generate_candidate_slots, schedules_for_window


@dataclass
class MaterializationPlan:
    to_insert: List[CandidateSlot] = field(default_factory=list)
    to_revive: list = field(default_factory=list)    # (retired slot, candidate)
    to_reshape: list = field(default_factory=list)   # (live unbooked slot, candidate with a new end)
    to_refresh: list = field(default_factory=list)   # live unbooked slots whose copied config is stale
    to_retire: list = field(default_factory=list)
    unchanged: int = 0
    frozen: int = 0
    skipped: List[CandidateSlot] = field(default_factory=list)

    @property
    def is_noop(self):
        return not (self.to_insert or self.to_revive or self.to_reshape or self.to_refresh or self.to_retire)


@dataclass
class MaterializationResult:
    window_id: int
    success: bool = True
    slots_created: int = 0
    slots_revived: int = 0
    slots_updated: int = 0
    slots_retired: int = 0
    slots_unchanged: int = 0
    slots_frozen: int = 0
    candidates_skipped: int = 0
    attempts: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def slots_generated(self):
        return self.slots_created + self.slots_revived

    def to_dict(self):
        return {
            "window_id": self.window_id,
            "success": self.success,
            "slots_generated": self.slots_generated,
            "slots_created": self.slots_created,
            "slots_revived": self.slots_revived,
            "slots_updated": self.slots_updated,
            "slots_retired": self.slots_retired,
            "slots_unchanged": self.slots_unchanged,
            "slots_frozen": self.slots_frozen,
            "candidates_skipped": self.candidates_skipped,
            "attempts": self.attempts,
            "errors": list(self.errors),
        }


def _overlaps(start_a, end_a, start_b, end_b):
    return start_a < end_b and start_b < end_a


def plan_materialization(window, candidates, configs_by_service):
    """
    Work out the smallest set of changes that makes the window's slots match the candidates.

    Slots are matched on (service, start). Booked slots are never changed, and
    a candidate overlapping a booked slot of the same service is skipped.
    """
    plan = MaterializationPlan()
    by_start = {(slot.service_id, slot.start_time): slot for slot in window.slots}
    booked = [slot for slot in window.slots if slot.retired_at is None and slot.status == SlotStatus.BOOKED.value]
    matched = set()

    for candidate in candidates:
        existing = by_start.get((candidate.service_id, candidate.start))
        if existing is not None and existing in booked:
            if existing.end_time == candidate.end:
                matched.add(existing.id)
                plan.unchanged += 1
            else:
                plan.skipped.append(candidate)
            continue
        if any(slot.service_id == candidate.service_id
               and _overlaps(slot.start_time, slot.end_time, candidate.start, candidate.end)
               for slot in booked):
            plan.skipped.append(candidate)
            continue

        if existing is None:
            plan.to_insert.append(candidate)
            continue

        matched.add(existing.id)
        if existing.retired_at is not None:
            plan.to_revive.append((existing, candidate))
        elif existing.end_time != candidate.end:
            plan.to_reshape.append((existing, candidate))
        elif _is_stale(existing, configs_by_service.get(candidate.service_id)):
            plan.to_refresh.append(existing)
        else:
            plan.unchanged += 1

    for slot in window.slots:
        if slot.retired_at is not None or slot.id in matched:
            continue
        if slot.status == SlotStatus.BOOKED.value:
            plan.frozen += 1
        else:
            plan.to_retire.append(slot)
    return plan


def _is_stale(slot, config):
    if config is None:
        return False
    return (slot.price != config.price or slot.is_online_available != config.is_online_available
            or slot.service_config_id != config.id)


class SlotChangedError(Exception):
    """A slot was booked or rewritten after the plan read it. The attempt is planned again."""


def _config_values(config, candidate=None):
    values = {
        "service_config_id": config.id,
        "price": config.price,
        "is_online_available": config.is_online_available,
    }
    if candidate is not None:
        values.update(end_time=candidate.end, duration_minutes=candidate.duration_minutes)
    return values


def _status_under(busy, start, end):
    interval = busy_interval_at(busy, start, end)
    if interval is None:
        return {"status": SlotStatus.AVAILABLE.value, "blocked_by_event_id": None}
    return {"status": SlotStatus.BLOCKED_EXTERNAL.value, "blocked_by_event_id": interval.event_id}


def _guarded_update(db: Session, slot, now, values):
    """Write planned changes only while the slot is unbooked and still at the version the plan read."""
    changed = db.execute(
        update(CalculatedSlot)
        .where(
            CalculatedSlot.id == slot.id,
            CalculatedSlot.status != SlotStatus.BOOKED.value,
            CalculatedSlot.version == slot.version,
        )
        .values(version=CalculatedSlot.version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if changed != 1:
        raise SlotChangedError(f"Slot {slot.id} changed after window {slot.window_id} was planned")


def apply_plan(db: Session, window, plan, configs_by_service, result):
    now = utcnow()
    busy = stored_busy_intervals(db, window.provider_id, window.location_id, window.start_time, window.end_time)
    for candidate in plan.to_insert:
        config = configs_by_service[candidate.service_id]
        db.add(CalculatedSlot(
            window_id=window.id,
            service_id=candidate.service_id,
            start_time=candidate.start,
            last_calculated=now,
            **_config_values(config, candidate),
            **_status_under(busy, candidate.start, candidate.end),
        ))
    for slot, candidate in plan.to_revive:
        _guarded_update(db, slot, now, dict(retired_at=None, last_calculated=now,
                                            **_config_values(configs_by_service[candidate.service_id], candidate),
                                            **_status_under(busy, candidate.start, candidate.end)))
    for slot, candidate in plan.to_reshape:
        _guarded_update(db, slot, now, dict(last_calculated=now,
                                            **_config_values(configs_by_service[candidate.service_id], candidate),
                                            **_status_under(busy, candidate.start, candidate.end)))
    for slot in plan.to_refresh:
        _guarded_update(db, slot, now, dict(last_calculated=now,
                                            **_config_values(configs_by_service[slot.service_id])))
    for slot in plan.to_retire:
        _guarded_update(db, slot, now, {"retired_at": now})

    result.slots_created = len(plan.to_insert)
    result.slots_revived = len(plan.to_revive)
    result.slots_updated = len(plan.to_reshape) + len(plan.to_refresh)
    result.slots_retired = len(plan.to_retire)
    result.slots_unchanged = plan.unchanged
    result.slots_frozen = plan.frozen
    result.candidates_skipped = len(plan.skipped)


def _load_window(db: Session, window_id):
    window = db.get(AvailabilityWindow, window_id)
    if window is None:
        raise NotFoundError(f"Availability window {window_id} not found", "window_not_found")
    if window.status != WindowStatus.ACCEPTED.value:
        raise DomainStateError(f"Availability window {window_id} is {window.status}, not ACCEPTED", "window_not_accepted")
    if window.retired_at is not None:
        raise DomainStateError(f"Availability window {window_id} has been retired", "window_retired")
    return window


def materialize_window(db: Session, window_id, cache=None, max_attempts=None) -> MaterializationResult:
    """
    Reconcile a window's slots with its scheduling rule.

    Raises NotFoundError or DomainStateError when the window cannot be
    materialized at all. Storage failures are rolled back and the whole
    attempt is retried; once attempts run out the result is returned with
    ``success=False`` and the errors, and the window is marked FAILED so
    operators can find it.
    """
    max_attempts = max_attempts or MATERIALIZATION_MAX_ATTEMPTS
    result = MaterializationResult(window_id=window_id)

    with MATERIALIZATION_LATENCY.time():
        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                window = _load_window(db, window_id)
                candidates = generate_candidate_slots(window.start_time, window.end_time, schedules_for_window(window),
                                                      window.scheduling_rule, window.scheduling_interval)
                configs_by_service = {config.service_id: config for config in window.services}
                plan = plan_materialization(window, candidates, configs_by_service)
                apply_plan(db, window, plan, configs_by_service, result)
                if not plan.is_noop or window.materialization_status != MaterializationStatus.COMPLETE.value:
                    window.materialization_status = MaterializationStatus.COMPLETE.value
                    window.materialization_error = None
                    window.materialized_at = utcnow()
                db.commit()
            except (SQLAlchemyError, SlotChangedError) as e:
                db.rollback()
                result.errors.append(f"attempt {attempt}: {e.__class__.__name__}: {e}")
                logging.warning(f"Materialization attempt {attempt} for window {window_id} failed: {e}")
                continue

            result.success = True
            MATERIALIZATIONS.labels(outcome="noop" if plan.is_noop else "changed").inc()
            logging.info(f"Materialized window {window_id}: {result.slots_created} created, {result.slots_revived} revived, "
                         f"{result.slots_retired} retired, {result.slots_unchanged} unchanged, {result.slots_frozen} frozen")
            if cache is not None and not plan.is_noop:
                cache.invalidate_window(window)
            return result

    result.success = False
    result.slots_created = result.slots_revived = result.slots_updated = result.slots_retired = 0
    MATERIALIZATIONS.labels(outcome="failed").inc()
    logging.error(f"Materialization for window {window_id} failed after {result.attempts} attempts: {result.errors}")
    _record_failure(db, window_id, result.errors[-1] if result.errors else "unknown error")
    return result


def _record_failure(db: Session, window_id, error):
    try:
        window = db.get(AvailabilityWindow, window_id)
        if window is not None:
            window.materialization_status = MaterializationStatus.FAILED.value
            window.materialization_error = error[:2000]
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Could not record materialization failure for window {window_id}: {e}")


@as_result
def materialize_slots(db: Session, window_id, cache=None):
    return materialize_window(db, window_id, cache=cache)


def find_unmaterialized_windows(db: Session, limit=100):
    """Accepted, live windows whose slots are missing or out of date."""
    return db.query(AvailabilityWindow).filter(
        AvailabilityWindow.status == WindowStatus.ACCEPTED.value,
        AvailabilityWindow.retired_at.is_(None),
        AvailabilityWindow.materialization_status.in_([
            MaterializationStatus.PENDING.value, MaterializationStatus.FAILED.value,
        ]),
    ).order_by(AvailabilityWindow.updated_at).limit(limit).all()


def materialize_pending_windows(db: Session, cache=None, limit=100):
    results = []
    for window_id in [window.id for window in find_unmaterialized_windows(db, limit=limit)]:
        try:
            results.append(materialize_window(db, window_id, cache=cache))
        except (NotFoundError, DomainStateError) as e:
            logging.info(f"Skipping window {window_id}: {e.message}")
    return results
