# scheduling.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .errors import ValidationError
from .models import SchedulingRule

ALLOWED_ALIGNMENTS = (5, 10, 15, 20, 30, 60)
DEFAULT_ALIGNMENT_MINUTES = 60


@dataclass(frozen=True)
class ServiceSchedule:
    service_id: int
    duration_minutes: int
    gap_minutes: int = 0


@dataclass(frozen=True)
class CandidateSlot:
    service_id: int
    start: datetime
    end: datetime

    @property
    def duration_minutes(self):
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def key(self):
        return self.service_id, self.start, self.end


def round_up_to_interval(dt, minutes):
    """Round a datetime up to the next boundary of ``minutes`` within its hour."""
    base = dt.replace(minute=0, second=0, microsecond=0)
    elapsed = dt - base
    step = timedelta(minutes=minutes)
    if elapsed % step == timedelta(0):
        return dt
    return base + step * (elapsed // step + 1)


def validate_schedule(window_start, window_end, services, rule, interval_minutes=None):
    if window_start is None or window_end is None or window_end <= window_start:
        raise ValidationError("Availability end time must be after start time", "invalid_interval")
    try:
        rule = SchedulingRule(rule)
    except ValueError:
        raise ValidationError(f"Unsupported scheduling rule: {rule}", "invalid_rule")
    if not services:
        raise ValidationError("At least one service must be configured", "no_services")

    seen = set()
    for service in services:
        if service.service_id in seen:
            raise ValidationError(f"Service {service.service_id} is configured twice", "duplicate_service")
        seen.add(service.service_id)
        if service.duration_minutes is None or service.duration_minutes <= 0:
            raise ValidationError("Service duration must be positive", "invalid_duration")
        if service.gap_minutes is not None and service.gap_minutes < 0:
            raise ValidationError("Gap between slots cannot be negative", "invalid_gap")

    if rule == SchedulingRule.CUSTOM_INTERVAL:
        if not interval_minutes or interval_minutes <= 0:
            raise ValidationError("Scheduling interval required for CUSTOM_INTERVAL rule", "invalid_scheduling_interval")
        longest = max(service.duration_minutes for service in services)
        if interval_minutes < longest:
            raise ValidationError(
                f"Scheduling interval of {interval_minutes} minutes would overlap {longest}-minute slots",
                "invalid_scheduling_interval")
    elif rule == SchedulingRule.FIXED_INTERVAL:
        if interval_minutes is not None and interval_minutes not in ALLOWED_ALIGNMENTS:
            raise ValidationError(f"Alignment must be one of {ALLOWED_ALIGNMENTS} minutes", "invalid_scheduling_interval")
    return rule


def generate_candidate_slots(window_start: datetime, window_end: datetime, services: Sequence[ServiceSchedule],
                             rule=SchedulingRule.CONTINUOUS,
                             interval_minutes: Optional[int] = None) -> List[CandidateSlot]:
    """
    Produce the candidate slots for a window, service by service.

    CONTINUOUS packs slots from the window start, each followed by the
    service's gap. FIXED_INTERVAL starts each slot on the next alignment
    boundary (60 minutes unless ``interval_minutes`` says otherwise) once the
    previous slot and its gap are over. CUSTOM_INTERVAL starts a slot every
    ``interval_minutes`` from the window start.

    A slot is only produced when its full duration fits before the window end.
    The result is ordered by service configuration order, then start time, and
    is identical for identical input.

    :param window_start: Window start, naive UTC.
    :param window_end: Window end, naive UTC.
    :param services: Per-service duration and gap configuration.
    :param rule: A SchedulingRule or its string value.
    :param interval_minutes: Alignment for FIXED_INTERVAL, step for CUSTOM_INTERVAL.
    :return: Ordered list of CandidateSlot.
    """
    rule = validate_schedule(window_start, window_end, services, rule, interval_minutes)

    candidates = []
    for service in services:
        duration = timedelta(minutes=service.duration_minutes)
        gap = timedelta(minutes=service.gap_minutes or 0)

        if rule == SchedulingRule.FIXED_INTERVAL:
            alignment = interval_minutes or DEFAULT_ALIGNMENT_MINUTES
            slot_start = round_up_to_interval(window_start, alignment)
        else:
            alignment = None
            slot_start = window_start

        while slot_start + duration <= window_end:
            slot_end = slot_start + duration
            candidates.append(CandidateSlot(service.service_id, slot_start, slot_end))

            if rule == SchedulingRule.CUSTOM_INTERVAL:
                slot_start = slot_start + timedelta(minutes=interval_minutes)
            elif rule == SchedulingRule.FIXED_INTERVAL:
                slot_start = round_up_to_interval(slot_end + gap, alignment)
            else:
                slot_start = slot_end + gap

    return candidates


def schedules_for_window(window):
    return [
        ServiceSchedule(service_id=config.service_id, duration_minutes=config.duration_minutes,
                        gap_minutes=config.gap_minutes or 0)
        for config in window.services
    ]
