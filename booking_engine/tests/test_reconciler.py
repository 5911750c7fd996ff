from datetime import timezone, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.app import reconciler
from booking_engine.app.auth import actor_for
from booking_engine.app.booking import ClientIdentity, claim_slot
from booking_engine.app.models import CalculatedSlot, ExternalBusyInterval, Location, SlotStatus
from booking_engine.app.reconciler import BusyInterval, merge_busy_intervals, reconcile_external_busy

from conftest import at, create_window, future_day, service_config


def statuses(db, window_id):
    db.expire_all()
    return [(s.status, s.blocked_by_event_id) for s in db.query(CalculatedSlot).filter(
        CalculatedSlot.window_id == window_id).order_by(CalculatedSlot.start_time)]


@pytest.fixture
def day():
    return future_day()


@pytest.fixture
def window(db, provider, service, day):
    return create_window(db, provider, provider, [service_config(service)], at(day, 9), at(day, 10)).window


def test_busy_time_blocks_and_releases_free_slots(db, provider, window, day, cache, redis_mock):
    busy = [BusyInterval(at(day, 9, 10), at(day, 9, 20), "evt-1")]

    first = reconcile_external_busy(db, provider.id, busy, cache=cache)

    assert first.success
    assert first.data.slots_blocked == 1
    assert statuses(db, window.id) == [(SlotStatus.BLOCKED_EXTERNAL.value, "evt-1"), (SlotStatus.AVAILABLE.value, None)]
    assert redis_mock.delete.called

    again = reconcile_external_busy(db, provider.id, busy)
    assert again.data.slots_blocked == 0
    assert again.data.slots_released == 0
    assert again.data.slots_unchanged == 2

    cleared = reconcile_external_busy(db, provider.id, [])
    assert cleared.data.slots_released == 1
    assert statuses(db, window.id) == [(SlotStatus.AVAILABLE.value, None)] * 2


def test_booked_slots_are_reported_not_changed(db, provider, window, day):
    booked = db.query(CalculatedSlot).filter_by(window_id=window.id).order_by(CalculatedSlot.start_time).all()[1]
    booking = claim_slot(db, booked.id, ClientIdentity(guest_name="Ada", guest_email="ada@example.com")).data

    result = reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 9, 45), at(day, 11), "evt-2")])

    assert result.success
    assert result.data.slots_blocked == 0
    assert len(result.data.conflicts) == 1
    conflict = result.data.to_dict()["conflicts"][0]
    assert conflict["slot_id"] == booked.id
    assert conflict["booking_id"] == booking.id
    assert conflict["event_id"] == "evt-2"
    assert statuses(db, window.id)[1] == (SlotStatus.BOOKED.value, None)


def test_overlapping_intervals_are_merged(day):
    merged = merge_busy_intervals([
        BusyInterval(at(day, 9, 15), at(day, 9, 40), "b"),
        BusyInterval(at(day, 9), at(day, 9, 20), "a"),
        BusyInterval(at(day, 9, 40), at(day, 10), "c"),
        BusyInterval(at(day, 12), at(day, 13), "d"),
    ])
    assert merged == [BusyInterval(at(day, 9), at(day, 10), "a"), BusyInterval(at(day, 12), at(day, 13), "d")]


def test_aware_intervals_are_normalized_to_utc(day):
    offset = timezone(timedelta(hours=2))
    merged = merge_busy_intervals([BusyInterval(at(day, 11).replace(tzinfo=offset), at(day, 12).replace(tzinfo=offset))])
    assert merged == [BusyInterval(at(day, 9), at(day, 10), None)]


def test_invalid_interval_is_rejected(db, provider, window, day):
    result = reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 10), at(day, 9))])
    assert result.error_code == "invalid_busy_interval"
    assert statuses(db, window.id) == [(SlotStatus.AVAILABLE.value, None)] * 2


def test_only_the_provider_reconciles(db, provider, other_provider, admin, window, day):
    busy = [BusyInterval(at(day, 9), at(day, 10))]
    assert reconcile_external_busy(db, provider.id, busy, actor=actor_for(other_provider)).error_code == "forbidden"
    assert reconcile_external_busy(db, provider.id, busy, actor=actor_for(admin)).success
    assert reconcile_external_busy(db, 999, busy).error_code == "provider_not_found"


def test_location_restricts_reconciliation(db, provider, service, day):
    home = Location(name="Home practice")
    db.add(home)
    db.commit()
    located = create_window(db, provider, provider, [service_config(service)], at(day, 14), at(day, 15),
                            location_id=home.id).window
    elsewhere = create_window(db, provider, provider, [service_config(service)], at(day, 9), at(day, 10)).window

    result = reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 8), at(day, 16))], location_id=home.id)

    assert result.data.slots_blocked == 2
    assert [s for s, _ in statuses(db, located.id)] == [SlotStatus.BLOCKED_EXTERNAL.value] * 2
    assert [s for s, _ in statuses(db, elsewhere.id)] == [SlotStatus.AVAILABLE.value] * 2


def test_storage_failure_is_retried(db, provider, window, day, monkeypatch):
    real_once = reconciler._reconcile_once
    calls = []

    def flaky_once(*args):
        calls.append(1)
        if len(calls) == 1:
            raise SQLAlchemyError("deadlock detected")
        return real_once(*args)

    monkeypatch.setattr(reconciler, "_reconcile_once", flaky_once)
    result = reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 9), at(day, 9, 30))])

    assert result.success
    assert result.data.attempts == 2
    assert result.data.slots_blocked == 1


def test_persistent_storage_failure_is_unexpected(db, provider, window, day, monkeypatch):
    def broken_once(*args):
        raise SQLAlchemyError("server closed the connection")

    monkeypatch.setattr(reconciler, "_reconcile_once", broken_once)
    result = reconcile_external_busy(db, provider.id, [])

    assert result.error_kind.value == "unexpected"
    assert result.error_code == "storage_failure"


def test_any_other_failure_is_reported_not_raised(db, provider, window, monkeypatch):
    def broken_once(*args):
        raise RuntimeError("unexpected payload")

    monkeypatch.setattr(reconciler, "_reconcile_once", broken_once)
    result = reconcile_external_busy(db, provider.id, [])

    assert result.error_kind.value == "unexpected"
    assert result.error_code == "unexpected_error"


def test_latest_snapshot_is_kept_per_scope(db, provider, window, day):
    home = Location(name="Home practice")
    db.add(home)
    db.commit()

    reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 9), at(day, 9, 30), "evt-1"),
                                              BusyInterval(at(day, -96), at(day, -95), "long-gone")])
    reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 14), at(day, 15), "evt-home")],
                            location_id=home.id)

    def stored():
        return sorted((row.event_id, row.location_id) for row in db.query(ExternalBusyInterval))

    assert stored() == [("evt-1", None), ("evt-home", home.id)]

    reconcile_external_busy(db, provider.id, [BusyInterval(at(day, 12), at(day, 13), "evt-2")])
    assert stored() == [("evt-2", None), ("evt-home", home.id)]

    reconcile_external_busy(db, provider.id, [], location_id=home.id)
    assert stored() == [("evt-2", None)]
