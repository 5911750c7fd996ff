from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from threading import Barrier

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from booking_engine.app.auth import GUEST, actor_for
from booking_engine.app.booking import (ClientIdentity, cancel_booking, claim_slot, confirm_booking,
                                        record_booking_outcome)
from booking_engine.app.models import Booking, BookingStatus, CalculatedSlot, SlotStatus, utcnow
from booking_engine.app.notifications import NotificationTemplate
from booking_engine.app.reconciler import BusyInterval, reconcile_external_busy
from booking_engine.app.workflow import accept_availability, retire_availability

from conftest import at, create_window, future_day, service_config

GUEST_CLIENT = ClientIdentity(guest_name="Ada Lovelace", guest_email="ada@example.com")


def window_slots(db, window_id):
    db.expire_all()
    slots = db.query(CalculatedSlot).filter(CalculatedSlot.window_id == window_id).order_by(
        CalculatedSlot.start_time).all()
    db.rollback()
    return slots


@pytest.fixture
def window(db, provider, service):
    day = future_day()
    return create_window(db, provider, provider, [service_config(service, price="80.00", online=True)],
                         at(day, 9), at(day, 10)).window


@pytest.fixture
def slots(db, window):
    return window_slots(db, window.id)


def test_morning_window_books_once_per_slot(db, slots, client_user, notifier):
    nine, nine_thirty = slots
    assert len(slots) == 2

    first = claim_slot(db, nine.id, GUEST_CLIENT, notifier=notifier)
    assert first.success
    assert first.data.status == BookingStatus.PENDING.value
    assert first.data.is_guest_booking
    assert str(first.data.price) == "80.00"
    assert first.data.is_online

    second = claim_slot(db, nine.id, ClientIdentity(client_id=client_user.id), actor=actor_for(client_user))
    assert not second.success
    assert second.error_kind.value == "conflict"
    assert second.error_code == "slot_unavailable"

    third = claim_slot(db, nine_thirty.id, ClientIdentity(client_id=client_user.id), actor=actor_for(client_user))
    assert third.success
    assert third.data.client_id == client_user.id

    assert [s.status for s in window_slots(db, nine.window_id)] == [SlotStatus.BOOKED.value] * 2
    assert db.query(Booking).count() == 2
    assert notifier.notify.call_args.args[0]["email"] == "ada@example.com"
    assert notifier.notify.call_args.args[1] == NotificationTemplate.BOOKING_CONFIRMATION


def test_concurrent_claims_produce_one_booking(db, session_factory, slots):
    slot_id = slots[0].id
    db.rollback()
    contenders = 8
    barrier = Barrier(contenders)

    def contend(n):
        session = session_factory()
        try:
            barrier.wait()
            client = ClientIdentity(guest_name=f"Guest {n}", guest_email=f"guest{n}@example.com")
            return claim_slot(session, slot_id, client)
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=contenders) as pool:
        results = list(pool.map(contend, range(contenders)))

    assert sum(1 for r in results if r.success) == 1
    assert sorted(r.error_code for r in results if not r.success) == ["slot_unavailable"] * (contenders - 1)

    session = session_factory()
    try:
        assert session.query(Booking).filter(Booking.slot_id == slot_id).count() == 1
        assert session.get(CalculatedSlot, slot_id).status == SlotStatus.BOOKED.value
    finally:
        session.close()


def test_provider_side_bookings_are_confirmed(db, slots, provider):
    result = claim_slot(db, slots[0].id, GUEST_CLIENT, actor=actor_for(provider))

    assert result.data.status == BookingStatus.CONFIRMED.value
    assert result.data.confirmed_by_id == provider.id
    assert result.data.created_by_id == provider.id


def test_organization_member_books_confirmed_on_its_windows(db, provider, org_member, organization, service):
    day = future_day()
    proposed = create_window(db, org_member, provider, [service_config(service)], at(day, 9), at(day, 10),
                             organization_id=organization.id).window
    assert accept_availability(db, proposed.id, actor_for(provider)).success
    slot = window_slots(db, proposed.id)[0]

    result = claim_slot(db, slot.id, GUEST_CLIENT, actor=actor_for(org_member))

    assert result.data.status == BookingStatus.CONFIRMED.value


@pytest.mark.parametrize("client", [
    ClientIdentity(),
    ClientIdentity(guest_name="Ada"),
    ClientIdentity(guest_name="  ", guest_email="ada@example.com"),
    ClientIdentity(guest_name="Ada", guest_email="not-an-email"),
])
def test_client_identity_is_validated_before_writing(db, slots, client):
    result = claim_slot(db, slots[0].id, client)

    assert result.error_kind.value == "validation"
    assert result.error_code == "invalid_client"
    assert window_slots(db, slots[0].window_id)[0].status == SlotStatus.AVAILABLE.value


def test_overlong_notes_are_rejected(db, slots):
    result = claim_slot(db, slots[0].id, GUEST_CLIENT, notes="x" * 2001)
    assert result.error_code == "invalid_notes"


def test_unknown_slot_is_not_found(db):
    result = claim_slot(db, 999, GUEST_CLIENT)
    assert result.error_kind.value == "not_found"
    assert result.error_code == "slot_not_found"


def test_unknown_client_is_not_found(db, slots, provider):
    result = claim_slot(db, slots[0].id, ClientIdentity(client_id=999), actor=actor_for(provider))
    assert result.error_code == "client_not_found"


def test_booking_for_a_registered_client_needs_the_provider_side(db, slots, client_user, other_provider, provider):
    on_behalf = ClientIdentity(client_id=client_user.id)

    assert claim_slot(db, slots[0].id, on_behalf).error_code == "forbidden"
    assert claim_slot(db, slots[0].id, on_behalf, actor=actor_for(other_provider)).error_code == "forbidden"
    assert window_slots(db, slots[0].window_id)[0].status == SlotStatus.AVAILABLE.value

    result = claim_slot(db, slots[0].id, on_behalf, actor=actor_for(provider))
    assert result.success
    assert result.data.client_id == client_user.id
    assert result.data.status == BookingStatus.CONFIRMED.value


def test_past_slot_cannot_be_claimed(db, provider, service):
    day = future_day(days=-2)
    window = create_window(db, provider, provider, [service_config(service)], at(day, 9), at(day, 10)).window
    slot = window_slots(db, window.id)[0]

    result = claim_slot(db, slot.id, GUEST_CLIENT)

    assert result.error_kind.value == "domain_state"
    assert result.error_code == "slot_in_past"


def test_externally_blocked_slot_is_unavailable(db, slots):
    db.execute(update(CalculatedSlot).where(CalculatedSlot.id == slots[0].id)
               .values(status=SlotStatus.BLOCKED_EXTERNAL.value))
    db.commit()

    assert claim_slot(db, slots[0].id, GUEST_CLIENT).error_code == "slot_unavailable"


def test_retired_slot_is_withdrawn(db, slots, window, provider):
    assert retire_availability(db, window.id, actor_for(provider)).success
    assert claim_slot(db, slots[0].id, GUEST_CLIENT).error_code == "slot_withdrawn"


def test_database_allows_one_active_booking_per_slot(db, slots):
    slot_id = slots[0].id
    db.add(Booking(slot_id=slot_id, guest_name="A", guest_email="a@example.com", is_guest_booking=True,
                   status=BookingStatus.CANCELLED.value))
    db.add(Booking(slot_id=slot_id, guest_name="B", guest_email="b@example.com", is_guest_booking=True,
                   status=BookingStatus.PENDING.value))
    db.commit()

    db.add(Booking(slot_id=slot_id, guest_name="C", guest_email="c@example.com", is_guest_booking=True,
                   status=BookingStatus.CONFIRMED.value))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_cancellation_reopens_the_slot(db, slots, client_user, notifier):
    actor = actor_for(client_user)
    booking = claim_slot(db, slots[0].id, ClientIdentity(client_id=client_user.id), actor=actor).data

    result = cancel_booking(db, booking.id, actor=actor, reason="Feeling better", notifier=notifier)

    assert result.success
    assert result.data["slot_outcome"] == "reopened"
    assert result.data["booking"].status == BookingStatus.CANCELLED.value
    assert result.data["booking"].cancellation_reason == "Feeling better"
    assert result.data["booking"].cancelled_at is not None
    assert db.get(CalculatedSlot, slots[0].id).status == SlotStatus.AVAILABLE.value
    assert notifier.notify.call_args.args[1] == NotificationTemplate.BOOKING_CANCELLATION

    rebooked = claim_slot(db, slots[0].id, GUEST_CLIENT)
    assert rebooked.success
    assert rebooked.data.id != booking.id


def test_cancelling_twice_is_a_domain_error(db, slots, provider):
    booking = claim_slot(db, slots[0].id, GUEST_CLIENT).data
    assert cancel_booking(db, booking.id, actor=actor_for(provider)).success

    again = cancel_booking(db, booking.id, actor=actor_for(provider))

    assert again.error_code == "booking_not_cancellable"


def test_cancellation_in_retired_window_keeps_slot_withdrawn(db, slots, window, provider):
    booking = claim_slot(db, slots[0].id, GUEST_CLIENT).data
    assert retire_availability(db, window.id, actor_for(provider)).success

    result = cancel_booking(db, booking.id, actor=actor_for(provider))

    assert result.data["slot_outcome"] == "retired"
    slot = db.get(CalculatedSlot, slots[0].id)
    assert slot.status == SlotStatus.AVAILABLE.value
    assert slot.retired_at is not None
    assert claim_slot(db, slots[0].id, GUEST_CLIENT).error_code == "slot_withdrawn"


def test_cancellation_permissions(db, slots, client_user, other_provider):
    booking = claim_slot(db, slots[0].id, GUEST_CLIENT).data

    assert cancel_booking(db, booking.id, actor=actor_for(client_user)).error_code == "forbidden"
    assert cancel_booking(db, booking.id, actor=actor_for(other_provider)).error_code == "forbidden"
    assert cancel_booking(db, booking.id, actor=GUEST).error_code == "forbidden"
    assert cancel_booking(db, booking.id, actor=GUEST, guest_email="ADA@example.com").success


def test_provider_confirms_pending_booking(db, slots, provider, client_user):
    booking = claim_slot(db, slots[0].id, GUEST_CLIENT).data

    assert confirm_booking(db, booking.id, actor_for(client_user)).error_code == "forbidden"
    confirmed = confirm_booking(db, booking.id, actor_for(provider))
    assert confirmed.success
    assert confirmed.data.status == BookingStatus.CONFIRMED.value
    assert confirmed.data.confirmed_by_id == provider.id

    assert confirm_booking(db, booking.id, actor_for(provider)).error_code == "booking_not_pending"


def test_outcome_only_after_slot_end(db, slots, provider):
    booking = claim_slot(db, slots[0].id, GUEST_CLIENT, actor=actor_for(provider)).data
    actor = actor_for(provider)

    assert record_booking_outcome(db, booking.id, actor, "ATTENDED").error_code == "invalid_outcome"
    assert record_booking_outcome(db, booking.id, actor, "COMPLETED").error_code == "booking_not_finished"

    yesterday = utcnow() - timedelta(days=1)
    db.execute(update(CalculatedSlot).where(CalculatedSlot.id == slots[0].id)
               .values(start_time=yesterday, end_time=yesterday + timedelta(minutes=30)))
    db.commit()

    result = record_booking_outcome(db, booking.id, actor, "NO_SHOW")
    assert result.success
    assert result.data.status == BookingStatus.NO_SHOW.value
    assert record_booking_outcome(db, booking.id, actor, "COMPLETED").error_code == "booking_not_confirmed"


def test_outcome_requires_confirmation(db, slots, provider):
    booking = claim_slot(db, slots[0].id, GUEST_CLIENT).data
    assert record_booking_outcome(db, booking.id, actor_for(provider), "COMPLETED").error_code == "booking_not_confirmed"


def test_cancelled_slot_under_reported_busy_time_stays_blocked(db, slots, provider):
    slot = slots[0]
    booking = claim_slot(db, slot.id, GUEST_CLIENT).data
    busy = [BusyInterval(slot.start_time, slot.end_time, "evt-9")]
    assert len(reconcile_external_busy(db, provider.id, busy).data.conflicts) == 1

    result = cancel_booking(db, booking.id, actor=actor_for(provider))

    assert result.data["slot_outcome"] == "blocked"
    blocked = db.get(CalculatedSlot, slot.id)
    assert blocked.status == SlotStatus.BLOCKED_EXTERNAL.value
    assert blocked.blocked_by_event_id == "evt-9"
    assert claim_slot(db, slot.id, GUEST_CLIENT).error_code == "slot_unavailable"

    assert reconcile_external_busy(db, provider.id, []).data.slots_released == 1
    assert claim_slot(db, slot.id, GUEST_CLIENT).success


def test_cancellation_racing_a_claim_is_seen_one_way(db, session_factory, slots):
    rounds = []
    for slot in slots:
        slot_id = slot.id
        booking_id = claim_slot(db, slot_id, GUEST_CLIENT).data.id
        db.rollback()
        rounds.append((slot_id, booking_id))

    for slot_id, booking_id in rounds:
        barrier = Barrier(2)

        def cancel():
            session = session_factory()
            try:
                barrier.wait()
                return cancel_booking(session, booking_id, guest_email="ada@example.com")
            finally:
                session.close()

        def claim():
            session = session_factory()
            try:
                barrier.wait()
                return claim_slot(session, slot_id, ClientIdentity(guest_name="Grace", guest_email="grace@example.com"))
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            cancelled, claimed = pool.submit(cancel), pool.submit(claim)
            cancelled, claimed = cancelled.result(), claimed.result()

        assert cancelled.success
        session = session_factory()
        try:
            active = session.query(Booking).filter(Booking.slot_id == slot_id,
                                                   Booking.status != BookingStatus.CANCELLED.value).all()
            status = session.get(CalculatedSlot, slot_id).status
        finally:
            session.close()
        if claimed.success:
            assert [b.id for b in active] == [claimed.data.id]
            assert status == SlotStatus.BOOKED.value
        else:
            assert claimed.error_code == "slot_unavailable"
            assert active == []
            assert status == SlotStatus.AVAILABLE.value
