from fastapi import APIRouter, BackgroundTasks, HTTPException, Body, Query, Depends, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from .models import AvailabilityWindow, Organization, User
from .booking import ClientIdentity, cancel_booking, claim_slot, confirm_booking, record_booking_outcome
from .dependencies import get_db, get_notifier, get_slot_cache, UserRole
from .auth import (actor_for, authenticate_user, create_access_token, get_current_user, get_optional_user,
                   get_password_hash, role_required, ACCESS_TOKEN_EXPIRE_MINUTES)
from .errors import ErrorKind
from .materializer import find_unmaterialized_windows, materialize_slots
from .reconciler import BusyInterval, reconcile_external_busy
from .utils import get_available_slots, serialize_booking, serialize_window
from .workflow import (AvailabilityProposal, ServiceConfigInput, accept_availability, delete_availability,
                       get_workflow_statistics, propose_availability, reject_availability, retire_availability,
                       update_window_services)
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel
import logging

router = APIRouter()

ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.DOMAIN_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNEXPECTED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class UserRegistration(BaseModel):
    name: str
    email: str
    password: str
    role: str
    phone: Optional[str] = None
    organization_id: Optional[int] = None


class ServiceConfigRequest(BaseModel):
    service_id: int
    duration_minutes: int
    gap_minutes: int = 0
    price: Decimal = Decimal("0")
    is_online_available: bool = False
    is_in_person: bool = True
    location_id: Optional[int] = None


class AvailabilityRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    services: List[ServiceConfigRequest]
    provider_id: Optional[int] = None
    organization_id: Optional[int] = None
    location_id: Optional[int] = None
    scheduling_rule: str = "CONTINUOUS"
    scheduling_interval: Optional[int] = None


class RejectAvailabilityRequest(BaseModel):
    reason: Optional[str] = None


class UpdateServicesRequest(BaseModel):
    services: List[ServiceConfigRequest]


class ClaimSlotRequest(BaseModel):
    client_id: Optional[int] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    notes: Optional[str] = None


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None
    guest_email: Optional[str] = None


class BookingOutcomeRequest(BaseModel):
    outcome: str


class BusyIntervalRequest(BaseModel):
    start: datetime
    end: datetime
    event_id: Optional[str] = None


class ExternalBusyRequest(BaseModel):
    busy_intervals: List[BusyIntervalRequest]
    location_id: Optional[int] = None


def unwrap(result):
    """Return a successful ServiceResult's data, or raise the matching HTTP error."""
    if not result.success:
        raise HTTPException(status_code=ERROR_STATUS_CODES[result.error.kind], detail=result.error.to_dict())
    return result.data


def _service_inputs(services):
    return [ServiceConfigInput(**config.model_dump()) for config in services]


@router.post("/register")
async def register_user(
        user: UserRegistration = Body(None),
        name: str = Query(None),
        email: str = Query(None),
        password: str = Query(None),
        role: str = Query(None),
        db: Session = Depends(get_db)
):
    name = user.name if user else name
    email = user.email if user else email
    password = user.password if user else password
    role = user.role if user else role
    phone = user.phone if user else None
    organization_id = user.organization_id if user else None

    if not all([name, email, password, role]):
        raise HTTPException(status_code=400, detail="All fields are required")

    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    if role not in [r.value for r in UserRole]:
        raise HTTPException(status_code=400, detail="Invalid role")

    if role == UserRole.ORGANIZATION.value and organization_id is None:
        raise HTTPException(status_code=400, detail="Organization members need an organization_id")
    if organization_id is not None and db.get(Organization, organization_id) is None:
        raise HTTPException(status_code=400, detail="Organization not found")

    hashed_password = get_password_hash(password)
    new_user = User(name=name, email=email, phone=phone, hashed_password=hashed_password, role=role,
                    organization_id=organization_id)
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    return {"message": "User registered successfully", "id": new_user.id}


@router.post("/token")
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.email}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}


@router.post("/availability")
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def create_availability(
        request: AvailabilityRequest,
        background_tasks: BackgroundTasks,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache),
        notifier=Depends(get_notifier)
):
    provider_id = request.provider_id
    if provider_id is None and current_user.role == UserRole.PROVIDER.value:
        provider_id = current_user.id
    if provider_id is None:
        raise HTTPException(status_code=400, detail="provider_id is required")

    organization_id = request.organization_id
    if organization_id is None and current_user.role == UserRole.ORGANIZATION.value:
        organization_id = current_user.organization_id

    logging.info(f"Availability proposed for provider {provider_id} by user {current_user.id}")
    proposal = AvailabilityProposal(
        provider_id=provider_id,
        start_time=request.start_time,
        end_time=request.end_time,
        services=_service_inputs(request.services),
        organization_id=organization_id,
        location_id=request.location_id,
        scheduling_rule=request.scheduling_rule,
        scheduling_interval=request.scheduling_interval,
    )
    outcome = unwrap(propose_availability(db, actor_for(current_user), proposal, cache=cache, notifier=notifier,
                                          background_tasks=background_tasks))
    return {"message": "Availability saved", **outcome.to_dict()}


@router.get("/availability/unmaterialized")
@role_required([UserRole.ADMIN.value])
def list_unmaterialized_availability(
        limit: int = Query(100, ge=1, le=1000),
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db)
):
    return [serialize_window(window) for window in find_unmaterialized_windows(db, limit=limit)]


@router.get("/availability/statistics")
def get_availability_statistics(
        entity_type: str = Query(...),
        entity_id: int = Query(...),
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache)
):
    actor = actor_for(current_user)
    allowed = (actor.is_admin
               or (entity_type == "provider" and actor.is_provider(entity_id))
               or (entity_type == "organization" and actor.is_member_of(entity_id)))
    if not allowed:
        raise HTTPException(status_code=403, detail="Not authorized to view these statistics")
    return unwrap(get_workflow_statistics(db, entity_type, entity_id, cache=cache))


@router.post("/availability/{window_id}/accept")
@role_required([UserRole.PROVIDER.value])
def accept_proposed_availability(
        window_id: int,
        background_tasks: BackgroundTasks,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache),
        notifier=Depends(get_notifier)
):
    outcome = unwrap(accept_availability(db, window_id, actor_for(current_user), cache=cache, notifier=notifier,
                                         background_tasks=background_tasks))
    return {"message": "Availability accepted", **outcome.to_dict()}


@router.post("/availability/{window_id}/reject")
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def reject_proposed_availability(
        window_id: int,
        background_tasks: BackgroundTasks,
        request: RejectAvailabilityRequest = Body(None),
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache),
        notifier=Depends(get_notifier)
):
    reason = request.reason if request else None
    outcome = unwrap(reject_availability(db, window_id, actor_for(current_user), reason=reason, cache=cache,
                                         notifier=notifier, background_tasks=background_tasks))
    return {"message": "Availability rejected", **outcome.to_dict()}


@router.put("/availability/{window_id}/services")
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def update_availability_services(
        window_id: int,
        request: UpdateServicesRequest,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache)
):
    outcome = unwrap(update_window_services(db, window_id, actor_for(current_user), _service_inputs(request.services),
                                            cache=cache))
    return {"message": "Services updated", **outcome.to_dict()}


@router.post("/availability/{window_id}/retire")
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def retire_window(
        window_id: int,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache)
):
    return unwrap(retire_availability(db, window_id, actor_for(current_user), cache=cache))


@router.delete("/availability/{window_id}")
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def delete_window(
        window_id: int,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache)
):
    return unwrap(delete_availability(db, window_id, actor_for(current_user), cache=cache))


@router.post("/availability/{window_id}/materialize")
@role_required([UserRole.PROVIDER.value])
def materialize_window_slots(
        window_id: int,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache)
):
    window = db.get(AvailabilityWindow, window_id)
    if not window:
        raise HTTPException(status_code=404, detail="Availability window not found")
    if not actor_for(current_user).is_admin and window.provider_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized to materialize this availability")
    return unwrap(materialize_slots(db, window_id, cache=cache)).to_dict()


@router.get('/providers/{provider_id}/time-slots')
def get_available_time_slots(
        provider_id: int,
        start_date: date = Query(None),
        end_date: date = Query(None),
        service_id: int = Query(None),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache),
        current_user: Optional[User] = Depends(get_optional_user)
):
    provider = db.query(User).filter_by(id=provider_id, role=UserRole.PROVIDER.value).first()
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")

    if not start_date:
        start_date = datetime.now(timezone.utc).date()
    if not end_date:
        end_date = start_date + timedelta(weeks=1)
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")

    return get_available_slots(db, provider_id, start_date, end_date, cache=cache, service_id=service_id)


@router.post('/slots/{slot_id}/claim')
def claim_time_slot(
        slot_id: int,
        background_tasks: BackgroundTasks,
        request: ClaimSlotRequest = Body(None),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache),
        notifier=Depends(get_notifier),
        current_user: Optional[User] = Depends(get_optional_user)
):
    request = request or ClaimSlotRequest()
    if current_user is not None and current_user.role == UserRole.CLIENT.value:
        client = ClientIdentity(client_id=current_user.id)
    else:
        client = ClientIdentity(client_id=request.client_id, guest_name=request.guest_name,
                                guest_email=request.guest_email, guest_phone=request.guest_phone)

    booking = unwrap(claim_slot(db, slot_id, client, actor=actor_for(current_user), notes=request.notes, cache=cache,
                                notifier=notifier, background_tasks=background_tasks))
    return {"message": "Slot booked successfully", "booking": serialize_booking(booking)}


@router.post('/bookings/{booking_id}/cancel')
def cancel_slot_booking(
        booking_id: int,
        background_tasks: BackgroundTasks,
        request: CancelBookingRequest = Body(None),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache),
        notifier=Depends(get_notifier),
        current_user: Optional[User] = Depends(get_optional_user)
):
    request = request or CancelBookingRequest()
    outcome = unwrap(cancel_booking(db, booking_id, actor=actor_for(current_user), reason=request.reason,
                                    guest_email=request.guest_email, cache=cache, notifier=notifier,
                                    background_tasks=background_tasks))
    return {
        "message": "Booking cancelled successfully",
        "booking": serialize_booking(outcome["booking"]),
        "slot_outcome": outcome["slot_outcome"],
    }


@router.post('/bookings/{booking_id}/confirm')
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def confirm_slot_booking(
        booking_id: int,
        background_tasks: BackgroundTasks,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        notifier=Depends(get_notifier)
):
    booking = unwrap(confirm_booking(db, booking_id, actor_for(current_user), notifier=notifier,
                                     background_tasks=background_tasks))
    return {"message": "Booking confirmed successfully", "booking": serialize_booking(booking)}


@router.post('/bookings/{booking_id}/outcome')
@role_required([UserRole.PROVIDER.value, UserRole.ORGANIZATION.value])
def record_slot_booking_outcome(
        booking_id: int,
        request: BookingOutcomeRequest,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db)
):
    booking = unwrap(record_booking_outcome(db, booking_id, actor_for(current_user), request.outcome))
    return {"message": "Booking outcome recorded", "booking": serialize_booking(booking)}


@router.post('/providers/{provider_id}/external-busy')
@role_required([UserRole.PROVIDER.value])
def reconcile_provider_calendar(
        provider_id: int,
        request: ExternalBusyRequest,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        cache=Depends(get_slot_cache)
):
    intervals = [BusyInterval(interval.start, interval.end, interval.event_id) for interval in request.busy_intervals]
    result = unwrap(reconcile_external_busy(db, provider_id, intervals, actor=actor_for(current_user),
                                            location_id=request.location_id, cache=cache))
    return result.to_dict()
