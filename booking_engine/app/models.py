# models.py
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index, Boolean,
                        CheckConstraint, Numeric, Text)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    """Current time as a naive UTC datetime, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WindowStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class SchedulingRule(str, Enum):
    CONTINUOUS = "CONTINUOUS"
    FIXED_INTERVAL = "FIXED_INTERVAL"
    CUSTOM_INTERVAL = "CUSTOM_INTERVAL"


class MaterializationStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class SlotStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    BLOCKED_EXTERNAL = "BLOCKED_EXTERNAL"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


# Statuses that hold a slot. A cancelled booking stays as history but frees its slot.
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.COMPLETED.value,
    BookingStatus.NO_SHOW.value,
)


class OwnerKind(str, Enum):
    PROVIDER = "provider"
    ORGANIZATION = "organization"
    LOCATION = "location"


@dataclass(frozen=True)
class WindowOwner:
    """Who a window belongs to, for billing and visibility.

    PROVIDER: the provider alone, no organization and no location.
    ORGANIZATION: an organization on behalf of the provider, optionally at one of its locations.
    LOCATION: the provider's own practice location, no organization.
    """
    kind: OwnerKind
    provider_id: int
    organization_id: Optional[int] = None
    location_id: Optional[int] = None

    def __post_init__(self):
        if self.provider_id is None:
            raise ValueError("A window owner always names a provider")
        if self.kind == OwnerKind.PROVIDER and (self.organization_id is not None or self.location_id is not None):
            raise ValueError("Provider-owned windows carry neither organization nor location")
        if self.kind == OwnerKind.ORGANIZATION and self.organization_id is None:
            raise ValueError("Organization-owned windows require an organization id")
        if self.kind == OwnerKind.LOCATION and (self.location_id is None or self.organization_id is not None):
            raise ValueError("Location-owned windows require a location id and no organization")

    @classmethod
    def infer(cls, provider_id, organization_id=None, location_id=None):
        if organization_id is not None:
            return cls(OwnerKind.ORGANIZATION, provider_id, organization_id, location_id)
        if location_id is not None:
            return cls(OwnerKind.LOCATION, provider_id, location_id=location_id)
        return cls(OwnerKind.PROVIDER, provider_id)


class Organization(Base):
    __tablename__ = 'organizations'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)

    members = relationship("User", back_populates="organization")


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False)  # 'provider', 'client', 'organization' or 'admin'
    organization_id = Column(Integer, ForeignKey('organizations.id'), nullable=True)

    organization = relationship("Organization", back_populates="members")
    availability_windows = relationship("AvailabilityWindow", back_populates="provider",
                                        foreign_keys="AvailabilityWindow.provider_id")


class Location(Base):
    __tablename__ = 'locations'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    organization_id = Column(Integer, ForeignKey('organizations.id'), nullable=True)


class Service(Base):
    __tablename__ = 'services'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)


class AvailabilityWindow(Base):
    __tablename__ = 'availability_windows'
    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    organization_id = Column(Integer, ForeignKey('organizations.id'), nullable=True)
    location_id = Column(Integer, ForeignKey('locations.id'), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    scheduling_rule = Column(String, nullable=False, default=SchedulingRule.CONTINUOUS.value)
    scheduling_interval = Column(Integer, nullable=True)  # minutes; alignment or start-to-start step
    status = Column(String, nullable=False, default=WindowStatus.PENDING.value)
    is_provider_created = Column(Boolean, nullable=False, default=False)
    created_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    accepted_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    rejected_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    retired_at = Column(DateTime, nullable=True)
    materialization_status = Column(String, nullable=False, default=MaterializationStatus.NOT_REQUIRED.value)
    materialization_error = Column(Text, nullable=True)
    materialized_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    provider = relationship("User", back_populates="availability_windows", foreign_keys=[provider_id])
    services = relationship("ServiceConfig", back_populates="window", cascade="all, delete-orphan",
                            order_by="ServiceConfig.position")
    slots = relationship("CalculatedSlot", back_populates="window", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('end_time > start_time', name='ck_window_time_order'),
        Index('idx_window_provider_start', 'provider_id', 'start_time'),
        Index('idx_window_status', 'status'),
    )

    @property
    def owner(self) -> WindowOwner:
        return WindowOwner.infer(self.provider_id, self.organization_id, self.location_id)


class ServiceConfig(Base):
    __tablename__ = 'window_services'
    id = Column(Integer, primary_key=True, index=True)
    window_id = Column(Integer, ForeignKey('availability_windows.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(Integer, ForeignKey('services.id'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    duration_minutes = Column(Integer, nullable=False)
    gap_minutes = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_online_available = Column(Boolean, nullable=False, default=False)
    is_in_person = Column(Boolean, nullable=False, default=True)
    location_id = Column(Integer, ForeignKey('locations.id'), nullable=True)

    window = relationship("AvailabilityWindow", back_populates="services")

    __table_args__ = (
        UniqueConstraint('window_id', 'service_id', name='_window_service_uc'),
        CheckConstraint('duration_minutes > 0', name='ck_service_duration_positive'),
        CheckConstraint('gap_minutes >= 0', name='ck_service_gap_non_negative'),
    )


class CalculatedSlot(Base):
    __tablename__ = 'calculated_slots'
    id = Column(Integer, primary_key=True, index=True)
    window_id = Column(Integer, ForeignKey('availability_windows.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(Integer, ForeignKey('services.id'), nullable=False)
    service_config_id = Column(Integer, ForeignKey('window_services.id', ondelete='SET NULL'), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_online_available = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default=SlotStatus.AVAILABLE.value)
    blocked_by_event_id = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    retired_at = Column(DateTime, nullable=True)
    last_calculated = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    window = relationship("AvailabilityWindow", back_populates="slots")
    bookings = relationship("Booking", back_populates="slot")

    __table_args__ = (
        UniqueConstraint('window_id', 'service_id', 'start_time', name='_window_service_start_uc'),
        CheckConstraint('end_time > start_time', name='ck_slot_time_order'),
        Index('idx_slot_window_status', 'window_id', 'status'),
        Index('idx_slot_start_time', 'start_time'),
    )

    @property
    def is_live(self):
        return self.retired_at is None


class ExternalBusyInterval(Base):
    """Last busy snapshot reported for a provider, optionally scoped to one location."""
    __tablename__ = 'external_busy_intervals'
    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    location_id = Column(Integer, ForeignKey('locations.id', ondelete='CASCADE'), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    event_id = Column(String, nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint('end_time > start_time', name='ck_busy_time_order'),
        Index('idx_busy_provider_start', 'provider_id', 'start_time'),
    )


class Booking(Base):
    __tablename__ = 'bookings'
    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey('calculated_slots.id', ondelete='SET NULL'), nullable=True)
    client_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    is_guest_booking = Column(Boolean, nullable=False, default=False)
    guest_name = Column(String, nullable=True)
    guest_email = Column(String, nullable=True)
    guest_phone = Column(String, nullable=True)
    status = Column(String, nullable=False, default=BookingStatus.PENDING.value)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_online = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    confirmed_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    slot = relationship("CalculatedSlot", back_populates="bookings")
    client = relationship("User", foreign_keys=[client_id])


# At most one active booking per slot, enforced by the database for every process.
Index(
    'uq_booking_active_slot',
    Booking.slot_id,
    unique=True,
    postgresql_where=Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    sqlite_where=Booking.status.in_(ACTIVE_BOOKING_STATUSES),
)
