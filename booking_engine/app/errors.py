# errors.py
import logging
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    DOMAIN_STATE = "domain_state"
    CONFLICT = "conflict"
    UNEXPECTED = "unexpected"


class BookingEngineError(Exception):
    kind = ErrorKind.UNEXPECTED
    default_code = "unexpected_error"

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(BookingEngineError):
    """Malformed input, rejected before any write."""
    kind = ErrorKind.VALIDATION
    default_code = "invalid_input"


class NotFoundError(BookingEngineError):
    kind = ErrorKind.NOT_FOUND
    default_code = "not_found"


class PermissionDeniedError(BookingEngineError):
    kind = ErrorKind.FORBIDDEN
    default_code = "forbidden"


class DomainStateError(BookingEngineError):
    """The request is well formed but not allowed in the current state."""
    kind = ErrorKind.DOMAIN_STATE
    default_code = "invalid_state"


class SlotUnavailableError(BookingEngineError):
    """Another claim got the slot first. Callers should offer a different slot."""
    kind = ErrorKind.CONFLICT
    default_code = "slot_unavailable"

    def __init__(self, slot_id):
        super().__init__(f"Slot {slot_id} is no longer available", self.default_code)
        self.slot_id = slot_id


@dataclass
class ServiceError:
    kind: ErrorKind
    code: str
    message: str

    def to_dict(self):
        return {"error": self.kind.value, "code": self.code, "message": self.message}


@dataclass
class ServiceResult:
    success: bool
    data: Any = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, data=None):
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind, code, message):
        return cls(success=False, error=ServiceError(kind=kind, code=code, message=message))

    @property
    def error_kind(self):
        return self.error.kind if self.error else None

    @property
    def error_code(self):
        return self.error.code if self.error else None


def as_result(func):
    """Run a service operation and turn its outcome into a ServiceResult.

    Domain errors are expected outcomes and are logged at INFO. Storage and
    other unexpected failures are logged with a traceback and reported as
    ``unexpected``; the session is rolled back when one is passed as the
    first argument.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return ServiceResult.ok(func(*args, **kwargs))
        except BookingEngineError as e:
            logging.info(f"{func.__name__} rejected: {e.kind.value}/{e.code}: {e.message}")
            _rollback(args)
            return ServiceResult.fail(e.kind, e.code, e.message)
        except SQLAlchemyError as e:
            logging.exception(f"Storage failure in {func.__name__}: {e}")
            _rollback(args)
            return ServiceResult.fail(ErrorKind.UNEXPECTED, "storage_failure", "The booking store is unavailable")
        except Exception as e:
            logging.exception(f"Unexpected failure in {func.__name__}: {e}")
            _rollback(args)
            return ServiceResult.fail(ErrorKind.UNEXPECTED, "unexpected_error", "The operation failed unexpectedly")

    return wrapper


def _rollback(args):
    db = args[0] if args else None
    if db is not None and hasattr(db, "rollback"):
        db.rollback()
