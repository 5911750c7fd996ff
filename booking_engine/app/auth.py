# auth.py
from inspect import iscoroutinefunction
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from .models import User
from .dependencies import get_db, UserRole
import os
import logging

# Get JWT secret key from environment variable
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


@dataclass(frozen=True)
class Actor:
    """The caller of a core operation. A guest has no user id and no role."""
    user_id: Optional[int] = None
    role: Optional[str] = None
    organization_id: Optional[int] = None

    @property
    def is_guest(self):
        return self.user_id is None

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN.value

    @property
    def provider_id(self):
        return self.user_id if self.role == UserRole.PROVIDER.value else None

    def is_provider(self, provider_id):
        return self.provider_id is not None and self.provider_id == provider_id

    def is_member_of(self, organization_id):
        return (organization_id is not None and self.role == UserRole.ORGANIZATION.value
                and self.organization_id == organization_id)


GUEST = Actor()


def actor_for(user: Optional[User]) -> Actor:
    if user is None:
        return GUEST
    return Actor(user_id=user.id, role=user.role, organization_id=user.organization_id)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def authenticate_user(db: Session, email: str, password: str):
    user = db.query(User).filter(User.email == email).first()
    if not user:
        logging.error(f"User not found: {email}")
        return False
    if not verify_password(password, user.hashed_password):
        logging.error(f"Password verification failed for user: {email}")
        return False
    return user


def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def _user_from_token(token: str, db: Session):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError as e:
        logging.error(f"JWTError: {str(e)}")
        raise credentials_exception
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise credentials_exception
    return user


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    return _user_from_token(token, db)


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)):
    """Resolve the bearer token when one is sent; guests get None."""
    if not token:
        return None
    return _user_from_token(token, db)


def role_required(required_roles):
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, current_user: User = Depends(get_current_user), **kwargs):
            if current_user.role not in required_roles and current_user.role != UserRole.ADMIN.value:
                raise HTTPException(status_code=403, detail="User does not have the required role")
            return await func(*args, current_user=current_user, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, current_user: User = Depends(get_current_user), **kwargs):
            if current_user.role not in required_roles and current_user.role != UserRole.ADMIN.value:
                raise HTTPException(status_code=403, detail="User does not have the required role")
            return func(*args, current_user=current_user, **kwargs)

        if iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper

    return decorator
