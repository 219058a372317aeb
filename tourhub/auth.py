import datetime
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import APIKeyHeader
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .database import get_db
from .exceptions import ForbiddenError, UnauthorizedError

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"

_SECRETS = {
    ACCESS: lambda: settings.SECRET_KEY,
    REFRESH: lambda: settings.REFRESH_SECRET_KEY,
    RESET: lambda: settings.RESET_PASSWORD_SECRET_KEY,
}
_LIFETIMES = {
    ACCESS: lambda: settings.ACCESS_TOKEN_EXPIRE_MINUTES,
    REFRESH: lambda: settings.REFRESH_TOKEN_EXPIRE_MINUTES,
    RESET: lambda: settings.RESET_TOKEN_EXPIRE_MINUTES,
}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_token(user: models.User, token_type: str = ACCESS) -> str:
    expire = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
        minutes=_LIFETIMES[token_type]()
    )
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "type": token_type,
        "exp": expire,
    }
    return jwt.encode(payload, _SECRETS[token_type](), algorithm=settings.ALGORITHM)


def decode_token(token: str, token_type: str = ACCESS) -> dict:
    """
    Decodes and validates a JWT of the given type.
    Raises JWTError if the signature, expiry or type does not match.
    """
    payload = jwt.decode(token, _SECRETS[token_type](), algorithms=[settings.ALGORITHM])
    if payload.get("type") != token_type or payload.get("sub") is None:
        raise JWTError("Unexpected token type")
    return payload


def extract_bearer_token(header_value: Optional[str]) -> str:
    if not header_value:
        raise UnauthorizedError("Not authenticated")
    parts = header_value.split()
    if len(parts) == 1:
        return parts[0]
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Could not validate credentials")
    return parts[1]


def get_current_user(
        token: Annotated[Optional[str], Depends(api_key_header)],
        db: Session = Depends(get_db),
) -> models.User:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header and loads the user.
    """
    jwt_token = extract_bearer_token(token)
    try:
        payload = decode_token(jwt_token, ACCESS)
        user_id = int(payload["sub"])
    except (JWTError, ValueError, KeyError):
        raise UnauthorizedError("Could not validate credentials")

    user = db.get(models.User, user_id)
    if user is None or user.status != models.UserStatus.ACTIVE:
        raise UnauthorizedError("Could not validate credentials")
    return user


def get_optional_user(
        token: Annotated[Optional[str], Depends(api_key_header)],
        db: Session = Depends(get_db),
) -> Optional[models.User]:
    """Like get_current_user, but anonymous requests get None instead of 401."""
    if not token:
        return None
    return get_current_user(token, db)


def require_roles(*roles: models.UserRole):
    """Dependency factory gating a route to the given roles."""

    def dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role not in roles:
            raise ForbiddenError("You are not authorized to perform this action")
        return current_user

    return dependency


get_current_admin = require_roles(models.UserRole.ADMIN)
get_current_host_user = require_roles(models.UserRole.HOST)
get_current_tourist_user = require_roles(models.UserRole.TOURIST)


def get_current_host(
        current_user: models.User = Depends(get_current_host_user),
) -> models.Host:
    if current_user.host is None:
        raise ForbiddenError("Host profile not found")
    return current_user.host


def get_current_tourist(
        current_user: models.User = Depends(get_current_tourist_user),
) -> models.Tourist:
    if current_user.tourist is None:
        raise ForbiddenError("Tourist profile not found")
    return current_user.tourist
