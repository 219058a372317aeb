import logging
from typing import Optional

from jose import JWTError
from sqlalchemy.orm import Session

from .. import auth, models, schemas
from ..config import settings
from ..exceptions import BadRequestError, ForbiddenError, NotFoundError, UnauthorizedError
from ..pagination import PageParams, paginate, search_filter
from . import subscriptions

logger = logging.getLogger("tourhub")


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email.lower()).first()


def _new_user(db: Session, email: str, password: str, role: models.UserRole) -> models.User:
    if get_user_by_email(db, email) is not None:
        raise BadRequestError("User with this email already exists")
    db_user = models.User(
        email=email.lower(),
        hashed_password=auth.hash_password(password),
        role=role,
        status=models.UserStatus.ACTIVE,
        need_password_change=False,
    )
    db.add(db_user)
    db.flush()
    return db_user


def create_tourist(db: Session, data: schemas.TouristRegister) -> models.User:
    db_user = _new_user(db, data.email, data.password, models.UserRole.TOURIST)
    db.add(models.Tourist(
        user_id=db_user.id,
        name=data.name,
        email=db_user.email,
        location=data.location,
        bio=data.bio,
        profile_photo=data.profile_photo,
    ))
    db.commit()
    db.refresh(db_user)
    return db_user


def create_host(db: Session, data: schemas.HostRegister) -> models.User:
    """New hosts start on the free plan limits."""
    db_user = _new_user(db, data.email, data.password, models.UserRole.HOST)
    tour_limit, blog_limit = subscriptions.free_limits(db)
    db.add(models.Host(
        user_id=db_user.id,
        name=data.name,
        email=db_user.email,
        phone=data.phone,
        bio=data.bio,
        profile_photo=data.profile_photo,
        tour_limit=tour_limit,
        current_tour_count=0,
        blog_limit=blog_limit,
        current_blog_count=0,
    ))
    db.commit()
    db.refresh(db_user)
    return db_user


def create_admin(db: Session, data: schemas.AdminCreate, need_password_change: bool = False) -> models.User:
    db_user = _new_user(db, data.email, data.password, models.UserRole.ADMIN)
    db_user.need_password_change = need_password_change
    db.add(models.Admin(
        user_id=db_user.id,
        name=data.name,
        email=db_user.email,
        contact_number=data.contact_number,
    ))
    db.commit()
    db.refresh(db_user)
    return db_user


# --- Authentication ---

def login(db: Session, data: schemas.LoginRequest) -> schemas.TokenResponse:
    db_user = get_user_by_email(db, data.email)
    if db_user is None or not auth.verify_password(data.password, db_user.hashed_password):
        raise UnauthorizedError("Invalid email or password")
    if db_user.status != models.UserStatus.ACTIVE:
        raise UnauthorizedError("Your account is not active")

    return schemas.TokenResponse(
        access_token=auth.create_token(db_user, auth.ACCESS),
        refresh_token=auth.create_token(db_user, auth.REFRESH),
        need_password_change=db_user.need_password_change,
    )


def refresh_access_token(db: Session, refresh_token: str) -> schemas.AccessTokenResponse:
    try:
        payload = auth.decode_token(refresh_token, auth.REFRESH)
        user_id = int(payload["sub"])
    except (JWTError, ValueError, KeyError):
        raise UnauthorizedError("Invalid refresh token")

    db_user = db.get(models.User, user_id)
    if db_user is None or db_user.status != models.UserStatus.ACTIVE:
        raise UnauthorizedError("Invalid refresh token")
    return schemas.AccessTokenResponse(access_token=auth.create_token(db_user, auth.ACCESS))


def change_password(db: Session, user: models.User, data: schemas.ChangePasswordRequest) -> None:
    if not auth.verify_password(data.old_password, user.hashed_password):
        raise BadRequestError("Old password is incorrect")
    user.hashed_password = auth.hash_password(data.new_password)
    user.need_password_change = False
    db.commit()


def create_password_reset_link(db: Session, email: str) -> Optional[str]:
    """
    Returns the reset link for an active user, or None.
    The caller answers the same way in both cases.
    """
    db_user = get_user_by_email(db, email)
    if db_user is None or db_user.status != models.UserStatus.ACTIVE:
        logger.info(f"Password reset requested for unknown or inactive email {email}")
        return None
    token = auth.create_token(db_user, auth.RESET)
    return f"{settings.FRONTEND_URL}/reset-password?userId={db_user.id}&token={token}"


def reset_password(db: Session, token: str, new_password: str) -> None:
    try:
        payload = auth.decode_token(token, auth.RESET)
        user_id = int(payload["sub"])
    except (JWTError, ValueError, KeyError):
        raise ForbiddenError("Invalid or expired reset token")

    db_user = db.get(models.User, user_id)
    if db_user is None or db_user.status != models.UserStatus.ACTIVE:
        raise ForbiddenError("Invalid or expired reset token")

    db_user.hashed_password = auth.hash_password(new_password)
    db_user.need_password_change = False
    db.commit()


# --- User management ---

def list_users(
        db: Session,
        params: PageParams,
        search: Optional[str] = None,
        role: Optional[models.UserRole] = None,
        status: Optional[models.UserStatus] = None,
):
    query = db.query(models.User)
    condition = search_filter(search, models.User.email)
    if condition is not None:
        query = query.filter(condition)
    if role is not None:
        query = query.filter(models.User.role == role)
    if status is not None:
        query = query.filter(models.User.status == status)
    return paginate(query, params, models.User)


def update_profile(db: Session, user: models.User, data: schemas.ProfileUpdate) -> models.User:
    changes = data.model_dump(exclude_unset=True)

    if user.role == models.UserRole.TOURIST:
        allowed = {"name", "bio", "location", "profile_photo"}
        profile = user.tourist
    elif user.role == models.UserRole.HOST:
        allowed = {"name", "bio", "phone", "profile_photo", "stripe_account_id"}
        profile = user.host
    else:
        allowed = {"name", "contact_number"}
        profile = user.admin

    if profile is None:
        raise NotFoundError("Profile not found")

    for key, value in changes.items():
        if key in allowed:
            setattr(profile, key, value)

    db.commit()
    db.refresh(user)
    return user


def change_user_status(
        db: Session, user_id: int, status: models.UserStatus, acting_user: models.User
) -> models.User:
    db_user = db.get(models.User, user_id)
    if db_user is None:
        raise NotFoundError("User not found")
    if db_user.id == acting_user.id:
        raise BadRequestError("You cannot change your own status")
    db_user.status = status
    db.commit()
    db.refresh(db_user)
    logger.info(f"User {user_id} status changed to {status.value} by user {acting_user.id}")
    return db_user


def delete_user(db: Session, user_id: int, acting_user: models.User) -> models.User:
    """Soft delete: the account is kept with status DELETED."""
    return change_user_status(db, user_id, models.UserStatus.DELETED, acting_user)
