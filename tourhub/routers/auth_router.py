from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import api_key_header, extract_bearer_token, get_current_user
from ..database import get_db
from ..emailer import send_password_reset_email
from ..rate_limits import forgot_password_limiter, login_limiter

router = APIRouter(prefix="/auth", tags=["Auth"])

FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset link has been sent"


@router.post("/login", response_model=schemas.TokenResponse, dependencies=[Depends(login_limiter)])
def login(data: schemas.LoginRequest, db: Session = Depends(get_db)):
    return crud.users.login(db, data)


@router.post("/refresh-token", response_model=schemas.AccessTokenResponse)
def refresh_token(data: schemas.RefreshTokenRequest, db: Session = Depends(get_db)):
    return crud.users.refresh_access_token(db, data.refresh_token)


@router.post("/change-password", response_model=schemas.MessageResponse)
def change_password(
        data: schemas.ChangePasswordRequest,
        current_user: models.User = Depends(get_current_user),
        db: Session = Depends(get_db),
):
    crud.users.change_password(db, current_user, data)
    return {"message": "Password changed successfully"}


@router.post(
    "/forgot-password",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(forgot_password_limiter)],
)
def forgot_password(
        data: schemas.ForgotPasswordRequest,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
):
    reset_link = crud.users.create_password_reset_link(db, data.email)
    if reset_link is not None:
        background_tasks.add_task(send_password_reset_email, data.email, reset_link)
    return {"message": FORGOT_PASSWORD_MESSAGE}


@router.post("/reset-password", response_model=schemas.MessageResponse)
def reset_password(
        data: schemas.ResetPasswordRequest,
        token: Annotated[Optional[str], Depends(api_key_header)],
        db: Session = Depends(get_db),
):
    """
    The reset token from the emailed link goes in the Authorization header.
    """
    crud.users.reset_password(db, extract_bearer_token(token), data.new_password)
    return {"message": "Password reset successfully"}


@router.get("/me", response_model=schemas.ProfileRead)
def read_me(current_user: models.User = Depends(get_current_user)):
    return current_user
