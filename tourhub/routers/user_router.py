from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_admin, get_current_user
from ..database import get_db
from ..pagination import PageParams

router = APIRouter(prefix="/users", tags=["Users"])


@router.post("/register/tourist", response_model=schemas.ProfileRead, status_code=status.HTTP_201_CREATED)
def register_tourist(data: schemas.TouristRegister, db: Session = Depends(get_db)):
    return crud.users.create_tourist(db, data)


@router.post("/register/host", response_model=schemas.ProfileRead, status_code=status.HTTP_201_CREATED)
def register_host(data: schemas.HostRegister, db: Session = Depends(get_db)):
    return crud.users.create_host(db, data)


@router.post("/admin", response_model=schemas.ProfileRead, status_code=status.HTTP_201_CREATED)
def create_admin(
        data: schemas.AdminCreate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.users.create_admin(db, data)


@router.get("/", response_model=schemas.Page[schemas.UserRead])
def list_users(
        search: Optional[str] = None,
        role: Optional[models.UserRole] = None,
        user_status: Optional[models.UserStatus] = Query(None, alias="status"),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    items, meta = crud.users.list_users(db, params, search=search, role=role, status=user_status)
    return {"meta": meta, "data": items}


@router.get("/me", response_model=schemas.ProfileRead)
def my_profile(current_user: models.User = Depends(get_current_user)):
    return current_user


@router.patch("/me", response_model=schemas.ProfileRead)
def update_my_profile(
        data: schemas.ProfileUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    return crud.users.update_profile(db, current_user, data)


@router.patch("/{user_id}/status", response_model=schemas.UserRead)
def change_user_status(
        user_id: int,
        data: schemas.UserStatusUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.users.change_user_status(db, user_id, data.status, current_user)


@router.delete("/{user_id}", response_model=schemas.UserRead)
def delete_user(
        user_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.users.delete_user(db, user_id, current_user)
