import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_host, require_roles
from ..database import get_db
from ..limits import require_tour_quota
from ..pagination import PageParams

router = APIRouter(prefix="/tour", tags=["Tours"])

get_tour_manager = require_roles(models.UserRole.HOST, models.UserRole.ADMIN)


@router.post("/", response_model=schemas.TourRead, status_code=status.HTTP_201_CREATED)
def create_tour(
        data: schemas.TourCreate,
        db: Session = Depends(get_db),
        host: models.Host = Depends(require_tour_quota),
):
    return crud.tours.create_tour(db, host, data)


@router.get("/", response_model=schemas.Page[schemas.TourRead])
def list_tours(
        search: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        start_date: Optional[datetime.datetime] = None,
        end_date: Optional[datetime.datetime] = None,
        category: Optional[str] = None,
        difficulty: Optional[str] = None,
        destination: Optional[str] = None,
        is_active: Optional[bool] = True,
        is_featured: Optional[bool] = None,
        host_id: Optional[int] = None,
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
):
    items, meta = crud.tours.list_tours(
        db,
        params,
        search=search,
        min_price=min_price,
        max_price=max_price,
        start_date=schemas.to_naive_utc(start_date),
        end_date=schemas.to_naive_utc(end_date),
        category=category,
        difficulty=difficulty,
        destination=destination,
        is_active=is_active,
        is_featured=is_featured,
        host_id=host_id,
    )
    return {"meta": meta, "data": items}


@router.get("/my-tours", response_model=schemas.Page[schemas.TourRead])
def my_tours(
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    items, meta = crud.tours.list_tours(db, params, host_id=host.id)
    return {"meta": meta, "data": items}


@router.get("/{tour_id}", response_model=schemas.TourRead)
def read_tour(tour_id: int, db: Session = Depends(get_db)):
    return crud.tours.view_tour(db, tour_id)


@router.patch("/{tour_id}", response_model=schemas.TourRead)
def update_tour(
        tour_id: int,
        data: schemas.TourUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_tour_manager),
):
    return crud.tours.update_tour(db, tour_id, current_user, data)


@router.delete("/{tour_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tour(
        tour_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_tour_manager),
):
    crud.tours.delete_tour(db, tour_id, current_user)


@router.post("/{tour_id}/complete", response_model=schemas.TourCompletion)
def complete_tour(
        tour_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_tour_manager),
):
    return crud.tours.complete_tour(db, tour_id, current_user)
