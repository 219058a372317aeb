from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_tourist_user, get_current_user
from ..database import get_db
from ..pagination import PageParams

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.post("/", response_model=schemas.ReviewRead, status_code=status.HTTP_201_CREATED)
def create_review(
        data: schemas.ReviewCreate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_tourist_user),
):
    """
    Review a completed booking. New reviews wait for admin approval before
    they count towards the tour and host ratings.
    """
    return crud.reviews.create_review(db, current_user, data)


@router.get("/", response_model=schemas.Page[schemas.ReviewRead])
def list_reviews(
        tour_id: Optional[int] = None,
        host_id: Optional[int] = None,
        rating: Optional[int] = Query(None, ge=1, le=5),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
):
    items, meta = crud.reviews.list_reviews(db, params, tour_id=tour_id, host_id=host_id, rating=rating)
    return {"meta": meta, "data": items}


@router.get("/tour/{tour_id}", response_model=schemas.TourReviews)
def tour_reviews(tour_id: int, params: PageParams = Depends(), db: Session = Depends(get_db)):
    return crud.reviews.get_tour_reviews(db, tour_id, params)


@router.get("/host/{host_id}", response_model=schemas.Page[schemas.ReviewRead])
def host_reviews(host_id: int, params: PageParams = Depends(), db: Session = Depends(get_db)):
    items, meta = crud.reviews.get_host_reviews(db, host_id, params)
    return {"meta": meta, "data": items}


@router.get("/my-reviews", response_model=schemas.Page[schemas.ReviewRead])
def my_reviews(
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_tourist_user),
):
    items, meta = crud.reviews.get_my_reviews(db, current_user, params)
    return {"meta": meta, "data": items}


@router.get("/{review_id}", response_model=schemas.ReviewRead)
def read_review(review_id: int, db: Session = Depends(get_db)):
    return crud.reviews.get_review(db, review_id)


@router.patch("/{review_id}", response_model=schemas.ReviewRead)
def update_review(
        review_id: int,
        data: schemas.ReviewUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    return crud.reviews.update_review(db, review_id, current_user, data)


@router.delete("/{review_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_review(
        review_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    crud.reviews.delete_review(db, review_id, current_user)
