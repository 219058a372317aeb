from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_admin, get_current_host, get_current_user, get_optional_user
from ..database import get_db
from ..limits import require_blog_quota
from ..pagination import PageParams

router = APIRouter(prefix="/blogs", tags=["Blogs"])


@router.post("/", response_model=schemas.BlogRead, status_code=status.HTTP_201_CREATED)
def create_blog(
        data: schemas.BlogCreate,
        db: Session = Depends(get_db),
        host: models.Host = Depends(require_blog_quota),
):
    return crud.blogs.create_blog(db, host, data)


@router.get("/", response_model=schemas.Page[schemas.BlogRead])
def list_blogs(
        search: Optional[str] = None,
        host_id: Optional[int] = None,
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
):
    items, meta = crud.blogs.list_blogs(db, params, search=search, host_id=host_id)
    return {"meta": meta, "data": items}


@router.get("/my-blogs", response_model=schemas.Page[schemas.BlogRead])
def my_blogs(
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    items, meta = crud.blogs.get_my_blogs(db, host, params)
    return {"meta": meta, "data": items}


@router.get("/{blog_id}", response_model=schemas.BlogRead)
def read_blog(
        blog_id: int,
        db: Session = Depends(get_db),
        current_user: Optional[models.User] = Depends(get_optional_user),
):
    return crud.blogs.get_blog(db, blog_id, current_user)


@router.patch("/{blog_id}", response_model=schemas.BlogRead)
def update_blog(
        blog_id: int,
        data: schemas.BlogUpdate,
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    return crud.blogs.update_blog(db, blog_id, host, data)


@router.delete("/{blog_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_blog(
        blog_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    crud.blogs.delete_blog(db, blog_id, current_user)


@router.patch("/{blog_id}/approval", response_model=schemas.BlogRead)
def set_blog_approval(
        blog_id: int,
        data: schemas.BlogApproval,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.blogs.set_approval(db, blog_id, data.is_approved)
