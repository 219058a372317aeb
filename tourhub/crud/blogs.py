import logging
from typing import Optional

from sqlalchemy.orm import Session

from .. import models, schemas
from ..exceptions import ForbiddenError, NotFoundError
from ..pagination import PageParams, paginate, search_filter
from . import subscriptions

logger = logging.getLogger("tourhub")


def create_blog(db: Session, host: models.Host, data: schemas.BlogCreate) -> models.Blog:
    subscriptions.take_blog_slot(db, host)
    blog = models.Blog(host_id=host.id, is_approved=False, **data.model_dump())
    db.add(blog)
    db.commit()
    db.refresh(blog)
    logger.info(f"Blog {blog.id} created by host {host.id}")
    return blog


def list_blogs(
        db: Session,
        params: PageParams,
        search: Optional[str] = None,
        host_id: Optional[int] = None,
        include_unapproved: bool = False,
):
    query = db.query(models.Blog)
    if not include_unapproved:
        query = query.filter(models.Blog.is_approved.is_(True))
    condition = search_filter(search, models.Blog.title, models.Blog.content)
    if condition is not None:
        query = query.filter(condition)
    if host_id is not None:
        query = query.filter(models.Blog.host_id == host_id)
    return paginate(query, params, models.Blog)


def get_my_blogs(db: Session, host: models.Host, params: PageParams):
    return list_blogs(db, params, host_id=host.id, include_unapproved=True)


def get_blog(db: Session, blog_id: int, user: Optional[models.User] = None) -> models.Blog:
    """Unapproved blogs are only visible to their author and admins."""
    blog = db.get(models.Blog, blog_id)
    if blog is None:
        raise NotFoundError("Blog not found")
    if not blog.is_approved:
        is_author = user is not None and user.host is not None and user.host.id == blog.host_id
        is_admin = user is not None and user.role == models.UserRole.ADMIN
        if not (is_author or is_admin):
            raise NotFoundError("Blog not found")
    return blog


def update_blog(db: Session, blog_id: int, host: models.Host, data: schemas.BlogUpdate) -> models.Blog:
    blog = db.get(models.Blog, blog_id)
    if blog is None:
        raise NotFoundError("Blog not found")
    if blog.host_id != host.id:
        raise ForbiddenError("You can only update your own blogs")

    for key, value in data.model_dump(exclude_unset=True).items():
        if value is None and key in ("title", "content"):
            continue
        setattr(blog, key, value)
    db.commit()
    db.refresh(blog)
    return blog


def delete_blog(db: Session, blog_id: int, user: models.User) -> None:
    blog = db.get(models.Blog, blog_id)
    if blog is None:
        raise NotFoundError("Blog not found")
    is_author = user.host is not None and user.host.id == blog.host_id
    if not is_author and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("You can only delete your own blogs")

    subscriptions.release_blog_slot(db, blog.host)
    db.delete(blog)
    db.commit()
    logger.info(f"Blog {blog_id} deleted by user {user.id}")


def set_approval(db: Session, blog_id: int, is_approved: bool) -> models.Blog:
    blog = db.get(models.Blog, blog_id)
    if blog is None:
        raise NotFoundError("Blog not found")
    blog.is_approved = is_approved
    db.commit()
    db.refresh(blog)
    return blog
