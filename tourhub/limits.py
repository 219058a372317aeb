"""
Route dependencies enforcing the host's subscription limits.

They run before the handler and answer 403 with the current usage. The
creating CRUD call re-checks atomically, so a request racing past the
dependency is still refused.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from . import models
from .auth import get_current_host
from .crud import subscriptions
from .database import get_db
from .exceptions import ForbiddenError


def require_tour_quota(
        host: models.Host = Depends(get_current_host),
        db: Session = Depends(get_db),
) -> models.Host:
    subscriptions.refresh_host_limits(db, host)
    if host.current_tour_count >= host.tour_limit:
        raise ForbiddenError(subscriptions.tour_limit_message(host))
    return host


def require_blog_quota(
        host: models.Host = Depends(get_current_host),
        db: Session = Depends(get_db),
) -> models.Host:
    subscriptions.refresh_host_limits(db, host)
    if host.blog_limit is not None and host.current_blog_count >= host.blog_limit:
        raise ForbiddenError(subscriptions.blog_limit_message(host))
    return host
