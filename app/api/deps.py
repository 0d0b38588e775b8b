from fastapi import Depends, Header
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.models.user import User
from app.services.exceptions import IdentityError
from app.services.identity import get_or_create_user, identity

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Verify the bearer token and return the local user, creating it on first sight."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise IdentityError("Missing bearer token")
    claims = identity.decode(token)
    return get_or_create_user(db, claims)


__all__ = ["get_db", "get_current_user", "limiter"]
