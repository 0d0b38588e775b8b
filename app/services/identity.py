"""Bearer-token verification and local user provisioning."""

from __future__ import annotations

import logging
from typing import Any, cast

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.user import User
from app.services.exceptions import IdentityError

logger = logging.getLogger(__name__)


class IdentityVerifier:
    def __init__(
        self,
        secret: str | None = None,
        algorithm: str | None = None,
        audience: str | None = None,
        issuer: str | None = None,
    ) -> None:
        self.secret = secret
        self.algorithm = algorithm or settings.jwt_algorithm
        self.audience = audience if audience is not None else settings.jwt_audience
        self.issuer = issuer if issuer is not None else settings.jwt_issuer

    def _secret(self) -> str:
        secret = self.secret or settings.jwt_secret
        if not secret:
            raise IdentityError("Token verification is not configured")
        return secret

    def decode(self, token: str) -> dict:
        if not token:
            raise IdentityError("Missing token")
        options = {"verify_aud": bool(self.audience)}
        try:
            payload = cast(
                dict[Any, Any],
                jwt.decode(
                    token,
                    self._secret(),
                    algorithms=[self.algorithm],
                    audience=self.audience or None,
                    issuer=self.issuer or None,
                    options=options,
                ),
            )
        except JWTError as exc:
            raise IdentityError("Invalid token") from exc
        if not payload.get("sub"):
            raise IdentityError("Token has no subject")
        return payload

    def verify(self, token: str) -> str:
        """Return the subject id for a valid token."""
        return str(self.decode(token)["sub"])


def get_or_create_user(db: Session, claims: dict) -> User:
    subject_id = str(claims["sub"])
    user = db.query(User).filter(User.subject_id == subject_id).first()
    if user:
        return user
    user = User(
        subject_id=subject_id,
        email=claims.get("email"),
        display_name=claims.get("name"),
        storage_limit_bytes=settings.default_storage_limit_bytes,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent first request for the same subject.
        db.rollback()
        user = db.query(User).filter(User.subject_id == subject_id).first()
        if not user:
            raise
        return user
    db.refresh(user)
    logger.info("identity_user_created subject_id=%s user_id=%s", subject_id, user.id)
    return user


identity = IdentityVerifier()
