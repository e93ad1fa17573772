"""
Auth context.

Identities are issued by the hosted identity provider as bearer JWTs. Each
request (or websocket connection) gets its own ``AuthSession``; views receive
the resulting ``AuthContext`` explicitly through FastAPI dependencies.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from config import JWT_ALG, JWT_AUDIENCE, JWT_SECRET
from database import get_db, load_user
from schemas import User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str] = None


@dataclass(frozen=True)
class AuthContext:
    identity: Optional[Identity] = None
    user: Optional[User] = None
    loading: bool = True

    @property
    def is_approved(self) -> bool:
        return self.user is not None and self.user.account_status == "active"

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.role == "admin"

    @property
    def can_shop(self) -> bool:
        return self.is_approved or self.is_admin

    def to_public(self) -> dict:
        return {
            "uid": self.identity.uid if self.identity else None,
            "email": self.identity.email if self.identity else None,
            "user": self.user.model_dump() if self.user else None,
            "is_approved": self.is_approved,
            "is_admin": self.is_admin,
        }


AuthListener = Callable[[AuthContext], None]


def decode_identity(token: str) -> Identity:
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            audience=JWT_AUDIENCE,
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Identity(uid=str(payload["sub"]), email=payload.get("email"))


class AuthSession:
    """Tracks one identity and its profile; listeners are told about every change."""

    def __init__(self, db):
        self.db = db
        self.context = AuthContext()
        self._listeners: List[AuthListener] = []

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def handle_identity_change(self, identity: Optional[Identity]) -> AuthContext:
        """Called on sign-in, sign-out and token refresh."""
        user = self._fetch_user(identity.uid) if identity else None
        self.context = AuthContext(identity=identity, user=user, loading=False)
        for listener in list(self._listeners):
            listener(self.context)
        return self.context

    def refresh_user_data(self) -> AuthContext:
        if self.context.identity is None:
            return self.context
        return self.handle_identity_change(self.context.identity)

    def _fetch_user(self, uid: str) -> Optional[User]:
        try:
            return load_user(self.db, uid)
        except (PyMongoError, ValidationError):
            logger.exception("Error fetching user data for %s", uid)
            return None


def get_auth_context(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
                     db=Depends(get_db)) -> AuthContext:
    identity = decode_identity(credentials.credentials) if credentials else None
    return AuthSession(db).handle_identity_change(identity)


def require_user(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if ctx.identity is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return ctx


def require_approved(ctx: AuthContext = Depends(require_user)) -> AuthContext:
    if not ctx.can_shop:
        raise HTTPException(status_code=403, detail="Account pending approval")
    return ctx


def require_admin(ctx: AuthContext = Depends(require_user)) -> AuthContext:
    if not ctx.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return ctx


def dashboard_redirect(ctx: AuthContext) -> str:
    if ctx.identity is None:
        return "/login"
    if ctx.is_approved:
        return "/products"
    return "/account"
