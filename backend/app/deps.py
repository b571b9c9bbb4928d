from fastapi import Header, Depends, Cookie
from datetime import datetime, timezone
from typing import Optional

from .db import get_store
from .errors import client_error
from .reporting.aggregation import as_datetime
from .security import hash_session_token
from .store.base import DocumentStore


SESSION_COOKIE_NAME = "fourcash_session"
SESSIONS = "auth_sessions"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise client_error("unauthenticated", "missing token")


def store_dep() -> DocumentStore:
    return get_store()


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    store: DocumentStore = Depends(store_dep),
):
    token = _extract_session_token(authorization, cookie_token)
    session_id = hash_session_token(token)
    snap = store.get(SESSIONS, session_id)
    now = datetime.now(timezone.utc)
    if not snap.exists or not snap.get("isActive"):
        raise client_error("unauthenticated", "invalid token")
    expires_at = snap.get("expiresAt")
    if expires_at is None or as_datetime(expires_at) < now:
        raise client_error("unauthenticated", "invalid token")
    return {
        "session_id": session_id,
        "user_id": snap.get("userId"),
        "role": snap.get("role"),
        "store_id": snap.get("storeId"),
        "name": snap.get("userName") or "",
        "token": token,
    }


def require_store(session=Depends(get_session)) -> str:
    if not session.get("store_id"):
        raise client_error("permission-denied", "session has no store")
    return str(session["store_id"])


def require_role(*roles: str):
    def _dep(session=Depends(get_session)):
        if session.get("role") not in roles:
            raise client_error("permission-denied", "permission denied")
        return session
    return _dep
