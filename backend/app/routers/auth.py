from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from typing import Optional
from ..config import settings
from ..deps import SESSION_COOKIE_NAME, SESSIONS, get_session, store_dep
from ..errors import client_error
from ..logs import json_log
from ..security import hash_password, hash_session_token, needs_rehash, new_session_token, verify_password
from ..store.base import DocumentStore, Query
from ..validation import PhoneNumber, StoreId, normalize_phone

router = APIRouter(prefix="/auth", tags=["auth"])

USERS = "users"
OWNER_ROLE = "owner"


class LoginIn(BaseModel):
    phone: PhoneNumber
    password: str


def _find_user_by_phone(store: DocumentStore, phone: str):
    rows = store.query(Query(USERS).where("phone", "==", phone).limit(1))
    return rows[0] if rows else None


def display_name(user) -> str:
    # Bills and cash transactions need a non-empty creator name to be aggregated.
    return str(user.get("name") or "").strip() or str(user.get("phone") or "") or user.id


@router.post("/login")
def login(data: LoginIn, store: DocumentStore = Depends(store_dep)):
    user = _find_user_by_phone(store, data.phone)
    if user is None:
        raise client_error("not-found", "no account is registered with this phone number")
    if user.get("active") is False:
        raise client_error("permission-denied", "this account has been deactivated")
    if not verify_password(data.password, user.get("passwordHash")):
        raise client_error("unauthenticated", "incorrect password")

    role = str(user.get("role") or "")
    if not role:
        raise client_error("permission-denied", "account has no role")
    if role == OWNER_ROLE:
        # An owner's store id defaults to their own uid.
        store_id = str(user.get("storeId") or user.id)
    else:
        store_id = str(user.get("storeId") or "")
        if not store_id:
            raise client_error("permission-denied", "employee account is not assigned to a store")

    if needs_rehash(user.get("passwordHash")):
        store.update(USERS, user.id, {"passwordHash": hash_password(data.password)})

    token = new_session_token()
    now = datetime.now(timezone.utc)
    expires = now + timedelta(days=settings.session_days)
    claims = {"role": role, "storeId": store_id}
    store.set(
        SESSIONS,
        hash_session_token(token),
        {
            "userId": user.id,
            "userName": display_name(user),
            **claims,
            "createdAt": now,
            "expiresAt": expires,
            "isActive": True,
        },
    )
    json_log("info", "auth.login", user_id=user.id, role=role, store_id=store_id)

    resp = JSONResponse(
        {
            "token": token,
            "uid": user.id,
            "role": role,
            "storeId": store_id,
            "claims": claims,
        }
    )
    secure = settings.env not in {"local", "dev"}
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


class CheckRegistrationIn(BaseModel):
    phone: Optional[str] = None
    storeId: Optional[StoreId] = None


@router.post("/check-registration")
def check_registration(data: CheckRegistrationIn, store: DocumentStore = Depends(store_dep)):
    phone = normalize_phone(data.phone) or ""
    store_id = data.storeId or ""
    if not phone and not store_id:
        raise client_error("invalid-argument", "phone or storeId is required")

    if phone and _find_user_by_phone(store, phone) is not None:
        raise client_error("already-exists", "this phone number is already registered")
    if store_id:
        taken = store.query(Query(USERS).where("storeId", "==", store_id).limit(1))
        if taken or store.get("store_settings", store_id).exists:
            raise client_error("already-exists", "this store id is already in use")
    return {"ok": True}


@router.post("/logout")
def logout(session=Depends(get_session), store: DocumentStore = Depends(store_dep)):
    store.update(SESSIONS, session["session_id"], {"isActive": False})
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp
