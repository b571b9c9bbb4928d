import hashlib
import hmac
import re
import secrets
from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Mobile-era accounts stored an unsalted hex sha256 of the PIN.
_LEGACY_SHA256 = re.compile(r"^[0-9a-f]{64}$")
SESSION_HASH_PREFIX = "sha256:"


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def is_legacy_hash(hashed: Optional[str]) -> bool:
    return bool(hashed) and _LEGACY_SHA256.match(hashed.lower()) is not None


def verify_password(password: str, hashed: Optional[str]) -> bool:
    """Checks bcrypt hashes and legacy sha256 PIN hashes; anything else never matches."""
    if not hashed:
        return False
    if is_legacy_hash(hashed):
        digest = hashlib.sha256(password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, hashed.lower())
    if _pwd_context.identify(hashed) is None:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    # Login upgrades legacy PIN hashes and outdated bcrypt rounds in place.
    if is_legacy_hash(hashed):
        return True
    if not hashed or _pwd_context.identify(hashed) is None:
        return False
    return _pwd_context.needs_update(hashed)


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def hash_session_token(token: str) -> str:
    # auth_sessions documents are keyed by this digest, never by the raw token.
    return SESSION_HASH_PREFIX + hashlib.sha256(token.encode("utf-8")).hexdigest()
