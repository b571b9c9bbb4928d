from typing import Optional

from fastapi import HTTPException

# Typed client error codes and the HTTP status each one maps to.
ERROR_STATUS = {
    "invalid-argument": 400,
    "unauthenticated": 401,
    "permission-denied": 403,
    "not-found": 404,
    "already-exists": 409,
    "internal": 500,
}

_STATUS_CODE = {v: k for k, v in ERROR_STATUS.items()}


def client_error(code: str, message: str) -> HTTPException:
    if code not in ERROR_STATUS:
        raise ValueError(f"unknown error code: {code}")
    return HTTPException(status_code=ERROR_STATUS[code], detail={"code": code, "message": message})


def error_body(status_code: int, detail) -> dict:
    """Renders any HTTPException detail as {code, detail}."""
    if isinstance(detail, dict) and detail.get("code"):
        return {"code": detail["code"], "detail": detail.get("message") or ""}
    code: Optional[str] = _STATUS_CODE.get(status_code)
    if code is None:
        code = "invalid-argument" if 400 <= status_code < 500 else "internal"
    return {"code": code, "detail": str(detail) if detail is not None else ""}
