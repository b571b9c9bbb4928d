from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def normalize_phone(v):
    if v is None:
        return v
    # Clients send numbers with spaces, dashes or dots as separators.
    return "".join(ch for ch in str(v).strip() if ch not in " -.()")


PhoneNumber = Annotated[
    str,
    BeforeValidator(normalize_phone),
    StringConstraints(min_length=6, max_length=16, pattern=r"^\+?[0-9]+$"),
]

StoreId = Annotated[
    str,
    StringConstraints(strip_whitespace=True, max_length=64, pattern=r"^[A-Za-z0-9_-]*$"),
]

CashTxType = Annotated[Literal["revenue", "expense"], BeforeValidator(_to_lower_str)]
BillStatus = Annotated[Literal["draft", "completed", "canceled"], BeforeValidator(_to_lower_str)]
