from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from ..deps import get_session, require_store, store_dep
from ..errors import client_error
from ..logs import json_log
from ..reporting.aggregation import BILLS, CASH_TRANSACTIONS, close_shift as close_shift_impl
from ..reporting.shifts import SHIFTS
from ..store.base import DocumentStore
from ..validation import BillStatus, CashTxType

router = APIRouter(prefix="/pos", tags=["pos"])

MANAGER_ROLES = {"owner", "manager"}


class ProductSnapshotIn(BaseModel):
    id: Optional[str] = None
    productName: Optional[str] = None
    productGroup: Optional[str] = None
    sellPrice: Optional[Decimal] = None
    serviceSetup: Optional[dict[str, Any]] = None


class BillItemIn(BaseModel):
    price: Decimal = Decimal("0")
    quantity: Decimal = Decimal("0")
    subtotal: Decimal = Decimal("0")
    discountValue: Decimal = Decimal("0")
    discountUnit: str = "%"
    product: ProductSnapshotIn = Field(default_factory=ProductSnapshotIn)


class SurchargeIn(BaseModel):
    name: Optional[str] = None
    amount: Decimal = Decimal("0")
    isPercent: bool = False


class BillIn(BaseModel):
    status: BillStatus = "completed"
    items: list[BillItemIn] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    totalPayable: Decimal = Decimal("0")
    totalProfit: Decimal = Decimal("0")
    debtAmount: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    voucherDiscount: Decimal = Decimal("0")
    taxAmount: Decimal = Decimal("0")
    customerPointsValue: Decimal = Decimal("0")
    surcharges: list[SurchargeIn] = Field(default_factory=list)
    payments: dict[str, Decimal] = Field(default_factory=dict)
    shiftId: Optional[str] = None
    createdAt: Optional[datetime] = None


@router.post("/bills")
def create_bill(data: BillIn, session=Depends(get_session), store: DocumentStore = Depends(store_dep)):
    store_id = require_store(session)
    if any(v < 0 for v in data.payments.values()):
        raise client_error("invalid-argument", "payment amounts must be >= 0")

    bill = data.model_dump(exclude_none=True)
    bill.update(
        {
            "storeId": store_id,
            "createdByUid": session["user_id"],
            "createdByName": session.get("name") or str(session["user_id"]),
            "createdAt": data.createdAt or datetime.now(timezone.utc),
        }
    )
    bill_id = store.add(BILLS, bill)
    json_log("info", "pos.bill.created", bill_id=bill_id, store_id=store_id, status=data.status)
    return {"id": bill_id}


class CashTransactionIn(BaseModel):
    type: CashTxType
    amount: Decimal
    note: Optional[str] = None
    date: Optional[datetime] = None
    shiftId: Optional[str] = None


@router.post("/cash-transactions")
def create_cash_transaction(
    data: CashTransactionIn,
    session=Depends(get_session),
    store: DocumentStore = Depends(store_dep),
):
    store_id = require_store(session)
    if data.amount <= 0:
        raise client_error("invalid-argument", "amount must be > 0")

    doc = data.model_dump(exclude_none=True)
    doc.update(
        {
            "storeId": store_id,
            "userId": session["user_id"],
            "user": session.get("name") or str(session["user_id"]),
            "date": data.date or datetime.now(timezone.utc),
            "status": "completed",
        }
    )
    tx_id = store.add(CASH_TRANSACTIONS, doc)
    json_log("info", "pos.cash_tx.created", tx_id=tx_id, store_id=store_id, type=data.type)
    return {"id": tx_id}


@router.post("/shifts/{shift_id}/close")
def close_shift(shift_id: str, session=Depends(get_session), store: DocumentStore = Depends(store_dep)):
    store_id = require_store(session)
    snap = store.get(SHIFTS, shift_id)
    if not snap.exists or snap.get("storeId") != store_id:
        raise client_error("not-found", "shift not found")
    if session.get("role") not in MANAGER_ROLES and snap.get("userId") != session["user_id"]:
        raise client_error("permission-denied", "cannot close another employee's shift")

    try:
        shift = close_shift_impl(store, shift_id, store_id)
    except LookupError:
        raise client_error("not-found", "shift not found")
    except ValueError as ex:
        raise client_error("invalid-argument", str(ex))
    json_log("info", "pos.shift.closed", shift_id=shift_id, store_id=store_id, user_id=session["user_id"])
    return {"shift": shift}
