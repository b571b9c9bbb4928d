"""
Merges an event's contribution into the daily report document.

A missing report is written whole. An existing report only receives
field-scoped increments, mirrored at store level and under
shifts.{shiftId}, so concurrent events touching different products or
payment methods of the same report commute.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from decimal import Decimal

from ..store.base import DocumentSnapshot, Increment, Transaction
from .bill_decomposer import DecomposedBill, ProductSale
from .report_dates import ReportDate
from .shifts import ShiftResolution

REPORTS = "daily_reports"


@dataclass
class ReportDelta:
    totals: dict[str, Decimal]
    payment_methods: dict[str, Decimal] = field(default_factory=dict)
    products: dict[str, ProductSale] = field(default_factory=dict)

    @classmethod
    def from_bill(cls, bill: DecomposedBill) -> "ReportDelta":
        return cls(
            totals=bill.totals(),
            payment_methods=dict(bill.payment_methods),
            products=dict(bill.products),
        )


def report_id(store_id: str, report_key: str) -> str:
    return f"{store_id}_{report_key}"


def shift_metadata(shift: ShiftResolution, user_id: str, user_name: str) -> dict:
    return {
        "shiftId": shift.shift_id,
        "userId": user_id,
        "userName": user_name,
        "startTime": shift.start_time,
        "status": "open",
        "endTime": None,
        "openingBalance": 0,
    }


def new_report_document(
    store_id: str,
    report_date: ReportDate,
    shift: ShiftResolution,
    user_id: str,
    user_name: str,
    delta: ReportDelta,
) -> dict:
    products = {pid: sale.to_report() for pid, sale in delta.products.items()}
    payments = dict(delta.payment_methods)
    shift_entry = {
        **delta.totals,
        **shift_metadata(shift, user_id, user_name),
        "paymentMethods": dict(payments),
        "products": copy.deepcopy(products),
    }
    return {
        "storeId": store_id,
        "date": report_date.report_date,
        "openingBalance": 0,
        **delta.totals,
        "paymentMethods": payments,
        "products": products,
        "shifts": {shift.shift_id: shift_entry},
    }


def report_update_fields(
    report: DocumentSnapshot,
    shift: ShiftResolution,
    user_id: str,
    user_name: str,
    delta: ReportDelta,
) -> dict:
    shift_prefix = ("shifts", shift.shift_id)
    fields: dict = {}

    for key, value in delta.totals.items():
        if value != 0:
            fields[(key,)] = Increment(value)
            fields[shift_prefix + (key,)] = Increment(value)

    touched_payments = False
    for method, amount in delta.payment_methods.items():
        if amount == 0:
            continue
        touched_payments = True
        fields[("paymentMethods", method)] = Increment(amount)
        fields[shift_prefix + ("paymentMethods", method)] = Increment(amount)

    for pid, sale in delta.products.items():
        for base in (("products", pid), shift_prefix + ("products", pid)):
            fields[base + ("productId",)] = sale.product_id
            fields[base + ("productName",)] = sale.name
            fields[base + ("productGroup",)] = sale.group
            fields[base + ("quantitySold",)] = Increment(sale.qty)
            fields[base + ("totalRevenue",)] = Increment(sale.revenue)
            fields[base + ("totalDiscount",)] = Increment(sale.discount)

    if report.get(shift_prefix) is None:
        # First event of this shift in the report: seed metadata leaf by leaf.
        for key, value in shift_metadata(shift, user_id, user_name).items():
            fields[shift_prefix + (key,)] = value
        if not touched_payments:
            fields[shift_prefix + ("paymentMethods",)] = {}
        if not delta.products:
            fields[shift_prefix + ("products",)] = {}

    return fields


def merge_into_report(
    tx: Transaction,
    report: DocumentSnapshot,
    store_id: str,
    report_date: ReportDate,
    shift: ShiftResolution,
    user_id: str,
    user_name: str,
    delta: ReportDelta,
) -> None:
    if not report.exists:
        tx.set(REPORTS, report.id, new_report_document(store_id, report_date, shift, user_id, user_name, delta))
        return
    tx.update(REPORTS, report.id, report_update_fields(report, shift, user_id, user_name, delta))
