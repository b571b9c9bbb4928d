"""
Bill decomposition: per-item discounts, per-product sales and bill totals.

Line-item discount has two sources. For regular products the price edit
(list price above the charged price) and the manual discount add up, both
scaled by quantity. Time-based services have no per-unit list price, so only
the manual discount applies and it is taken once on the charged price.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from ..config import settings

DEFAULT_PRODUCT_GROUP = "Khác"
PERCENT_UNIT = "%"

_ZERO = Decimal("0")

REQUIRED_BILL_FIELDS = ("storeId", "createdAt", "createdByUid", "createdByName")


def _dec(v) -> Decimal:
    if v is None or isinstance(v, bool):
        return _ZERO
    try:
        return Decimal(str(v or 0))
    except InvalidOperation:
        return _ZERO


@dataclass
class ProductSale:
    product_id: str
    name: str
    group: str
    qty: Decimal = _ZERO
    revenue: Decimal = _ZERO
    discount: Decimal = _ZERO

    def to_report(self) -> dict:
        return {
            "productId": self.product_id,
            "productName": self.name,
            "productGroup": self.group,
            "quantitySold": self.qty,
            "totalRevenue": self.revenue,
            "totalDiscount": self.discount,
        }


@dataclass
class DecomposedBill:
    line_item_discount: Decimal = _ZERO
    products: dict[str, ProductSale] = field(default_factory=dict)
    cash_amount: Decimal = _ZERO
    other_payment_amount: Decimal = _ZERO
    payment_methods: dict[str, Decimal] = field(default_factory=dict)
    surcharge_total: Decimal = _ZERO
    total_payable: Decimal = _ZERO
    total_profit: Decimal = _ZERO
    debt_amount: Decimal = _ZERO
    bill_discount: Decimal = _ZERO
    voucher_discount: Decimal = _ZERO
    tax_amount: Decimal = _ZERO
    points_value: Decimal = _ZERO

    def totals(self) -> dict[str, Decimal]:
        return {
            "billCount": Decimal("1"),
            "totalRevenue": self.total_payable,
            "totalProfit": self.total_profit,
            "totalDebt": self.debt_amount,
            "totalDiscount": self.line_item_discount,
            "totalBillDiscount": self.bill_discount,
            "totalVoucherDiscount": self.voucher_discount,
            "totalPointsValue": self.points_value,
            "totalTax": self.tax_amount,
            "totalSurcharges": self.surcharge_total,
            "totalCash": self.cash_amount,
            "totalOtherPayments": self.other_payment_amount,
        }


def is_aggregatable_bill(bill: Optional[dict]) -> bool:
    if not bill or bill.get("status") != "completed":
        return False
    return all(bill.get(k) for k in REQUIRED_BILL_FIELDS)


def item_discount(item: dict) -> tuple[Decimal, Decimal]:
    """Returns (price_edit_discount, manual_discount) for one line item."""
    product = item.get("product") or {}
    service = product.get("serviceSetup") or {}
    is_time_based = service.get("isTimeBased") is True

    price = _dec(item.get("price"))
    qty = _dec(item.get("quantity"))
    disc_val = _dec(item.get("discountValue"))
    disc_unit = item.get("discountUnit") or PERCENT_UNIT
    list_price = _dec(product.get("sellPrice")) or price

    price_edit = _ZERO
    manual = _ZERO
    if is_time_based:
        if disc_val > 0:
            manual = price * disc_val / 100 if disc_unit == PERCENT_UNIT else disc_val
    else:
        if list_price > price:
            price_edit = (list_price - price) * qty
        if disc_val > 0:
            manual = list_price * disc_val / 100 * qty if disc_unit == PERCENT_UNIT else disc_val * qty
    return price_edit, manual


def surcharge_total(bill: dict) -> Decimal:
    subtotal = _dec(bill.get("subtotal"))
    total = _ZERO
    for s in bill.get("surcharges") or []:
        if not isinstance(s, dict):
            continue
        amount = _dec(s.get("amount"))
        # Percent surcharges apply to the pre-discount subtotal.
        total += subtotal * amount / 100 if s.get("isPercent") is True else amount
    return total


def split_payments(payments: Optional[dict], cash_prefix: str) -> tuple[Decimal, Decimal, dict[str, Decimal]]:
    cash = _ZERO
    other = _ZERO
    breakdown: dict[str, Decimal] = {}
    for method, raw in (payments or {}).items():
        amount = _dec(raw)
        method = str(method)
        breakdown[method] = breakdown.get(method, _ZERO) + amount
        if method.startswith(cash_prefix):
            cash += amount
        else:
            other += amount
    return cash, other, breakdown


def decompose_bill(bill: dict, cash_prefix: Optional[str] = None) -> DecomposedBill:
    out = DecomposedBill()

    for item in bill.get("items") or []:
        if not isinstance(item, dict):
            continue
        qty = _dec(item.get("quantity"))
        if qty <= 0:
            continue
        price_edit, manual = item_discount(item)
        discount = price_edit + manual
        out.line_item_discount += discount

        product = item.get("product") or {}
        product_id = product.get("id")
        name = product.get("productName")
        if not (product_id and name):
            continue
        product_id = str(product_id)
        sale = out.products.get(product_id)
        if sale is None:
            sale = ProductSale(
                product_id=product_id,
                name=str(name),
                group=str(product.get("productGroup") or DEFAULT_PRODUCT_GROUP),
            )
            out.products[product_id] = sale
        sale.qty += qty
        sale.revenue += _dec(item.get("subtotal"))
        sale.discount += discount

    out.cash_amount, out.other_payment_amount, out.payment_methods = split_payments(
        bill.get("payments"), cash_prefix or settings.cash_method_prefix
    )
    out.surcharge_total = surcharge_total(bill)
    out.total_payable = _dec(bill.get("totalPayable"))
    out.total_profit = _dec(bill.get("totalProfit"))
    out.debt_amount = _dec(bill.get("debtAmount"))
    out.bill_discount = _dec(bill.get("discount"))
    out.voucher_discount = _dec(bill.get("voucherDiscount"))
    out.tax_amount = _dec(bill.get("taxAmount"))
    out.points_value = _dec(bill.get("customerPointsValue"))
    return out
