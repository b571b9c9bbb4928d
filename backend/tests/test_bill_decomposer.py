from decimal import Decimal

from backend.app.reporting.bill_decomposer import (
    decompose_bill,
    is_aggregatable_bill,
    item_discount,
    split_payments,
    surcharge_total,
)

CASH = "Tiền mặt"


def _item(price, qty, disc=0, unit="%", sell_price=None, time_based=False, pid="p1", name="Cà phê", group=None, subtotal=None):
    product = {"id": pid, "productName": name, "serviceSetup": {"isTimeBased": time_based}}
    if sell_price is not None:
        product["sellPrice"] = sell_price
    if group is not None:
        product["productGroup"] = group
    return {
        "price": price,
        "quantity": qty,
        "discountValue": disc,
        "discountUnit": unit,
        "subtotal": subtotal if subtotal is not None else price * qty,
        "product": product,
    }


def test_time_based_item_gets_manual_discount_once():
    price_edit, manual = item_discount(_item(100000, 3, disc=10, sell_price=120000, time_based=True))
    assert price_edit == 0
    assert manual == Decimal("10000")


def test_regular_item_adds_price_edit_and_manual_discount_per_unit():
    price_edit, manual = item_discount(_item(40000, 2, disc=5, sell_price=50000))
    assert price_edit == Decimal("20000")
    assert manual == Decimal("5000")
    assert price_edit + manual == Decimal("25000")


def test_flat_manual_discount_scales_with_quantity():
    assert item_discount(_item(20000, 3, disc=1000, unit="VND")) == (Decimal("0"), Decimal("3000"))


def test_list_price_falls_back_to_item_price():
    # No sellPrice: no price-edit component, percent taken on the charged price.
    assert item_discount(_item(20000, 2, disc=10)) == (Decimal("0"), Decimal("4000"))


def test_payments_split_by_cash_prefix():
    cash, other, breakdown = split_payments({CASH: 100000, "Momo": 50000}, CASH)
    assert cash == Decimal("100000")
    assert other == Decimal("50000")
    assert breakdown == {CASH: Decimal("100000"), "Momo": Decimal("50000")}


def test_cash_prefix_matches_labelled_variants():
    cash, other, _ = split_payments({CASH + " (VND)": 30000, "Chuyển khoản": 20000}, CASH)
    assert (cash, other) == (Decimal("30000"), Decimal("20000"))


def test_surcharges_mix_fixed_and_percent_of_subtotal():
    bill = {"subtotal": 200000, "surcharges": [{"amount": 10000}, {"amount": 5, "isPercent": True}]}
    assert surcharge_total(bill) == Decimal("20000")


def test_aggregatable_guard():
    bill = {"status": "completed", "storeId": "st", "createdAt": "x", "createdByUid": "u1", "createdByName": "An"}
    assert is_aggregatable_bill(bill) is True
    assert is_aggregatable_bill({**bill, "status": "draft"}) is False
    assert is_aggregatable_bill({**bill, "createdByName": ""}) is False
    assert is_aggregatable_bill(None) is False


def test_decompose_bill_aggregates_products_and_totals():
    bill = {
        "items": [
            _item(40000, 2, disc=5, sell_price=50000, group="Đồ uống"),
            _item(50000, 1, sell_price=50000, group="Đồ uống"),
            _item(100000, 1, disc=10, time_based=True, pid="svc", name="Karaoke"),
            _item(10000, 1, pid=None),
            _item(10000, 0, pid="zero"),
        ],
        "subtotal": 240000,
        "totalPayable": 230000,
        "totalProfit": 90000,
        "discount": 10000,
        "taxAmount": 0,
        "surcharges": [],
        "payments": {CASH: 200000, "Momo": 30000},
    }
    out = decompose_bill(bill, CASH)

    assert out.line_item_discount == Decimal("35000")
    assert set(out.products) == {"p1", "svc"}
    coffee = out.products["p1"]
    assert coffee.qty == Decimal("3")
    assert coffee.revenue == Decimal("130000")
    assert coffee.discount == Decimal("25000")
    assert coffee.group == "Đồ uống"
    assert out.products["svc"].group == "Khác"

    totals = out.totals()
    assert totals["billCount"] == 1
    assert totals["totalRevenue"] == Decimal("230000")
    assert totals["totalProfit"] == Decimal("90000")
    assert totals["totalDiscount"] == Decimal("35000")
    assert totals["totalBillDiscount"] == Decimal("10000")
    assert totals["totalCash"] == Decimal("200000")
    assert totals["totalOtherPayments"] == Decimal("30000")
    # Missing order-level fields count as zero.
    assert totals["totalDebt"] == 0
    assert totals["totalVoucherDiscount"] == 0
    assert totals["totalPointsValue"] == 0
