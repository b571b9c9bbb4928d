import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app.reporting.aggregation import (
    DUPLICATE,
    FAILED,
    PROCESSED,
    SKIPPED,
    aggregate_bill,
    aggregate_cash_transaction,
    close_shift,
)
from backend.app.reporting.report_merge import REPORTS, ReportDelta, report_update_fields
from backend.app.reporting.shifts import SHIFTS, ShiftResolution
from backend.app.store.base import DocumentSnapshot, Query, apply_update
from backend.app.store.memory import MemoryStore

TZ = "Asia/Ho_Chi_Minh"
CASH = "Tiền mặt"
KEY = "2024-05-02"
REPORT_ID = f"st_{KEY}"
# 10:00 local on the business day; cutoff is 06:00.
T0 = datetime(2024, 5, 2, 3, 0, tzinfo=timezone.utc)
DAY_START = datetime(2024, 5, 1, 23, 0, tzinfo=timezone.utc)

TOTAL_FIELDS = (
    "billCount",
    "totalRevenue",
    "totalProfit",
    "totalDebt",
    "totalDiscount",
    "totalBillDiscount",
    "totalVoucherDiscount",
    "totalPointsValue",
    "totalTax",
    "totalSurcharges",
    "totalCash",
    "totalOtherPayments",
    "totalOtherRevenue",
    "totalOtherExpense",
)


def _store():
    store = MemoryStore()
    store.set("store_settings", "st", {"reportCutoffHour": 6, "reportCutoffMinute": 0})
    return store


def _bill(uid="u1", name="An", payable=75000, payments=None, product_id="p1", shift_id=None, created=T0, **extra):
    bill = {
        "status": "completed",
        "storeId": "st",
        "createdAt": created,
        "createdByUid": uid,
        "createdByName": name,
        "items": [
            {
                "price": 40000,
                "quantity": 2,
                "subtotal": 80000,
                "discountValue": 5,
                "discountUnit": "%",
                "product": {"id": product_id, "productName": "Cà phê", "sellPrice": 50000},
            }
        ],
        "subtotal": 80000,
        "totalPayable": payable,
        "totalProfit": 30000,
        "discount": 5000,
        "payments": payments if payments is not None else {CASH: payable},
    }
    if shift_id:
        bill["shiftId"] = shift_id
    bill.update(extra)
    return bill


def _add_and_aggregate(store, bill_id, bill):
    store.set("bills", bill_id, bill)
    return aggregate_bill(store, bill_id, bill, tz=TZ, cash_prefix=CASH)


def _numbers(entry):
    return {k: Decimal(str(entry.get(k, 0))) for k in TOTAL_FIELDS}


def _assert_store_equals_sum_of_shifts(report):
    summed = {k: Decimal("0") for k in TOTAL_FIELDS}
    for shift in report["shifts"].values():
        for k, v in _numbers(shift).items():
            summed[k] += v
    assert _numbers(report) == summed


def test_first_bill_creates_report_shift_and_patches_bill():
    store = _store()
    assert _add_and_aggregate(store, "b1", _bill()) == PROCESSED

    bill = store.get("bills", "b1")
    assert bill.get("reportDateKey") == KEY
    shift_id = bill.get("shiftId")
    shift = store.get(SHIFTS, shift_id)
    assert shift.get("status") == "open"
    assert shift.get("startTime") == DAY_START

    report = store.get(REPORTS, REPORT_ID)
    assert report.get("storeId") == "st"
    assert report.get("date") == datetime(2024, 5, 2, tzinfo=timezone.utc)
    assert report.get("billCount") == 1
    assert report.get("totalRevenue") == 75000
    assert report.get("totalDiscount") == 25000
    assert report.get("totalBillDiscount") == 5000
    assert report.get("totalDebt") == 0
    assert report.get(("paymentMethods", CASH)) == 75000
    assert report.get(("products", "p1", "quantitySold")) == 2
    assert report.get(("shifts", shift_id, "userName")) == "An"
    assert report.get(("shifts", shift_id, "totalCash")) == 75000
    assert report.get(("shifts", shift_id, "products", "p1", "totalDiscount")) == 25000


def test_bills_of_one_user_share_a_shift_and_accumulate():
    store = _store()
    _add_and_aggregate(store, "b1", _bill())
    _add_and_aggregate(store, "b2", _bill(payable=50000, payments={CASH: 20000, "Momo": 30000}))

    shift_id = store.get("bills", "b1").get("shiftId")
    assert store.get("bills", "b2").get("shiftId") == shift_id

    report = store.get(REPORTS, REPORT_ID).to_dict()
    assert report["billCount"] == 2
    assert report["totalRevenue"] == 125000
    assert report["totalCash"] == 95000
    assert report["totalOtherPayments"] == 30000
    assert report["paymentMethods"] == {CASH: 95000, "Momo": 30000}
    assert report["products"]["p1"]["quantitySold"] == 4
    assert report["shifts"][shift_id]["paymentMethods"] == {CASH: 95000, "Momo": 30000}
    _assert_store_equals_sum_of_shifts(report)


def test_store_totals_equal_sum_of_shift_totals_across_users():
    store = _store()
    _add_and_aggregate(store, "b1", _bill(uid="u1", name="An"))
    _add_and_aggregate(store, "b2", _bill(uid="u2", name="Bình", payable=60000, product_id="p2"))
    aggregate_cash_transaction(
        store,
        "c1",
        _seed_cash(store, "c1", uid="u2", name="Bình", amount=20000, kind="expense"),
        tz=TZ,
    )

    report = store.get(REPORTS, REPORT_ID).to_dict()
    assert len(report["shifts"]) == 2
    assert set(report["products"]) == {"p1", "p2"}
    assert report["totalOtherExpense"] == 20000
    _assert_store_equals_sum_of_shifts(report)


def test_merge_order_does_not_change_the_report():
    bills = [
        ("b1", _bill(uid="u1", shift_id="sh-1")),
        ("b2", _bill(uid="u2", name="Bình", shift_id="sh-2", payable=60000, product_id="p2", debtAmount=10000)),
        ("b3", _bill(uid="u1", shift_id="sh-1", payable=20000, payments={"Momo": 20000})),
    ]
    reports = []
    for order in (bills, list(reversed(bills))):
        store = _store()
        for bill_id, bill in order:
            assert _add_and_aggregate(store, bill_id, bill) == PROCESSED
        reports.append(store.get(REPORTS, REPORT_ID).to_dict())

    a, b = reports
    assert _numbers(a) == _numbers(b)
    assert a["paymentMethods"] == b["paymentMethods"]
    assert a["products"] == b["products"]
    assert set(a["shifts"]) == set(b["shifts"]) == {"sh-1", "sh-2"}
    for shift_id in a["shifts"]:
        assert _numbers(a["shifts"][shift_id]) == _numbers(b["shifts"][shift_id])
        assert a["shifts"][shift_id]["products"] == b["shifts"][shift_id]["products"]


def test_redelivered_bill_is_acknowledged_without_double_counting():
    store = _store()
    bill = _bill()
    assert _add_and_aggregate(store, "b1", bill) == PROCESSED
    assert aggregate_bill(store, "b1", bill, tz=TZ, cash_prefix=CASH) == DUPLICATE
    assert store.get(REPORTS, REPORT_ID).get("billCount") == 1


def test_guards_skip_incomplete_bills():
    store = _store()
    assert aggregate_bill(store, "b1", _bill(status="draft"), tz=TZ) == SKIPPED
    assert aggregate_bill(store, "b1", _bill(createdByUid=""), tz=TZ) == SKIPPED
    assert aggregate_bill(store, "b1", None, tz=TZ) == SKIPPED
    # Source document was never written.
    assert aggregate_bill(store, "ghost", _bill(), tz=TZ) == SKIPPED
    assert store.get(REPORTS, REPORT_ID).exists is False


def test_unexpected_errors_are_logged_and_swallowed(capsys):
    store = _store()
    bill = _bill(createdAt="not-a-timestamp")
    store.set("bills", "bad", bill)
    assert aggregate_bill(store, "bad", bill, tz=TZ) == FAILED
    err = capsys.readouterr().err
    assert "aggregate.bill.failed" in err
    assert '"bill_id": "bad"' in err


def test_bill_before_cutoff_lands_in_previous_day_report():
    store = _store()
    # 05:59 local on 2 May.
    _add_and_aggregate(store, "late", _bill(created=datetime(2024, 5, 1, 22, 59, tzinfo=timezone.utc)))
    assert store.get("bills", "late").get("reportDateKey") == "2024-05-01"
    assert store.get(REPORTS, "st_2024-05-01").get("billCount") == 1


class _BarrierStore(MemoryStore):
    """Holds the first aggregation commit of every thread until all of them are ready."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties)
        self.armed = True

    def _commit(self, tx):
        if self.armed and any(w.collection == REPORTS for w in tx.writes):
            try:
                self.barrier.wait(timeout=5)
            except threading.BrokenBarrierError:
                pass
            self.armed = False
        super()._commit(tx)


def test_concurrent_bills_create_exactly_one_open_shift():
    store = _BarrierStore(2)
    store.set("store_settings", "st", {"reportCutoffHour": 6, "reportCutoffMinute": 0})
    bills = {"b1": _bill(), "b2": _bill(payable=25000)}
    for bill_id, bill in bills.items():
        store.set("bills", bill_id, bill)

    results = {}

    def _run(bill_id):
        results[bill_id] = aggregate_bill(store, bill_id, bills[bill_id], tz=TZ, cash_prefix=CASH)

    threads = [threading.Thread(target=_run, args=(bill_id,)) for bill_id in bills]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert results == {"b1": PROCESSED, "b2": PROCESSED}
    open_shifts = store.query(
        Query(SHIFTS).where("storeId", "==", "st").where("userId", "==", "u1").where("status", "==", "open")
    )
    assert len(open_shifts) == 1
    shift_id = open_shifts[0].id
    assert {store.get("bills", b).get("shiftId") for b in bills} == {shift_id}

    report = store.get(REPORTS, REPORT_ID).to_dict()
    assert report["billCount"] == 2
    assert report["totalRevenue"] == 100000
    assert report["shifts"][shift_id]["billCount"] == 2
    assert report["shifts"][shift_id]["totalRevenue"] == 100000


def _seed_cash(store, tx_id, uid="u1", name="An", amount=50000, kind="revenue", **extra):
    doc = {
        "status": "completed",
        "storeId": "st",
        "date": T0,
        "userId": uid,
        "user": name,
        "amount": amount,
        "type": kind,
        **extra,
    }
    store.set("manual_cash_transactions", tx_id, doc)
    return doc


def test_cash_transaction_joins_the_users_shift():
    store = _store()
    _add_and_aggregate(store, "b1", _bill())
    doc = _seed_cash(store, "c1", amount=50000, kind="revenue")
    assert aggregate_cash_transaction(store, "c1", doc, tz=TZ) == PROCESSED

    shift_id = store.get("bills", "b1").get("shiftId")
    assert store.get("manual_cash_transactions", "c1").get("shiftId") == shift_id
    report = store.get(REPORTS, REPORT_ID)
    assert report.get("totalOtherRevenue") == 50000
    assert report.get(("shifts", shift_id, "totalOtherRevenue")) == 50000
    # Cash transactions are not bills.
    assert report.get("billCount") == 1


def test_cash_transaction_can_open_the_report():
    store = _store()
    doc = _seed_cash(store, "c1", amount=30000, kind="expense")
    assert aggregate_cash_transaction(store, "c1", doc, tz=TZ) == PROCESSED
    report = store.get(REPORTS, REPORT_ID).to_dict()
    assert report["totalOtherExpense"] == 30000
    assert report["totalOtherRevenue"] == 0
    (shift,) = report["shifts"].values()
    assert shift["paymentMethods"] == {}
    assert shift["products"] == {}


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": 0},
        {"amount": None},
        {"type": "refund"},
        {"status": "pending"},
        {"userId": ""},
    ],
)
def test_cash_transaction_guards(overrides):
    store = _store()
    doc = _seed_cash(store, "c1", **overrides)
    assert aggregate_cash_transaction(store, "c1", doc, tz=TZ) == SKIPPED
    assert store.get(REPORTS, REPORT_ID).exists is False


def test_new_shift_entry_seeds_empty_maps_only_when_untouched():
    report = DocumentSnapshot(REPORTS, REPORT_ID, {"storeId": "st", "billCount": 1, "shifts": {}}, 1)
    shift = ShiftResolution("s2", DAY_START, True)

    cash_only = ReportDelta(totals={"totalOtherRevenue": Decimal("10")})
    fields = report_update_fields(report, shift, "u2", "Bình", cash_only)
    assert fields[("shifts", "s2", "paymentMethods")] == {}
    assert fields[("shifts", "s2", "products")] == {}
    out = apply_update(report.data, fields)
    assert out["shifts"]["s2"]["totalOtherRevenue"] == 10
    assert out["shifts"]["s2"]["status"] == "open"

    with_payment = ReportDelta(totals={"totalCash": Decimal("5")}, payment_methods={CASH: Decimal("5")})
    fields = report_update_fields(report, shift, "u2", "Bình", with_payment)
    assert ("shifts", "s2", "paymentMethods") not in fields
    out = apply_update(report.data, fields)
    assert out["shifts"]["s2"]["paymentMethods"] == {CASH: 5}


def test_close_shift_mirrors_status_into_report_and_chains_next_shift():
    store = _store()
    _add_and_aggregate(store, "b1", _bill())
    shift_id = store.get("bills", "b1").get("shiftId")
    end = T0 + timedelta(hours=2)

    out = close_shift(store, shift_id, "st", end_time=end)
    assert out["status"] == "closed"
    assert store.get(SHIFTS, shift_id).get("endTime") == end
    report = store.get(REPORTS, REPORT_ID)
    assert report.get(("shifts", shift_id, "status")) == "closed"
    assert report.get(("shifts", shift_id, "endTime")) == end

    _add_and_aggregate(store, "b2", _bill(created=T0 + timedelta(hours=3)))
    next_id = store.get("bills", "b2").get("shiftId")
    assert next_id != shift_id
    assert store.get(SHIFTS, next_id).get("startTime") == end


def test_close_shift_errors():
    store = _store()
    with pytest.raises(LookupError):
        close_shift(store, "missing", "st")

    _add_and_aggregate(store, "b1", _bill())
    shift_id = store.get("bills", "b1").get("shiftId")
    with pytest.raises(LookupError):
        close_shift(store, shift_id, "other-store")
    close_shift(store, shift_id, "st")
    with pytest.raises(ValueError):
        close_shift(store, shift_id, "st")
