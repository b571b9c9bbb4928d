#!/usr/bin/env python3
import argparse
from decimal import Decimal

from backend.app.db import get_store
from backend.app.logs import json_log
from backend.app.notifications import build_message, default_sink, store_recipient_tokens
from backend.app.store.base import DocumentStore, Query

MAX_LISTED_PRODUCTS = 5


def _number(v):
    if isinstance(v, bool) or not isinstance(v, (int, float, Decimal)):
        return None
    return Decimal(str(v))


def owner_store_ids(store: DocumentStore) -> list[str]:
    ids: list[str] = []
    for owner in store.query(Query("users").where("role", "==", "owner")):
        if owner.get("active") is False:
            continue
        store_id = str(owner.get("storeId") or owner.id)
        if store_id not in ids:
            ids.append(store_id)
    return ids


def low_stock_products(store: DocumentStore, store_id: str) -> list[dict]:
    rows = []
    for p in store.query(Query("products").where("storeId", "==", store_id)):
        stock = _number(p.get("stock"))
        min_stock = _number(p.get("minStock"))
        if stock is None or min_stock is None:
            continue
        if stock < min_stock:
            rows.append({"id": p.id, "name": p.get("productName") or p.id, "stock": stock, "minStock": min_stock})
    return rows


def low_stock_message(store_id: str, products: list[dict]) -> dict:
    names = ", ".join(str(p["name"]) for p in products[:MAX_LISTED_PRODUCTS])
    more = len(products) - MAX_LISTED_PRODUCTS
    if more > 0:
        names += f" (+{more})"
    return build_message(
        "Low stock",
        f"{len(products)} product(s) below minimum stock: {names}",
        data={"type": "low_stock", "storeId": store_id, "count": len(products)},
        channel="inventory",
    )


def run_low_stock_scan(store: DocumentStore, sink) -> dict:
    summary = {"stores": 0, "notified": 0, "products": 0}
    for store_id in owner_store_ids(store):
        summary["stores"] += 1
        try:
            products = low_stock_products(store, store_id)
            if not products:
                continue
            summary["products"] += len(products)
            tokens = store_recipient_tokens(store, store_id)
            if not tokens:
                json_log("info", "low_stock.no_recipients", store_id=store_id, products=len(products))
                continue
            sink.send_multicast(tokens, low_stock_message(store_id, products))
            summary["notified"] += 1
        except Exception as ex:
            # One store's bad data never stops the sweep.
            json_log("error", "low_stock.store_failed", store_id=store_id, error=str(ex))
    json_log("info", "low_stock.scan", **summary)
    return summary


def main():
    argparse.ArgumentParser().parse_args()
    run_low_stock_scan(get_store(), default_sink())


if __name__ == "__main__":
    main()
