"""
Reconciliation for interrupted payment verifications.

A verification that stops between its per-item stock decrements (process
crash, lost connection) leaves an unpaid order with `stock_status` still
"applying" and partial `stock_claimed`/`stock_applied` lists. These helpers
find such orders, report what the ledger currently holds for each item, and
hand the order back to the checkout service to finish the remaining steps
once its stock lock has expired.
"""
from typing import Any, Dict, List

from pymongo.database import Database

from checkout import CheckoutService
from errors import NotFoundError
from ledger import load_stock
from database import parse_object_id


def _progress(order: Dict[str, Any]) -> Dict[str, Any]:
    applied = sorted(set(order.get("stock_applied", [])))
    unconfirmed = sorted(set(order.get("stock_claimed", [])) - set(applied))
    pending = [i for i in range(len(order["order_items"])) if i not in applied]
    return {
        "order_id": str(order["_id"]),
        "user_id": order["user_id"],
        "stock_status": order.get("stock_status"),
        "payment_id": order.get("payment_details", {}).get("payment_id"),
        "applied_items": applied,
        "unconfirmed_items": unconfirmed,
        "pending_items": pending,
        "stock_lock_at": order.get("stock_lock_at"),
        "updated_at": order.get("updated_at"),
    }


def find_stalled_orders(db: Database) -> List[Dict[str, Any]]:
    """Unpaid orders whose stock update was started but never finished."""
    stalled = []
    for order in db["order"].find({"is_paid": False}).sort([("updated_at", 1)]):
        if order.get("stock_status") == "applying" or order.get("stock_applied") or order.get("stock_claimed"):
            stalled.append(_progress(order))
    return stalled


def audit_order(db: Database, order_id: str) -> Dict[str, Any]:
    """Per-item view of an order's recorded stock steps against the live ledger."""
    oid = parse_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid is not None else None
    if not order:
        raise NotFoundError("Order", {"order_id": order_id})
    stock = load_stock(db, {i["product_id"] for i in order["order_items"]})
    applied = set(order.get("stock_applied", []))
    claimed = set(order.get("stock_claimed", []))
    items = []
    for index, item in enumerate(order["order_items"]):
        key = (item["product_id"], item["size"], item["color_name"])
        items.append({
            "index": index,
            "product_id": item["product_id"],
            "size": item["size"],
            "color_name": item["color_name"],
            "quantity": item["quantity"],
            "applied": order["is_paid"] or index in applied,
            "unconfirmed": not order["is_paid"] and index in claimed and index not in applied,
            "variant_exists": key in stock,
            "current_stock": stock.get(key),
        })
    return {**_progress(order), "is_paid": order["is_paid"], "items": items}


def resume(checkout: CheckoutService, order_id: str) -> Dict[str, Any]:
    """Apply the remaining stock steps of a verified payment and mark the order paid."""
    return checkout.resume_stock_update(order_id)
