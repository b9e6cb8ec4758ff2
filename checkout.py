"""
Checkout and payment orchestration.

Order lifecycle:

    created (unpaid) --verify--> paid
    created (unpaid) --cancel--> cancelled
    any state        --delete--> gone (stock it holds is returned first)

Stock is only taken when a payment is verified. The per-item decrements are
independent single-variant updates rather than one transaction, so they run
as a saga tracked on the order document:

- `stock_status` moves pending -> applying -> applied, or to conflict when a
  variant ran out before the payment could be applied. Entering "applying" is
  exclusive: only one verification (or reconciliation) at a time holds an
  order's stock update, stamped with `stock_lock_at`. A holder silent for
  longer than STOCK_LOCK_SECONDS is presumed dead and may be taken over.
- `stock_claimed` holds the item indexes whose decrement has been started.
- `stock_applied` holds the item indexes whose decrement is confirmed. Only
  these are ever returned to the ledger.

An index that is claimed but not applied belongs to a holder that died
between starting a decrement and recording it.
"""
import logging
import time
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from cart import CartStore
from config import CHECKOUT_CURRENCY, STOCK_LOCK_SECONDS
from database import parse_object_id, serialize_doc
from errors import (
    ForbiddenError,
    InsufficientStockError,
    InvalidOrderStateError,
    NotFoundError,
    OrderInProgressError,
    SignatureMismatchError,
)
from gateway import RazorpayClient
from ledger import Adjustment, apply_adjustments, decrement_stock, increment_stock
from schemas import Order, OrderItem, StockPick
from stock import StockReport, combine_picks, validate_picks

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime) -> datetime:
    # MongoDB hands datetimes back naive, in UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _amount(total_price: float) -> int:
    """Total in minor currency units."""
    return int(round(total_price * 100))


def _adjustment(item: Dict[str, Any]) -> Adjustment:
    return Adjustment(item["product_id"], item["size"], item["color_name"], item["quantity"])


class CheckoutService:
    def __init__(self, db: Database, gateway: RazorpayClient, currency: str = CHECKOUT_CURRENCY,
                 lock_seconds: int = STOCK_LOCK_SECONDS):
        self.db = db
        self.orders = db["order"]
        self.gateway = gateway
        self.currency = currency
        self.lock_seconds = lock_seconds

    # -- helpers --------------------------------------------------------

    def _load(self, order_id: str) -> Dict[str, Any]:
        oid = parse_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid is not None else None
        if not order:
            raise NotFoundError("Order", {"order_id": order_id})
        return order

    @staticmethod
    def _require_owner(order: Dict[str, Any], user: Dict[str, Any], allow_admin: bool = False) -> None:
        if order["user_id"] == str(user["_id"]):
            return
        if allow_admin and user.get("is_admin"):
            return
        raise ForbiddenError("Not authorized to access this order")

    def _check_stock(self, picks: List[StockPick]) -> StockReport:
        # several lines of one variant draw on the same stock
        report = validate_picks(self.db, combine_picks(picks))
        missing = report.missing()
        if missing:
            raise NotFoundError("Product variant", [
                {"product_id": m.product_id, "size": m.size, "color_name": m.color_name} for m in missing
            ])
        if not report.can_checkout:
            shortages = report.shortages()
            names = ", ".join(f"{s['product_id']} ({s['size']}, {s['color_name']})" for s in shortages)
            raise InsufficientStockError(f"Not enough stock for {names}", shortages)
        return report

    def _snapshot_items(self, picks: List[StockPick]) -> List[Dict[str, Any]]:
        oids = [parse_object_id(p.product_id) for p in picks]
        products = {str(p["_id"]): p for p in self.db["product"].find({"_id": {"$in": oids}})}
        items = []
        for pick in picks:
            product = products.get(pick.product_id)
            if not product:
                raise NotFoundError("Product", {"product_id": pick.product_id})
            items.append(OrderItem(
                product_id=pick.product_id,
                name=product["name"],
                price=product["price"],
                image=(product.get("images") or [None])[0],
                size=pick.size,
                color_name=pick.color_name,
                quantity=pick.quantity,
            ).model_dump())
        return items

    def _lock_is_live(self, order: Dict[str, Any]) -> bool:
        if order.get("stock_status") != "applying":
            return False
        lock_at = order.get("stock_lock_at")
        return lock_at is not None and _utc(lock_at) > _now() - timedelta(seconds=self.lock_seconds)

    def _lock_filter(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Filter that takes the stock lock of `order` as last read, or None while another holder is alive."""
        if self._lock_is_live(order):
            return None
        query: Dict[str, Any] = {"_id": order["_id"], "is_paid": False, "is_cancelled": False}
        if order.get("stock_status") == "applying":
            query.update({"stock_status": "applying", "stock_lock_at": order.get("stock_lock_at")})
        else:
            query["stock_status"] = {"$ne": "applying"}
        return query

    # -- transitions ----------------------------------------------------

    def create(self, user: Dict[str, Any], picks: List[StockPick], shipping_address: Dict[str, Any],
               total_price: float) -> Dict[str, Any]:
        """Validate stock, open a gateway order, then persist the unpaid order.

        Nothing is written when the stock check or the gateway call fails.
        """
        self._check_stock(picks)
        order_items = self._snapshot_items(picks)

        amount = _amount(total_price)
        gw_order = self.gateway.create_order(amount, self.currency, f"rcpt_{int(time.time() * 1000)}")

        doc = Order(
            user_id=str(user["_id"]),
            order_items=order_items,
            shipping_address=shipping_address,
            payment_details={"gateway_order_id": gw_order["id"]},
            total_price=total_price,
        ).model_dump()
        doc.update({"created_at": _now(), "updated_at": _now()})
        res = self.orders.insert_one(doc)
        logger.info("Order %s created for user %s (gateway order %s)", res.inserted_id, doc["user_id"], gw_order["id"])
        return {
            "order_id": str(res.inserted_id),
            "gateway_order_id": gw_order["id"],
            "amount": gw_order.get("amount", amount),
            "currency": gw_order.get("currency", self.currency),
            "key": self.gateway.key_id,
        }

    def verify(self, user: Dict[str, Any], order_id: str, gateway_order_id: str, gateway_payment_id: str,
               signature: str) -> Dict[str, Any]:
        """Confirm a payment and take the ordered stock.

        Verifying an order that is already paid succeeds without doing
        anything.
        """
        order = self._load(order_id)
        self._require_owner(order, user, allow_admin=True)
        if order["is_paid"]:
            return {
                "order_id": order_id,
                "payment_id": order["payment_details"].get("payment_id"),
                "already_verified": True,
            }
        if order["is_cancelled"]:
            raise InvalidOrderStateError("This order has been cancelled")

        expected_order_id = order["payment_details"].get("gateway_order_id")
        if gateway_order_id != expected_order_id or not self.gateway.verify_signature(
                gateway_order_id, gateway_payment_id, signature):
            security_logger.warning(
                "Payment signature mismatch: order=%s gateway_order=%s payment=%s user=%s",
                order_id, gateway_order_id, gateway_payment_id, user["_id"],
            )
            raise SignatureMismatchError("Payment verification failed: Invalid signature")

        payment = self.gateway.fetch_payment(gateway_payment_id)

        lock = self._lock_filter(order)
        res = self.orders.update_one(lock, {"$set": {
            "payment_details.gateway_order_id": gateway_order_id,
            "payment_details.payment_id": gateway_payment_id,
            "payment_details.signature": signature,
            "payment_details.method": payment.get("method"),
            "stock_status": "applying",
            "stock_lock_at": _now(),
            "updated_at": _now(),
        }}) if lock else None
        if res is None or res.matched_count == 0:
            current = self._load(order_id)
            if current["is_paid"]:
                return {
                    "order_id": order_id,
                    "payment_id": current["payment_details"].get("payment_id"),
                    "already_verified": True,
                }
            if current["is_cancelled"]:
                raise InvalidOrderStateError("This order has been cancelled")
            raise OrderInProgressError("Payment verification for this order is already in progress")

        self._apply_stock(self._load(order_id), gateway_order_id)
        logger.info("Order %s paid (payment %s)", order_id, gateway_payment_id)
        return {"order_id": order_id, "payment_id": gateway_payment_id, "already_verified": False}

    def _apply_stock(self, order: Dict[str, Any], gateway_order_id: Optional[str] = None) -> None:
        """Take stock for every order item not yet applied, then mark the order paid.

        The caller must hold the order's stock lock. When a variant cannot
        cover its quantity, every confirmed decrement of the order is
        returned to the ledger, the order is flagged as a stock conflict and
        InsufficientStockError is raised.
        """
        oid = order["_id"]
        items = order["order_items"]
        applied = set(order.get("stock_applied", []))
        refused: Optional[Dict[str, Any]] = None

        for index, item in enumerate(items):
            if index in applied:
                continue
            self.orders.update_one({"_id": oid}, {"$addToSet": {"stock_claimed": index}})
            if not decrement_stock(self.db, item["product_id"], item["size"], item["color_name"], item["quantity"]):
                self.orders.update_one({"_id": oid}, {"$pull": {"stock_claimed": index}})
                refused = item
                break
            self.orders.update_one({"_id": oid}, {"$addToSet": {"stock_applied": index}})
            applied.add(index)

        if refused is not None:
            for index in sorted(applied):
                item = items[index]
                increment_stock(self.db, item["product_id"], item["size"], item["color_name"], item["quantity"])
                self.orders.update_one({"_id": oid}, {"$pull": {"stock_applied": index, "stock_claimed": index}})
            self.orders.update_one({"_id": oid}, {"$set": {
                "stock_status": "conflict", "stock_lock_at": None, "updated_at": _now(),
            }})
            shortages = [{
                "product_id": refused["product_id"],
                "size": refused["size"],
                "color_name": refused["color_name"],
                "requested": refused["quantity"],
            }]
            logger.error("Order %s paid but stock could not be taken for %s", oid, shortages)
            raise InsufficientStockError("Stock ran out before the payment could be applied", shortages)

        details = order["payment_details"]
        self.orders.update_one(
            {"_id": oid, "is_paid": False},
            {"$set": {
                "is_paid": True,
                "paid_at": _now(),
                "payment_details": {
                    "gateway_order_id": gateway_order_id or details.get("gateway_order_id"),
                    "payment_id": details.get("payment_id"),
                    "signature": details.get("signature"),
                    "method": details.get("method"),
                },
                "stock_status": "applied",
                "stock_lock_at": None,
                "updated_at": _now(),
            }},
        )
        CartStore(self.db).clear(order["user_id"])

    def resume_stock_update(self, order_id: str) -> Dict[str, Any]:
        """Finish an interrupted stock update for a payment that was already verified."""
        order = self._load(order_id)
        if order["is_paid"]:
            return serialize_doc(order)
        if order["is_cancelled"]:
            raise InvalidOrderStateError("This order has been cancelled")
        if not order["payment_details"].get("payment_id"):
            raise InvalidOrderStateError("Order has no verified payment to apply")

        lock = self._lock_filter(order)
        res = self.orders.update_one(lock, {"$set": {
            "stock_status": "applying", "stock_lock_at": _now(), "updated_at": _now(),
        }}) if lock else None
        if res is None or res.matched_count == 0:
            raise OrderInProgressError("Payment verification for this order is in progress")

        unconfirmed = sorted(set(order.get("stock_claimed", [])) - set(order.get("stock_applied", [])))
        if unconfirmed:
            logger.warning("Order %s: decrements of items %s were started but never confirmed; retrying them",
                           order_id, unconfirmed)
        self._apply_stock(self._load(order_id))
        logger.info("Order %s stock update resumed and completed", order_id)
        return serialize_doc(self._load(order_id))

    def repay(self, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        """Open a fresh gateway order for an unpaid order."""
        order = self._load(order_id)
        self._require_owner(order, user)
        self._check_repayable(order)

        self._check_stock([StockPick(**i) for i in order["order_items"]])

        amount = _amount(order["total_price"])
        receipt = f"rcpt_{order_id}_{int(time.time() * 1000)}"[:40]
        gw_order = self.gateway.create_order(amount, self.currency, receipt)

        res = self.orders.update_one(
            {"_id": order["_id"], "is_paid": False, "is_cancelled": False,
             "stock_status": {"$ne": "applying"}, "payment_details.payment_id": None},
            {"$set": {"payment_details.gateway_order_id": gw_order["id"]}},
        )
        if res.matched_count == 0:
            self._check_repayable(self._load(order_id))
            raise InvalidOrderStateError("Order can no longer be repaid")
        logger.info("Order %s repay opened gateway order %s", order_id, gw_order["id"])
        return {
            "order_id": order_id,
            "gateway_order_id": gw_order["id"],
            "amount": gw_order.get("amount", amount),
            "currency": gw_order.get("currency", self.currency),
            "key": self.gateway.key_id,
        }

    @staticmethod
    def _check_repayable(order: Dict[str, Any]) -> None:
        if order["is_paid"]:
            raise InvalidOrderStateError("Order is already paid")
        if order["is_cancelled"]:
            raise InvalidOrderStateError("This order has been cancelled")
        if order.get("stock_status") == "applying":
            raise OrderInProgressError("Payment verification for this order is in progress")
        if order["payment_details"].get("payment_id"):
            raise InvalidOrderStateError("A payment for this order was already captured")

    def cancel(self, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        self._require_owner(order, user)
        if order["is_paid"]:
            raise InvalidOrderStateError("Cannot cancel a paid order")
        res = self.orders.update_one(
            {"_id": order["_id"], "is_paid": False, "stock_status": {"$ne": "applying"}},
            {"$set": {"is_cancelled": True, "updated_at": _now()}},
        )
        if res.matched_count == 0:
            current = self._load(order_id)
            if current["is_paid"]:
                raise InvalidOrderStateError("Cannot cancel a paid order")
            raise OrderInProgressError("Payment verification for this order is in progress")
        logger.info("Order %s cancelled", order_id)
        return serialize_doc(self._load(order_id))

    def delete(self, order_id: str) -> Dict[str, Any]:
        """Remove an order, returning any stock it holds to the ledger first."""
        order = self._load(order_id)
        if self._lock_is_live(order):
            raise OrderInProgressError("Payment verification for this order is in progress")
        items = order["order_items"]
        if order["is_paid"] and not order["is_cancelled"]:
            to_restock = items
        else:
            # unpaid orders only hold the confirmed decrements of an interrupted verification
            to_restock = [items[i] for i in sorted(set(order.get("stock_applied", []))) if i < len(items)]

        restocked: List[Dict[str, Any]] = []
        not_restocked: List[Dict[str, Any]] = []
        if to_restock:
            report = apply_adjustments(self.db, [_adjustment(i) for i in to_restock], +1)
            restocked = [asdict(a) for a in report.applied]
            not_restocked = [asdict(a) for a in report.refused]
            if not_restocked:
                logger.warning("Order %s deleted; variants no longer exist for %s", order_id, not_restocked)

        self.orders.delete_one({"_id": order["_id"]})
        logger.info("Order %s deleted (%d items restocked)", order_id, len(restocked))
        return {"message": "Order permanently deleted", "restocked": restocked, "not_restocked": not_restocked}

    def mark_delivered(self, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        if order["is_cancelled"]:
            raise InvalidOrderStateError("Cannot deliver a cancelled order")
        self.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"is_delivered": True, "delivered_at": _now(), "updated_at": _now()}},
        )
        return serialize_doc(self._load(order_id))

    # -- queries --------------------------------------------------------

    def get_for_user(self, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        self._require_owner(order, user, allow_admin=True)
        return serialize_doc(order)

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [serialize_doc(o) for o in self.orders.find({"user_id": user_id}).sort([("created_at", -1)])]

    def list_all(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {"user_id": user_id} if user_id else {}
        return [serialize_doc(o) for o in self.orders.find(query).sort([("created_at", -1)])]
