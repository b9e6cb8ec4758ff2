"""
Per-user persisted carts.

A cart item is identified by (product_id, size, color_name); adding a tuple
that is already present merges quantities. Display fields are captured when
the item is added and kept as-is afterwards.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from errors import InsufficientStockError, NotFoundError, ValidationFailedError
from ledger import find_variant, load_stock
from schemas import StockPick
from stock import StockReport, validate_picks

logger = logging.getLogger(__name__)


def _same_line(item: Dict[str, Any], product_id: str, size: str, color_name: str) -> bool:
    return item["product_id"] == product_id and item["size"] == size and item["color_name"] == color_name


def _find_line(items: List[Dict[str, Any]], product_id: str, size: str, color_name: str) -> Optional[Dict[str, Any]]:
    for item in items:
        if _same_line(item, product_id, size, color_name):
            return item
    return None


def _shortage(product_id: str, size: str, color_name: str, requested: int, available: int) -> List[Dict[str, Any]]:
    return [{
        "product_id": product_id,
        "size": size,
        "color_name": color_name,
        "requested": requested,
        "available": available,
    }]


def _normalize_guest(guest: Dict[str, Any]) -> Dict[str, Any]:
    # guest carts come from browser storage and use camelCase keys
    item = dict(guest)
    item["product_id"] = guest.get("product_id") or guest.get("productId")
    item["color_name"] = guest.get("color_name") or guest.get("colorName")
    item["size"] = guest.get("size")
    return item


class CartStore:
    def __init__(self, db: Database):
        self.db = db
        self.carts = db["cart"]

    def get(self, user_id: str) -> Dict[str, Any]:
        """Persisted cart for `user_id`; a user without one has an empty cart."""
        cart = self.carts.find_one({"user_id": user_id})
        return {"user_id": user_id, "items": (cart or {}).get("items", [])}

    def _save(self, user_id: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": items, "updated_at": datetime.now(timezone.utc)},
             "$setOnInsert": {"created_at": datetime.now(timezone.utc)}},
            upsert=True,
        )
        return items

    def _require_variant(self, product_id: str, size: str, color_name: str):
        product, variant = find_variant(self.db, product_id, size, color_name)
        if not product:
            raise NotFoundError("Product", {"product_id": product_id})
        if not variant:
            raise NotFoundError("Variant", {"product_id": product_id, "size": size, "color_name": color_name})
        return product, variant

    def add(self, user_id: str, product_id: str, size: str, color_name: str, quantity: int,
            display: Dict[str, Any]) -> List[Dict[str, Any]]:
        if quantity < 1:
            raise ValidationFailedError("Quantity must be at least 1.")
        _, variant = self._require_variant(product_id, size, color_name)
        items = self.get(user_id)["items"]
        line = _find_line(items, product_id, size, color_name)
        new_quantity = quantity + (line["quantity"] if line else 0)
        if new_quantity > variant["stock"]:
            raise InsufficientStockError(
                f"Cannot add {new_quantity} items. Only {variant['stock']} available in stock.",
                _shortage(product_id, size, color_name, new_quantity, variant["stock"]),
            )
        if line:
            line["quantity"] = new_quantity
        else:
            items.append({
                "product_id": product_id,
                "name": display["name"],
                "price": display["price"],
                "image": display.get("image"),
                "size": size,
                "color_name": color_name,
                "quantity": new_quantity,
            })
        return self._save(user_id, items)

    def update(self, user_id: str, product_id: str, size: str, color_name: str, new_quantity: int) -> List[Dict[str, Any]]:
        if new_quantity < 1:
            raise ValidationFailedError("Quantity must be at least 1.")
        _, variant = self._require_variant(product_id, size, color_name)
        if new_quantity > variant["stock"]:
            raise InsufficientStockError(
                f"Cannot set quantity to {new_quantity}. Only {variant['stock']} available.",
                _shortage(product_id, size, color_name, new_quantity, variant["stock"]),
            )
        cart = self.carts.find_one({"user_id": user_id})
        if not cart:
            raise NotFoundError("Cart")
        items = cart.get("items", [])
        line = _find_line(items, product_id, size, color_name)
        if not line:
            raise NotFoundError("Cart item", {"product_id": product_id, "size": size, "color_name": color_name})
        line["quantity"] = new_quantity
        return self._save(user_id, items)

    def remove(self, user_id: str, product_id: str, size: str, color_name: str) -> List[Dict[str, Any]]:
        cart = self.carts.find_one({"user_id": user_id})
        if not cart:
            raise NotFoundError("Cart")
        items = cart.get("items", [])
        kept = [i for i in items if not _same_line(i, product_id, size, color_name)]
        if len(kept) == len(items):
            raise NotFoundError("Cart item", {"product_id": product_id, "size": size, "color_name": color_name})
        return self._save(user_id, kept)

    def clear(self, user_id: str) -> None:
        self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": datetime.now(timezone.utc)}},
        )

    def merge(self, user_id: str, guest_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Fold a guest cart into the persisted one.

        Bad guest items (missing identifiers, vanished or sold-out variants)
        are skipped. Quantities are clamped to current stock.
        """
        items = self.get(user_id)["items"]
        guest_items = [_normalize_guest(g) for g in guest_items if isinstance(g, dict)]
        ids = [g["product_id"] for g in guest_items if isinstance(g["product_id"], str)]
        stock_map = load_stock(self.db, ids)
        products: Dict[str, Dict[str, Any]] = {}

        for guest in guest_items:
            product_id, size, color_name = guest["product_id"], guest["size"], guest["color_name"]
            quantity = guest.get("quantity")
            if not isinstance(product_id, str) or not product_id or not size or not color_name:
                continue
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                continue
            stock = stock_map.get((product_id, size, color_name), 0)
            if stock <= 0:
                logger.debug("Merge skipped %s/%s/%s: unavailable", product_id, size, color_name)
                continue

            line = _find_line(items, product_id, size, color_name)
            if line:
                line["quantity"] = min(line["quantity"] + quantity, stock)
                continue

            if product_id not in products:
                products[product_id], _ = find_variant(self.db, product_id, size, color_name)
            product = products[product_id] or {}
            images = product.get("images") or [None]
            items.append({
                "product_id": product_id,
                "name": guest.get("name") or product.get("name"),
                "price": guest.get("price") if guest.get("price") is not None else product.get("price"),
                "image": guest.get("image") or images[0],
                "size": size,
                "color_name": color_name,
                "quantity": min(quantity, stock),
            })
        return self._save(user_id, items)

    def validated(self, user_id: str) -> Dict[str, Any]:
        """The cart annotated with live stock, its subtotal and checkout eligibility."""
        items = self.get(user_id)["items"]
        report: StockReport = validate_picks(self.db, [StockPick(**i) for i in items])
        subtotal = sum(
            v.pick["price"] * v.quantity for v in report.items if v.has_sufficient_stock
        )
        return {
            "items": [v.public() for v in report.items],
            "subtotal": round(subtotal, 2),
            "can_checkout": report.can_checkout,
        }
