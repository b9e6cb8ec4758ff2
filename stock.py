"""
Stock validation for carts and checkouts.

The same classification applies to a signed-in user's cart, a guest's
client-held cart and the items of an order about to be paid. It has no side
effects: current stock is read once for all referenced products and every
pick is classified independently against that snapshot. A pick whose product
or variant no longer exists counts as out of stock; it never aborts the
batch.
"""
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, ValidationError
from pymongo.database import Database

from config import LOW_STOCK_THRESHOLD
from ledger import VariantKey, load_stock
from schemas import StockPick


class ValidatedPick(BaseModel):
    pick: Dict[str, Any]
    product_id: str
    size: str
    color_name: str
    quantity: int
    found: bool
    real_stock: int
    has_sufficient_stock: bool
    is_low_stock: bool
    is_out_of_stock: bool

    def public(self) -> Dict[str, Any]:
        """The original pick annotated with its stock classification."""
        return {
            **self.pick,
            "real_stock": self.real_stock,
            "has_sufficient_stock": self.has_sufficient_stock,
            "is_low_stock": self.is_low_stock,
            "is_out_of_stock": self.is_out_of_stock,
        }


class StockReport(BaseModel):
    items: List[ValidatedPick]
    can_checkout: bool

    def shortages(self) -> List[Dict[str, Any]]:
        return [
            {
                "product_id": i.product_id,
                "size": i.size,
                "color_name": i.color_name,
                "requested": i.quantity,
                "available": i.real_stock,
            }
            for i in self.items
            if not i.has_sufficient_stock
        ]

    def missing(self) -> List[ValidatedPick]:
        return [i for i in self.items if not i.found]


def classify(pick: StockPick, stock_map: Dict[VariantKey, int], low_stock_threshold: int = LOW_STOCK_THRESHOLD) -> ValidatedPick:
    key = (pick.product_id, pick.size, pick.color_name)
    found = key in stock_map
    real_stock = max(stock_map.get(key, 0), 0)
    return ValidatedPick(
        pick=pick.model_dump(),
        product_id=pick.product_id,
        size=pick.size,
        color_name=pick.color_name,
        quantity=pick.quantity,
        found=found,
        real_stock=real_stock,
        has_sufficient_stock=real_stock > 0 and real_stock >= pick.quantity,
        is_low_stock=0 < real_stock <= low_stock_threshold,
        is_out_of_stock=real_stock == 0,
    )


def validate_raw(db: Database, raw_items: List[Any], low_stock_threshold: int = LOW_STOCK_THRESHOLD) -> Dict[str, Any]:
    """Validate client-held cart items that have not been schema-checked.

    An item that cannot be read as a pick (missing ids, bad quantity) is
    reported as out of stock instead of failing the request.
    """
    picks: Dict[int, StockPick] = {}
    for index, raw in enumerate(raw_items):
        try:
            picks[index] = StockPick.model_validate(raw)
        except ValidationError:
            continue
    report = validate_picks(db, picks.values(), low_stock_threshold)
    by_index = dict(zip(picks.keys(), report.items))

    items = []
    for index, raw in enumerate(raw_items):
        if index in by_index:
            items.append(by_index[index].public())
        else:
            bad = raw if isinstance(raw, dict) else {"item": raw}
            items.append({**bad, "real_stock": 0, "has_sufficient_stock": False,
                          "is_low_stock": False, "is_out_of_stock": True})
    return {
        "validated_items": items,
        "can_checkout": report.can_checkout and len(by_index) == len(raw_items),
    }


def combine_picks(picks: Iterable[StockPick]) -> List[StockPick]:
    """One pick per variant, quantities summed, in first-seen order."""
    combined: Dict[VariantKey, StockPick] = {}
    for p in picks:
        key = (p.product_id, p.size, p.color_name)
        if key in combined:
            combined[key] = combined[key].model_copy(update={"quantity": combined[key].quantity + p.quantity})
        else:
            combined[key] = p
    return list(combined.values())


def validate_picks(db: Database, picks: Iterable[StockPick], low_stock_threshold: int = LOW_STOCK_THRESHOLD) -> StockReport:
    picks = list(picks)
    stock_map = load_stock(db, {p.product_id for p in picks})
    items = [classify(p, stock_map, low_stock_threshold) for p in picks]
    return StockReport(items=items, can_checkout=all(i.has_sufficient_stock for i in items))
