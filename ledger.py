"""
Variant ledger: the authoritative per-variant stock counts.

Stock lives on the product document as `variants[].stock`. Every adjustment
is a single conditional `update_one` scoped to one variant, matched through
`$elemMatch` on (size, color_name) and applied with the positional `$`
operator. MongoDB serializes concurrent updates to the same document, so
adjustments never need an explicit lock. A decrement additionally requires
`stock >= quantity` in the same predicate; the stock floor therefore holds
even when two orders race for the last units.

An adjustment that matches nothing (variant deleted or renamed, or not
enough stock) is reported back to the caller and logged. It never raises,
so one bad variant does not abort a batch of unrelated adjustments.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from pymongo.database import Database

from database import parse_object_id
from errors import ValidationFailedError

logger = logging.getLogger(__name__)

VariantKey = Tuple[str, str, str]


@dataclass
class Adjustment:
    product_id: str
    size: str
    color_name: str
    quantity: int

    @property
    def key(self) -> VariantKey:
        return (self.product_id, self.size, self.color_name)


@dataclass
class LedgerReport:
    applied: List[Adjustment] = field(default_factory=list)
    refused: List[Adjustment] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.refused


def _check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationFailedError(f"Stock adjustment quantity must be a positive integer, got {quantity!r}")


def _adjust(db: Database, product_id: str, size: str, color_name: str, delta: int, floor: int) -> bool:
    oid = parse_object_id(product_id)
    if oid is None:
        logger.warning("Stock adjustment skipped, invalid product id %r", product_id)
        return False
    match = {"size": size, "color_name": color_name}
    if floor:
        match["stock"] = {"$gte": floor}
    res = db["product"].update_one(
        {"_id": oid, "variants": {"$elemMatch": match}},
        {"$inc": {"variants.$.stock": delta}},
    )
    if res.modified_count == 0:
        logger.warning(
            "Stock adjustment %+d matched no variant: product=%s size=%s color=%s",
            delta, product_id, size, color_name,
        )
        return False
    return True


def decrement_stock(db: Database, product_id: str, size: str, color_name: str, quantity: int) -> bool:
    """Take `quantity` units from a variant.

    Returns False (and changes nothing) when the variant is gone or holds
    fewer than `quantity` units.
    """
    _check_quantity(quantity)
    return _adjust(db, product_id, size, color_name, -quantity, floor=quantity)


def increment_stock(db: Database, product_id: str, size: str, color_name: str, quantity: int) -> bool:
    """Return `quantity` units to a variant. Returns False when the variant is gone."""
    _check_quantity(quantity)
    ok = _adjust(db, product_id, size, color_name, quantity, floor=0)
    if ok:
        logger.info("Restocked %d x product=%s size=%s color=%s", quantity, product_id, size, color_name)
    return ok


def apply_adjustments(db: Database, adjustments: Iterable[Adjustment], sign: int) -> LedgerReport:
    """Apply independent per-variant adjustments; `sign` is -1 to take, +1 to return."""
    report = LedgerReport()
    op = decrement_stock if sign < 0 else increment_stock
    for adj in adjustments:
        if op(db, adj.product_id, adj.size, adj.color_name, adj.quantity):
            report.applied.append(adj)
        else:
            report.refused.append(adj)
    return report


def load_stock(db: Database, product_ids: Iterable[str]) -> Dict[VariantKey, int]:
    """Snapshot of current stock for every variant of the given products.

    Loaded in one query. Ids that are malformed or do not exist are simply
    absent from the result.
    """
    oids = {oid for oid in (parse_object_id(p) for p in product_ids) if oid is not None}
    stock: Dict[VariantKey, int] = {}
    if not oids:
        return stock
    for p in db["product"].find({"_id": {"$in": list(oids)}}, {"variants": 1}):
        for v in p.get("variants", []):
            stock[(str(p["_id"]), v["size"], v["color_name"])] = int(v.get("stock", 0))
    return stock


def find_variant(db: Database, product_id: str, size: str, color_name: str):
    """Return (product, variant) documents, either of which may be None."""
    oid = parse_object_id(product_id)
    product = db["product"].find_one({"_id": oid}) if oid is not None else None
    if not product:
        return None, None
    for v in product.get("variants", []):
        if v["size"] == size and v["color_name"] == color_name:
            return product, v
    return product, None
