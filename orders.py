"""
Order placement and fulfilment.

Three layers, each working on a pymongo ``Database``:

* order items: create / delete individual line-item records
* pricing: resolve each item's product price and sum into an order total
* order lifecycle: place, read (with joined user/product/category), change
  status, cascade-delete, and report sales figures

Totals are snapshots: computed once with ``Decimal`` when the order is placed
and never recomputed when product prices change later.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from database import create_document, populate, to_object_id
from errors import CreationError, NotFoundError, ResolutionError, ShopError, ValidationError
from schemas import Order, OrderDeletion, OrderItem

logger = logging.getLogger(__name__)

DEFAULT_STATUS = "Pending"
USER_FIELDS = {"name": 1, "email": 1}


# ----------------------- Order items -----------------------
def create_item(db, quantity, product) -> ObjectId:
    """Insert one line item; the price is not stored on the item."""
    if isinstance(quantity, bool):
        raise ValidationError("quantity must be a positive integer")
    try:
        item = OrderItem(quantity=quantity, product=to_object_id(product))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid order item: {exc.errors()[0]['msg']}") from exc
    return create_document(db, "orderitem", item)


def delete_item(db, item_id) -> bool:
    """Remove a line item. Returns False when it was already gone."""
    res = db["orderitem"].delete_one({"_id": to_object_id(item_id)})
    return res.deleted_count > 0


# ----------------------- Pricing -----------------------
def compute_order_total(db, item_ids: Iterable) -> Decimal:
    total = Decimal("0")
    for item_id in item_ids:
        item = db["orderitem"].find_one({"_id": to_object_id(item_id)})
        if not item:
            raise ResolutionError(f"Order item {item_id} not found")
        product = db["product"].find_one({"_id": item.get("product")}, {"price": 1})
        if not product or product.get("price") is None:
            raise ResolutionError(f"Product {item.get('product')} of order item {item_id} not found")
        total += Decimal(str(product["price"])) * item["quantity"]
    return total


# ----------------------- Orders -----------------------
def _find_order(db, order_id) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFoundError("Order not found!")
    return order


def _expand(db, order: dict) -> dict:
    populate(db, order, "user", "user", USER_FIELDS)
    populate(db, order, "order_items", "orderitem")
    for item in order["order_items"]:
        populate(db, item, "product", "product")
        populate(db, item.get("product"), "category", "category")
    return order


def place_order(db, items: Iterable[Mapping], shipping: Mapping, user) -> dict:
    """Create the order items, price them and write the order.

    Any failure after items were written removes those items again before
    CreationError is raised.
    """
    created: List[ObjectId] = []
    try:
        for entry in items:
            created.append(create_item(db, entry.get("quantity"), entry.get("product")))

        total = compute_order_total(db, created)

        order = Order(
            order_items=created,
            shipping_address1=shipping.get("shipping_address1"),
            shipping_address2=shipping.get("shipping_address2"),
            city=shipping.get("city"),
            zip=shipping.get("zip"),
            country=shipping.get("country"),
            phone=shipping.get("phone"),
            status=DEFAULT_STATUS,
            total_price=float(total),
            user=to_object_id(user),
            date_ordered=datetime.now(timezone.utc),
        )
        order_id = create_document(db, "order", order)
    except (ShopError, PydanticValidationError, PyMongoError) as exc:
        _rollback_items(db, created)
        raise CreationError(f"The order cannot be placed: {exc}") from exc

    logger.info("Placed order %s with %d item(s), total %s", order_id, len(created), total)
    return db["order"].find_one({"_id": order_id})


def _rollback_items(db, item_ids: List[ObjectId]):
    if not item_ids:
        return
    logger.warning("Rolling back %d order item(s) of a failed order", len(item_ids))
    for item_id in item_ids:
        try:
            delete_item(db, item_id)
        except PyMongoError:
            logger.exception("Could not remove orphaned order item %s", item_id)


def get_order(db, order_id) -> dict:
    return _expand(db, _find_order(db, order_id))


def list_orders(db) -> List[dict]:
    orders = list(db["order"].find().sort("date_ordered", DESCENDING))
    for order in orders:
        populate(db, order, "user", "user", USER_FIELDS)
    return orders


def list_orders_for_user(db, user) -> List[dict]:
    orders = db["order"].find({"user": to_object_id(user)}).sort("date_ordered", DESCENDING)
    return [_expand(db, order) for order in orders]


def update_status(db, order_id, status: Optional[str]) -> dict:
    if not isinstance(status, str) or not status.strip():
        raise ValidationError("status must be a non-empty string")
    updated = db["order"].find_one_and_update(
        {"_id": to_object_id(order_id)},
        {"$set": {"status": status}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Order not found!")
    logger.info("Order %s status set to %s", order_id, updated["status"])
    return updated


def delete_order(db, order_id) -> OrderDeletion:
    """Remove the order, then each of its items independently."""
    deleted = db["order"].find_one_and_delete({"_id": to_object_id(order_id)})
    if not deleted:
        raise NotFoundError("Order not found!")

    report = OrderDeletion(order_id=str(deleted["_id"]))
    for item_id in deleted.get("order_items", []):
        try:
            if delete_item(db, item_id):
                report.deleted_items.append(str(item_id))
            else:
                report.missing_items.append(str(item_id))
        except PyMongoError:
            logger.exception("Failed to delete order item %s of order %s", item_id, order_id)
            report.failed_items.append(str(item_id))

    if report.failed_items:
        logger.warning("Order %s deleted with %d item(s) left behind", order_id, len(report.failed_items))
    return report


def total_sales(db) -> Decimal:
    """Sum of all order totals; 0 when there are no orders."""
    total = Decimal("0")
    for order in db["order"].find({}, {"total_price": 1}):
        total += Decimal(str(order.get("total_price", 0)))
    return total


def order_count(db) -> int:
    return db["order"].count_documents({})
