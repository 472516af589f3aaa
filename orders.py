"""
Order lifecycle: placement, stock reservation, status transitions and cancellation.

Stock is reserved with a conditional decrement per line (only when enough
stock remains). If any line cannot be reserved the lines already reserved
are put back and nothing is persisted, so placement is all-or-nothing and
two concurrent orders cannot both take the last unit.
"""
import logging
import time
from typing import Dict, List, Optional, Set

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import cart as cart_ops
from database import now_utc, paginate, serialize_doc, to_object_id
from errors import (
    AuthorizationError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from schemas import Order, OrderCreate, OrderItem, UserOut

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
RETURNED = "returned"

TRANSITIONS: Dict[str, Set[str]] = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {SHIPPED, CANCELLED},
    SHIPPED: {DELIVERED, RETURNED},
    DELIVERED: {RETURNED},
    CANCELLED: set(),
    RETURNED: set(),
}
STATUSES = frozenset(TRANSITIONS)
CANCELLABLE = frozenset({PENDING, PROCESSING})

ORDER_NUMBER_ATTEMPTS = 5


def allowed_transitions(status: str) -> Set[str]:
    return set(TRANSITIONS.get(status, set()))


def can_transition(current: str, new_status: str) -> bool:
    return new_status in allowed_transitions(current)


def apply_transition(order: dict, new_status: str) -> bool:
    """Move an in-memory order to `new_status` if the transition table allows it."""
    if not can_transition(order.get("status"), new_status):
        return False
    order["status"] = new_status
    return True


def price_items(items: List[OrderItem]) -> dict:
    """Totals from line subtotals (snapshot price x quantity, never the live price)."""
    subtotal = sum(item.subtotal for item in items)
    tax, shipping = cart_ops.calculate_charges(subtotal)
    return {
        "subtotal": subtotal,
        "tax_amount": tax,
        "shipping_cost": shipping,
        "total_amount": round(subtotal + tax + shipping, 2),
    }


def generate_order_number(db, offset: int = 0) -> str:
    count = db["order"].count_documents({})
    return f"ORD-{int(time.time() * 1000)}-{count + 1 + offset}"


# Stock

def reserve_stock(db, items: List[OrderItem]) -> None:
    """Decrement stock for every line, or for none of them."""
    reserved = []
    for item in items:
        product_id = to_object_id(item.product_id)
        result = db["product"].update_one(
            {"_id": product_id, "stock": {"$gte": item.quantity}},
            {"$inc": {"stock": -item.quantity}},
        )
        if result.modified_count != 1:
            release_stock(db, reserved)
            product = db["product"].find_one({"_id": product_id}, {"stock": 1})
            available = product.get("stock", 0) if product else 0
            logger.warning(
                "Stock reservation failed for %s (wanted %d, have %d); released %d line(s)",
                item.product_id, item.quantity, available, len(reserved),
            )
            raise InsufficientStockError(item.product_name or item.product_id, available, item.quantity)
        item.stock_reserved = True
        reserved.append(item)


def release_stock(db, items) -> None:
    for item in items:
        db["product"].update_one(
            {"_id": to_object_id(item.product_id)},
            {"$inc": {"stock": item.quantity}},
        )
        item.stock_reserved = False


# Placement

def _items_from_cart(current_cart) -> List[OrderItem]:
    return [
        OrderItem(
            product_id=line.product_id,
            product_name=line.product_name,
            quantity=line.quantity,
            price=line.unit_price,
            image=line.image,
            subtotal=line.subtotal,
        )
        for line in current_cart.items
    ]


def _check_availability(db, items: List[OrderItem]) -> None:
    for item in items:
        product_id = to_object_id(item.product_id)
        product = db["product"].find_one({"_id": product_id}) if product_id else None
        if not product:
            raise NotFoundError("Product", item.product_name or item.product_id)
        if item.product_name is None:
            item.product_name = product.get("name")
        if item.image is None:
            item.image = product.get("image")
        # a client-supplied subtotal is never trusted
        item.subtotal = item.price * item.quantity
        stock = product.get("stock", 0)
        if stock < item.quantity:
            raise InsufficientStockError(item.product_name, stock, item.quantity)


def _insert_order(db, order: Order) -> dict:
    doc = order.model_dump()
    stamp = now_utc()
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        doc["order_number"] = generate_order_number(db, offset=attempt)
        doc["created_at"] = doc["updated_at"] = stamp
        try:
            db["order"].insert_one(doc)
            return doc
        except DuplicateKeyError:
            logger.info("Order number %s already taken, retrying", doc["order_number"])
            doc.pop("_id", None)
    raise RuntimeError("Could not allocate a unique order number")


def create_order(db, user: UserOut, payload: OrderCreate) -> dict:
    if payload.shipping_address is None or payload.payment_method is None:
        raise ValidationError("Please provide shipping address and payment method")

    used_cart = None
    if payload.items:
        items = [item.model_copy(update={"stock_reserved": False}) for item in payload.items]
    else:
        used_cart = cart_ops.load_cart(db, user.id)
        if not used_cart.items:
            raise ValidationError("Cart is empty")
        items = _items_from_cart(used_cart)

    _check_availability(db, items)
    totals = price_items(items)

    reserve_stock(db, items)
    order = Order(
        user=user.id,
        order_number="",
        items=items,
        shipping_address=payload.shipping_address,
        billing_address=payload.billing_address or payload.shipping_address,
        payment_method=payload.payment_method,
        transaction_id=payload.transaction_id,
        payment_status="paid" if payload.transaction_id else "pending",
        notes=payload.notes,
        **totals,
    )
    try:
        doc = _insert_order(db, order)
    except (PyMongoError, RuntimeError):
        release_stock(db, items)
        raise
    logger.info("Order %s placed by %s for %.2f", doc["order_number"], user.id, doc["total_amount"])

    if used_cart is not None:
        try:
            cart_ops.save_cart(db, cart_ops.clear(used_cart))
        except PyMongoError:
            # the order stands even if the cart could not be emptied
            logger.exception("Failed to clear cart for user %s after order %s", user.id, doc["order_number"])
    return serialize_doc(doc)


# Queries

def _load_order(db, order_id: str) -> dict:
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid else None
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def _check_owner(order: dict, user: UserOut, action: str) -> None:
    if order["user"] != user.id and not user.is_admin:
        raise AuthorizationError(f"Not authorized to {action} this order")


def get_order_for(db, order_id: str, user: UserOut) -> dict:
    order = _load_order(db, order_id)
    _check_owner(order, user, "view")
    return serialize_doc(order)


def list_orders(db, query: dict, page: int = 1, limit: int = 10) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    skip = (page - 1) * limit
    cursor = db["order"].find(query).sort([("created_at", -1)]).skip(skip).limit(limit)
    items = [serialize_doc(doc) for doc in cursor]
    total = db["order"].count_documents(query)
    return {"items": items, "count": len(items), **paginate(total, page, limit)}


# Lifecycle

def _restore_reserved_stock(db, order: dict) -> int:
    """Give back stock for lines whose stock was actually taken, then clear their flags."""
    restored = [OrderItem.model_validate(line) for line in order["items"] if line.get("stock_reserved")]
    release_stock(db, restored)
    for line in order["items"]:
        line["stock_reserved"] = False
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"items": order["items"]}})
    return len(restored)


def update_status(
    db,
    order_id: str,
    new_status: Optional[str],
    tracking_number: Optional[str] = None,
    shipping_provider: Optional[str] = None,
    estimated_delivery=None,
    return_reason: Optional[str] = None,
) -> dict:
    if not new_status:
        raise ValidationError("Please provide order status", field="status")
    if new_status not in STATUSES:
        raise ValidationError(f"Unknown order status: {new_status}", field="status")

    order = _load_order(db, order_id)
    current = order.get("status")
    if not apply_transition(order, new_status):
        logger.info("Rejected status change %s -> %s for order %s", current, new_status, order_id)
        raise InvalidStateError(current, new_status)

    changes = {"status": new_status, "updated_at": now_utc()}
    if new_status == SHIPPED:
        for key, value in (
            ("tracking_number", tracking_number),
            ("shipping_provider", shipping_provider),
            ("estimated_delivery", estimated_delivery),
        ):
            if value is not None:
                changes[key] = value
    elif new_status == DELIVERED:
        changes["actual_delivery"] = now_utc()
    elif new_status == RETURNED:
        changes["return_date"] = now_utc()
        changes["return_reason"] = return_reason
    elif new_status == CANCELLED and order.get("payment_status") == "paid":
        changes["payment_status"] = "refunded"

    # guard on the status we validated against so a concurrent change is not overwritten
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError(current, new_status, "Order status changed concurrently, retry")
    if new_status == CANCELLED:
        _restore_reserved_stock(db, updated)
    logger.info("Order %s moved %s -> %s", updated.get("order_number"), current, new_status)
    return serialize_doc(updated)


def cancel_order(db, order_id: str, user: UserOut, reason: Optional[str] = None) -> dict:
    order = _load_order(db, order_id)
    _check_owner(order, user, "cancel")
    current = order.get("status")
    if current not in CANCELLABLE:
        raise InvalidStateError(current, CANCELLED, "Cannot cancel order in current status")

    changes = {"status": CANCELLED, "cancellation_reason": reason, "updated_at": now_utc()}
    if order.get("payment_status") == "paid":
        changes["payment_status"] = "refunded"
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE)}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError(current, CANCELLED, "Cannot cancel order in current status")

    restored = _restore_reserved_stock(db, updated)
    logger.info("Order %s cancelled by %s, restored %d line(s)", updated.get("order_number"), user.id, restored)
    return serialize_doc(updated)
