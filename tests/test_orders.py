"""Tests for order placement, status transitions and cancellation."""

import pytest
from bson import ObjectId

import cart as cart_ops
import orders
from database import paginate
from errors import (
    AuthorizationError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from schemas import OrderCreate, OrderItem


def order_payload(address, items=None, **extra):
    return OrderCreate(items=items, shipping_address=address, payment_method="upi", **extra)


@pytest.fixture
def filled_cart(db, customer, make_product):
    """Put one product (price 100, qty 2) in the customer's cart."""
    product_id = make_product(price=100.0, stock=10)
    current = cart_ops.load_cart(db, customer.id)
    cart_ops.add_item(current, db["product"].find_one({"_id": ObjectId(product_id)}), 2)
    cart_ops.save_cart(db, current)
    return product_id


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,allowed",
        [
            ("pending", {"processing", "cancelled"}),
            ("processing", {"shipped", "cancelled"}),
            ("shipped", {"delivered", "returned"}),
            ("delivered", {"returned"}),
            ("cancelled", set()),
            ("returned", set()),
        ],
    )
    def test_allowed_transitions(self, current, allowed):
        assert orders.allowed_transitions(current) == allowed

    def test_unknown_state_has_no_transitions(self):
        assert orders.allowed_transitions("lost") == set()

    def test_apply_transition_rejects_without_mutating(self):
        order = {"status": "pending"}
        assert orders.apply_transition(order, "delivered") is False
        assert order["status"] == "pending"
        assert orders.apply_transition(order, "processing") is True
        assert order["status"] == "processing"


class TestPricing:
    def test_scenario_a_flat_shipping(self, db, customer, filled_cart, address):
        order = orders.create_order(db, customer, order_payload(address))
        assert order["subtotal"] == pytest.approx(200.0)
        assert order["tax_amount"] == pytest.approx(36.0)
        assert order["shipping_cost"] == 50
        assert order["total_amount"] == pytest.approx(286.0)

    def test_scenario_b_free_shipping(self, db, customer, make_product, address):
        product_id = make_product(price=300.0, stock=5)
        items = [{"product_id": product_id, "quantity": 2, "price": 300.0}]
        order = orders.create_order(db, customer, order_payload(address, items=items))
        assert order["subtotal"] == pytest.approx(600.0)
        assert order["shipping_cost"] == 0
        assert order["total_amount"] == pytest.approx(708.0)

    def test_snapshot_price_used_not_live_price(self, db, customer, filled_cart, address):
        db["product"].update_one({"_id": ObjectId(filled_cart)}, {"$set": {"price": 999.0}})
        order = orders.create_order(db, customer, order_payload(address))
        assert order["items"][0]["price"] == 100.0
        assert order["subtotal"] == pytest.approx(200.0)

    def test_discount_price_carried_from_cart(self, db, customer, make_product, address):
        product_id = make_product(price=100.0, discount_price=80.0, stock=5)
        current = cart_ops.load_cart(db, customer.id)
        cart_ops.add_item(current, db["product"].find_one({"_id": ObjectId(product_id)}), 1)
        cart_ops.save_cart(db, current)

        order = orders.create_order(db, customer, order_payload(address))
        assert order["items"][0]["price"] == 80.0
        assert order["subtotal"] == pytest.approx(80.0)


class TestCreateOrder:
    def test_success_decrements_stock_and_clears_cart(self, db, customer, filled_cart, address, stock_of):
        order = orders.create_order(db, customer, order_payload(address))

        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["order_number"].startswith("ORD-")
        assert order["billing_address"] == order["shipping_address"]
        assert all(item["stock_reserved"] for item in order["items"])
        assert stock_of(filled_cart) == 8

        emptied = cart_ops.load_cart(db, customer.id)
        assert emptied.items == []
        assert emptied.total_items == 0
        assert emptied.subtotal == 0
        assert emptied.total_price == 0

    def test_transaction_id_marks_paid(self, db, customer, filled_cart, address):
        order = orders.create_order(db, customer, order_payload(address, transaction_id="txn_123"))
        assert order["payment_status"] == "paid"

    def test_explicit_items_leave_cart_alone(self, db, customer, filled_cart, make_product, address):
        other = make_product(name="Mug", price=20.0, stock=3)
        items = [{"product_id": other, "quantity": 1, "price": 20.0}]
        order = orders.create_order(db, customer, order_payload(address, items=items))

        assert order["items"][0]["product_name"] == "Mug"
        assert cart_ops.load_cart(db, customer.id).total_items == 2

    def test_client_subtotal_is_recomputed(self, db, customer, make_product, address):
        product_id = make_product(price=100.0, stock=10)
        items = [{"product_id": product_id, "quantity": 5, "price": 100.0, "subtotal": 1.0}]
        order = orders.create_order(db, customer, order_payload(address, items=items))

        assert order["items"][0]["subtotal"] == pytest.approx(500.0)
        assert order["subtotal"] == pytest.approx(500.0)
        assert order["total_amount"] == pytest.approx(640.0)

    def test_missing_shipping_address(self, db, customer, filled_cart):
        with pytest.raises(ValidationError):
            orders.create_order(db, customer, OrderCreate(payment_method="upi"))

    def test_missing_payment_method(self, db, customer, filled_cart, address):
        with pytest.raises(ValidationError):
            orders.create_order(db, customer, OrderCreate(shipping_address=address))

    def test_empty_cart(self, db, customer, address):
        with pytest.raises(ValidationError, match="Cart is empty"):
            orders.create_order(db, customer, order_payload(address))

    def test_missing_product(self, db, customer, address):
        items = [{"product_id": str(ObjectId()), "product_name": "Ghost", "quantity": 1, "price": 10.0}]
        with pytest.raises(NotFoundError):
            orders.create_order(db, customer, order_payload(address, items=items))
        assert db["order"].count_documents({}) == 0

    def test_scenario_c_insufficient_stock(self, db, customer, make_product, address, stock_of):
        product_id = make_product(name="Headphones", price=50.0, stock=3)
        items = [{"product_id": product_id, "quantity": 5, "price": 50.0}]

        with pytest.raises(InsufficientStockError) as exc_info:
            orders.create_order(db, customer, order_payload(address, items=items))

        assert exc_info.value.available == 3
        assert exc_info.value.product_name == "Headphones"
        assert "Only 3 available" in str(exc_info.value)
        assert stock_of(product_id) == 3
        assert db["order"].count_documents({}) == 0

    def test_no_stock_touched_when_any_line_short(self, db, customer, make_product, address, stock_of):
        plenty = make_product(name="Lamp", stock=10)
        short = make_product(name="Mug", stock=1)
        items = [
            {"product_id": plenty, "quantity": 2, "price": 100.0},
            {"product_id": short, "quantity": 2, "price": 100.0},
        ]
        with pytest.raises(InsufficientStockError):
            orders.create_order(db, customer, order_payload(address, items=items))
        assert stock_of(plenty) == 10
        assert stock_of(short) == 1

    def test_reservation_rolls_back_when_stock_vanishes(self, db, make_product, stock_of):
        first = make_product(name="Lamp", stock=5)
        second = make_product(name="Mug", stock=5)
        items = [
            OrderItem(product_id=first, product_name="Lamp", quantity=2, price=10.0),
            OrderItem(product_id=second, product_name="Mug", quantity=2, price=10.0),
        ]
        # another order took the mugs between the availability check and the reservation
        db["product"].update_one({"_id": ObjectId(second)}, {"$set": {"stock": 1}})

        with pytest.raises(InsufficientStockError) as exc_info:
            orders.reserve_stock(db, items)
        assert exc_info.value.available == 1
        assert stock_of(first) == 5
        assert stock_of(second) == 1
        assert not any(item.stock_reserved for item in items)

    def test_order_numbers_are_unique(self, db, customer, make_product, address):
        product_id = make_product(stock=10)
        items = [{"product_id": product_id, "quantity": 1, "price": 100.0}]
        numbers = {
            orders.create_order(db, customer, order_payload(address, items=items))["order_number"]
            for _ in range(3)
        }
        assert len(numbers) == 3


class TestUpdateStatus:
    @pytest.fixture
    def order(self, db, customer, filled_cart, address):
        return orders.create_order(db, customer, order_payload(address))

    def test_allowed_transition(self, db, order):
        updated = orders.update_status(db, order["id"], "processing")
        assert updated["status"] == "processing"

    def test_rejected_transition_leaves_state(self, db, order):
        with pytest.raises(InvalidStateError):
            orders.update_status(db, order["id"], "delivered")
        stored = db["order"].find_one({"_id": ObjectId(order["id"])})
        assert stored["status"] == "pending"
        assert stored.get("actual_delivery") is None

    def test_full_lifecycle_stamps_delivery(self, db, order):
        orders.update_status(db, order["id"], "processing")
        shipped = orders.update_status(db, order["id"], "shipped", tracking_number="TRK1", shipping_provider="BlueDart")
        assert shipped["tracking_number"] == "TRK1"
        delivered = orders.update_status(db, order["id"], "delivered")
        assert delivered["actual_delivery"] is not None
        returned = orders.update_status(db, order["id"], "returned", return_reason="Damaged")
        assert returned["return_reason"] == "Damaged"
        assert returned["return_date"] is not None

    def test_cancel_through_status_restores_stock(self, db, order, filled_cart, stock_of):
        assert stock_of(filled_cart) == 8
        cancelled = orders.update_status(db, order["id"], "cancelled")

        assert cancelled["status"] == "cancelled"
        assert stock_of(filled_cart) == 10
        stored = db["order"].find_one({"_id": ObjectId(order["id"])})
        assert not any(line["stock_reserved"] for line in stored["items"])

    def test_cancel_from_processing_through_status_restores_stock(self, db, order, filled_cart, stock_of):
        orders.update_status(db, order["id"], "processing")
        orders.update_status(db, order["id"], "cancelled")
        assert stock_of(filled_cart) == 10

    def test_terminal_state(self, db, order):
        orders.update_status(db, order["id"], "cancelled")
        with pytest.raises(InvalidStateError):
            orders.update_status(db, order["id"], "processing")

    def test_unknown_status(self, db, order):
        with pytest.raises(ValidationError):
            orders.update_status(db, order["id"], "teleported")

    def test_missing_order(self, db):
        with pytest.raises(NotFoundError):
            orders.update_status(db, str(ObjectId()), "processing")


class TestCancelOrder:
    @pytest.fixture
    def order(self, db, customer, filled_cart, address):
        return orders.create_order(db, customer, order_payload(address, transaction_id="txn_9"))

    def test_scenario_d_pending_cancel_restores_stock(self, db, customer, order, filled_cart, stock_of):
        assert stock_of(filled_cart) == 8
        cancelled = orders.cancel_order(db, order["id"], customer, "Changed my mind")

        assert cancelled["status"] == "cancelled"
        assert cancelled["cancellation_reason"] == "Changed my mind"
        assert cancelled["payment_status"] == "refunded"
        assert stock_of(filled_cart) == 10

    def test_processing_cancel_allowed(self, db, customer, order):
        orders.update_status(db, order["id"], "processing")
        assert orders.cancel_order(db, order["id"], customer)["status"] == "cancelled"

    def test_scenario_d_shipped_cancel_rejected(self, db, customer, order, filled_cart, stock_of):
        orders.update_status(db, order["id"], "processing")
        orders.update_status(db, order["id"], "shipped")

        with pytest.raises(InvalidStateError):
            orders.cancel_order(db, order["id"], customer)
        assert stock_of(filled_cart) == 8
        assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "shipped"

    def test_other_user_rejected(self, db, other_customer, order):
        with pytest.raises(AuthorizationError):
            orders.cancel_order(db, order["id"], other_customer)

    def test_admin_may_cancel(self, db, admin, order):
        assert orders.cancel_order(db, order["id"], admin)["status"] == "cancelled"

    def test_second_cancel_does_not_restore_twice(self, db, customer, order, filled_cart, stock_of):
        orders.cancel_order(db, order["id"], customer)
        with pytest.raises(InvalidStateError):
            orders.cancel_order(db, order["id"], customer)
        assert stock_of(filled_cart) == 10

    def test_unreserved_lines_not_restored(self, db, customer, order, filled_cart, stock_of):
        db["order"].update_one(
            {"_id": ObjectId(order["id"])},
            {"$set": {"items.0.stock_reserved": False}},
        )
        orders.cancel_order(db, order["id"], customer)
        assert stock_of(filled_cart) == 8


class TestQueries:
    def test_owner_and_admin_can_view(self, db, customer, other_customer, admin, filled_cart, address):
        order = orders.create_order(db, customer, order_payload(address))
        assert orders.get_order_for(db, order["id"], customer)["id"] == order["id"]
        assert orders.get_order_for(db, order["id"], admin)["id"] == order["id"]
        with pytest.raises(AuthorizationError):
            orders.get_order_for(db, order["id"], other_customer)

    def test_invalid_id_is_not_found(self, db, customer):
        with pytest.raises(NotFoundError):
            orders.get_order_for(db, "not-an-id", customer)

    def test_paginate_arithmetic(self):
        assert paginate(5, 2, 2) == {"total": 5, "page": 2, "pages": 3}
        assert paginate(0, 1, 10)["pages"] == 0
        assert paginate(3, 1, 0)["pages"] == 0

    def test_pagination(self, db, customer, make_product, address):
        product_id = make_product(stock=50)
        items = [{"product_id": product_id, "quantity": 1, "price": 10.0}]
        for _ in range(5):
            orders.create_order(db, customer, order_payload(address, items=items))

        page = orders.list_orders(db, {"user": customer.id}, page=2, limit=2)
        assert page["total"] == 5
        assert page["pages"] == 3
        assert page["page"] == 2
        assert page["count"] == 2
        last = orders.list_orders(db, {"user": customer.id}, page=3, limit=2)
        assert last["count"] == 1
