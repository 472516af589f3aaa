"""
Per-user shopping cart.

Line items keep a snapshot of the product (name, price, discount, image,
stock, category) taken when the product was first added, so the price a
customer saw survives later catalog edits.
"""
from typing import Optional

from database import now_utc
from errors import InsufficientStockError, ValidationError
from schemas import Cart, CartItem, MAX_QUANTITY

TAX_RATE = 0.18
FREE_SHIPPING_THRESHOLD = 500
FLAT_SHIPPING = 50


def calculate_charges(subtotal: float):
    """Return (tax, shipping) for a subtotal: 18% tax, free shipping above 500."""
    tax = round(subtotal * TAX_RATE, 2)
    shipping = 0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    return tax, shipping


def find_item(cart: Cart, product_id: str) -> Optional[CartItem]:
    for item in cart.items:
        if item.product_id == product_id:
            return item
    return None


def has_item(cart: Cart, product_id: str) -> bool:
    return find_item(cart, product_id) is not None


def item_count(cart: Cart) -> int:
    return sum(item.quantity for item in cart.items)


def calculate_totals(cart: Cart) -> Cart:
    # tax, shipping and discount are set by checkout, not derived here
    cart.total_items = item_count(cart)
    subtotal = 0.0
    for item in cart.items:
        item.subtotal = item.unit_price * item.quantity
        subtotal += item.subtotal
    cart.subtotal = subtotal
    cart.total_price = cart.subtotal + cart.tax_amount + cart.shipping_cost - cart.discount_amount
    return cart


def apply_checkout_charges(cart: Cart) -> Cart:
    """Set tax and shipping from the current subtotal so total_price is ready for display."""
    calculate_totals(cart)
    if cart.items:
        cart.tax_amount, cart.shipping_cost = calculate_charges(cart.subtotal)
    else:
        cart.tax_amount, cart.shipping_cost = 0.0, 0.0
    return calculate_totals(cart)


def add_item(cart: Cart, product: dict, quantity: int = 1) -> Cart:
    """Add `quantity` of a product document to the cart.

    An existing line has its quantity bumped and its timestamp refreshed;
    otherwise a new line is appended with a snapshot of the product.
    """
    product_id = str(product["_id"])
    existing = find_item(cart, product_id)
    new_quantity = quantity + (existing.quantity if existing else 0)
    if quantity < 1 or new_quantity > MAX_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {MAX_QUANTITY}", field="quantity")
    stock = product.get("stock", 0)
    if new_quantity > stock:
        raise InsufficientStockError(product.get("name", product_id), stock, new_quantity)

    if existing:
        existing.quantity = new_quantity
        existing.added_at = now_utc()
    else:
        cart.items.append(
            CartItem(
                product_id=product_id,
                product_name=product.get("name"),
                price=product["price"],
                discount_price=product.get("discount_price"),
                image=product.get("image"),
                quantity=quantity,
                stock=stock,
                category=product.get("category"),
            )
        )
    return calculate_totals(cart)


def remove_item(cart: Cart, product_id: str) -> Cart:
    cart.items = [item for item in cart.items if item.product_id != product_id]
    return calculate_totals(cart)


def update_quantity(cart: Cart, product_id: str, quantity: int) -> bool:
    """Set a line's quantity; zero or negative removes the line.

    Returns False when the cart has no line for the product.
    """
    item = find_item(cart, product_id)
    if item is None:
        return False
    if quantity <= 0:
        remove_item(cart, product_id)
        return True
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"Quantity cannot exceed {MAX_QUANTITY}", field="quantity")
    item.quantity = quantity
    calculate_totals(cart)
    return True


def clear(cart: Cart) -> Cart:
    cart.items = []
    cart.total_items = 0
    cart.subtotal = 0.0
    cart.total_price = 0.0
    cart.tax_amount = 0.0
    cart.shipping_cost = 0.0
    cart.discount_amount = 0.0
    cart.coupon_code = None
    return cart


# Persistence

def load_cart(db, user_id: str) -> Cart:
    """Fetch the user's cart, or a fresh unsaved one if they have none yet."""
    doc = db["cart"].find_one({"user": user_id})
    if not doc:
        return Cart(user=user_id)
    doc.pop("_id", None)
    doc.pop("created_at", None)
    doc.pop("updated_at", None)
    return Cart.model_validate(doc)


def save_cart(db, cart: Cart) -> Cart:
    stamp = now_utc()
    db["cart"].update_one(
        {"user": cart.user},
        {"$set": {**cart.model_dump(), "updated_at": stamp}, "$setOnInsert": {"created_at": stamp}},
        upsert=True,
    )
    return cart
