"""
Cart state and stock checks

A cart is stored on the user as ``{product_id: {variant_key: quantity}}``.
The variant key is the size alone, or ``size-colorHex`` when the product is
bought in a specific color, e.g. ``"M-#1a2b3c"`` or ``"N/A-#fff"``.
"""
import os
from typing import Dict, List, Optional, Tuple

from schemas import NO_SIZE

BULK_DISCOUNT_PERCENTAGE = float(os.getenv("BULK_DISCOUNT_PERCENTAGE", "5"))
BULK_DISCOUNT_MIN_QUANTITY = int(os.getenv("BULK_DISCOUNT_MIN_QUANTITY", "10"))

Cart = Dict[str, Dict[str, int]]


class CartError(ValueError):
    pass


def variant_key(size: Optional[str], color: Optional[str] = None) -> str:
    size = size or NO_SIZE
    return f"{size}-{color}" if color else size


def parse_variant_key(key: str) -> Tuple[str, Optional[str]]:
    size, sep, color = key.rpartition("-#")
    if not sep:
        return key, None
    return size, "#" + color


def _matching_sizes(product: dict, size: str, color: Optional[str]):
    for c in product.get("colors", []):
        if color and c.get("color_hex", "").lower() != color.lower():
            continue
        for entry in c.get("sizes", []):
            if entry.get("size") == size:
                yield entry


def available_stock(product: dict, size: Optional[str], color: Optional[str] = None) -> int:
    """Stock of a variant; without a color, the size is summed across colors."""
    return sum(int(e.get("quantity", 0)) for e in _matching_sizes(product, size or NO_SIZE, color))


def unit_price(product: dict, size: Optional[str], color: Optional[str] = None) -> float:
    for entry in _matching_sizes(product, size or NO_SIZE, color):
        if entry.get("price") is not None:
            return float(entry["price"])
    return float(product.get("price", 0))


def line_total(price: float, quantity: int) -> float:
    if quantity >= BULK_DISCOUNT_MIN_QUANTITY:
        price = price - price * (BULK_DISCOUNT_PERCENTAGE / 100)
    return price * quantity


def add_item(cart: Cart, product: dict, size: Optional[str], color: Optional[str] = None) -> Cart:
    key = variant_key(size, color)
    product_id = str(product["_id"])
    current = cart.get(product_id, {}).get(key, 0)
    if current + 1 > available_stock(product, size, color):
        raise CartError("Not enough stock for this item")
    cart.setdefault(product_id, {})[key] = current + 1
    return cart


def set_quantity(cart: Cart, product: dict, size: Optional[str], quantity: int, color: Optional[str] = None) -> Cart:
    if quantity < 0:
        raise CartError("Quantity cannot be negative")
    key = variant_key(size, color)
    product_id = str(product["_id"])
    if quantity == 0:
        items = cart.get(product_id, {})
        items.pop(key, None)
        if not items:
            cart.pop(product_id, None)
        return cart
    if quantity > available_stock(product, size, color):
        raise CartError("Not enough stock for this item")
    cart.setdefault(product_id, {})[key] = quantity
    return cart


def reconcile(cart: Cart, products: Dict[str, dict]) -> Tuple[Cart, List[dict]]:
    """Clamp a cart to current stock.

    Returns the reconciled cart and one adjustment record per line that was
    changed or dropped.
    """
    reconciled: Cart = {}
    adjustments = []
    for product_id, items in cart.items():
        product = products.get(product_id)
        for key, quantity in items.items():
            if product is None:
                adjustments.append({"product_id": product_id, "variant": key, "requested": quantity,
                                    "available": 0, "reason": "product_removed"})
                continue
            size, color = parse_variant_key(key)
            stock = available_stock(product, size, color)
            if quantity <= stock:
                reconciled.setdefault(product_id, {})[key] = quantity
                continue
            adjustments.append({"product_id": product_id, "variant": key, "requested": quantity,
                                "available": stock, "reason": "out_of_stock" if stock == 0 else "insufficient_stock"})
            if stock > 0:
                reconciled.setdefault(product_id, {})[key] = stock
    return reconciled, adjustments


def cart_amount(cart: Cart, products: Dict[str, dict]) -> float:
    total = 0.0
    for product_id, items in cart.items():
        product = products.get(product_id)
        if product is None:
            continue
        for key, quantity in items.items():
            size, color = parse_variant_key(key)
            total += line_total(unit_price(product, size, color), quantity)
    return total


def order_lines(cart: Cart, products: Dict[str, dict]) -> List[dict]:
    """Snapshot cart lines with the product's current name, price and image."""
    lines = []
    for product_id, items in cart.items():
        product = products.get(product_id)
        if product is None:
            continue
        for key, quantity in items.items():
            if quantity <= 0:
                continue
            size, color = parse_variant_key(key)
            images = product.get("image") or []
            lines.append({
                "product_id": product_id,
                "name": product["name"],
                "price": round(line_total(unit_price(product, size, color), quantity) / quantity, 2),
                "image": images[0] if images else None,
                "size": size,
                "color": color,
                "quantity": quantity,
                "weight": float(product.get("weight", 0.1)),
            })
    return lines
