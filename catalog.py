"""
Product catalog rules

Color variant validation, admin form normalisation and review aggregates.
Form fields arrive as strings from the multipart admin form, so booleans,
keywords, labels and weights are coerced here before the Product schema sees
them.
"""
import json
import re
from typing import Any, List, Optional

from schemas import NO_SIZE

HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
MAX_COLOR_IMAGES = 4
DEFAULT_WEIGHT = 0.1


class CatalogError(ValueError):
    pass


def _is_quantity(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


def validate_colors(colors: Any) -> None:
    if not isinstance(colors, list) or not colors:
        raise CatalogError("At least one color variant is required")

    for color in colors:
        if not color.get("color_name") or not color.get("color_hex"):
            raise CatalogError("Each color must have a name and hex value")
        if not HEX_COLOR.match(color["color_hex"]):
            raise CatalogError(f"Invalid hex color: {color['color_hex']}")

        sizes = color.get("sizes")
        if not isinstance(sizes, list):
            raise CatalogError("Each color must have a sizes array")
        if not sizes:
            raise CatalogError("Each color must have at least one size entry")

        if len(sizes) == 1 and sizes[0].get("size") == NO_SIZE:
            if not _is_quantity(sizes[0].get("quantity")):
                raise CatalogError("N/A size must have a valid quantity")
            continue
        for size in sizes:
            if not size.get("size") or not _is_quantity(size.get("quantity")):
                raise CatalogError("Each size must have a valid size name and quantity")


def parse_colors(raw: Any) -> List[dict]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise CatalogError("Invalid JSON format for colors field")
    validate_colors(raw)
    return raw


def parse_bool(value: Any) -> bool:
    return value is True or value == "true"


def parse_keywords(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [k.strip() for k in value if k and k.strip()]


def normalize_label(value: Optional[str]) -> str:
    if not value or value == "none":
        return ""
    return value


def parse_weight(value: Any) -> float:
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return DEFAULT_WEIGHT
    return weight or DEFAULT_WEIGHT


def average_rating(reviews: List[dict]) -> float:
    if not reviews:
        return 0
    total = sum(r["rating"] for r in reviews)
    return round(total / len(reviews) * 10) / 10


def rating_fields(reviews: List[dict]) -> dict:
    return {"average_rating": average_rating(reviews), "total_reviews": len(reviews)}


def find_color(product: dict, color_hex: str) -> Optional[dict]:
    for color in product.get("colors", []):
        if color.get("color_hex", "").lower() == color_hex.lower():
            return color
    return None


def set_variant_quantity(product: dict, color_hex: str, size: Optional[str], quantity: int) -> List[dict]:
    """Set stock of one variant and return the updated colors list.

    A missing size means the product has no sizes; its N/A entry is created if
    absent.
    """
    if quantity < 0:
        raise CatalogError("Quantity cannot be negative")
    colors = product.get("colors", [])
    color = find_color(product, color_hex)
    if color is None:
        raise CatalogError("Color not found")

    target = size or NO_SIZE
    for entry in color["sizes"]:
        if entry["size"] == target:
            entry["quantity"] = quantity
            return colors
    if target != NO_SIZE:
        raise CatalogError("Size not found for this color")
    color["sizes"].append({"size": NO_SIZE, "quantity": quantity, "price": None})
    return colors


def merge_color_images(colors: List[dict], new_images: dict) -> List[dict]:
    """Append freshly uploaded images per color index, capped per color."""
    merged = []
    for index, color in enumerate(colors):
        images = list(color.get("color_images") or []) + new_images.get(index, [])
        merged.append({**color, "color_images": images[:MAX_COLOR_IMAGES]})
    return merged
