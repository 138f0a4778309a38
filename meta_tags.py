"""
Open Graph / Twitter card pages for shared product links

Crawlers from social networks do not run the storefront SPA, so they are
served a small HTML page carrying the product's meta tags instead.
"""
import json
import os
import re
from typing import Optional

from jinja2 import Environment, select_autoescape
from markupsafe import Markup

SITE_NAME = "ImportMadeEasy"
CURRENCY = os.getenv("CURRENCY", "XAF")
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "FCFA")

BOT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"facebookexternalhit",
        r"whatsapp",
        r"twitterbot",
        r"telegrambot",
        r"linkedinbot",
        r"slackbot",
        r"discordbot",
        r"googlebot",
        r"bingbot",
        r"yandexbot",
        r"baiduspider",
        r"applebot",
        r"developers\.google\.com/\+/web/snippet/",
    )
]

_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))

PRODUCT_TEMPLATE = _env.from_string("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ meta.title }}</title>
    <meta name="description" content="{{ meta.description }}">
    <meta name="keywords" content="{{ meta.keywords }}">
    <meta property="og:title" content="{{ meta.title }}">
    <meta property="og:description" content="{{ meta.description }}">
    <meta property="og:image" content="{{ meta.image }}">
    <meta property="og:image:secure_url" content="{{ meta.image }}">
    <meta property="og:image:width" content="1200">
    <meta property="og:image:height" content="630">
    <meta property="og:image:alt" content="{{ meta.image_alt }}">
    <meta property="og:url" content="{{ meta.url }}">
    <meta property="og:type" content="product">
    <meta property="og:site_name" content="{{ site_name }}">
    <meta property="og:locale" content="en_US">
    <meta property="product:price:amount" content="{{ meta.price }}">
    <meta property="product:price:currency" content="{{ currency }}">
    <meta property="product:availability" content="in stock">
    <meta property="product:condition" content="new">
    <meta property="product:brand" content="{{ site_name }}">
    <meta property="product:category" content="{{ meta.category }}">
    <meta name="twitter:card" content="summary_large_image">
    <meta name="twitter:title" content="{{ meta.title }}">
    <meta name="twitter:description" content="{{ meta.description }}">
    <meta name="twitter:image" content="{{ meta.image }}">
    <meta name="twitter:site" content="@{{ site_name }}">
    <script type="application/ld+json">{{ structured_data }}</script>
    <meta http-equiv="refresh" content="0; url={{ meta.url }}">
</head>
<body>
    <h1>{{ meta.title }}</h1>
    <p>{{ meta.description }}</p>
    <a href="{{ meta.url }}">View product</a>
</body>
</html>
""")

DEFAULT_TEMPLATE = _env.from_string("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{{ site_name }} - Shop from China and Nigeria</title>
    <meta name="description" content="{{ description }}">
    <meta property="og:title" content="{{ site_name }}">
    <meta property="og:description" content="{{ description }}">
    <meta property="og:image" content="{{ base_url }}/og-image.jpg">
    <meta property="og:url" content="{{ base_url }}">
    <meta property="og:type" content="website">
    <meta property="og:site_name" content="{{ site_name }}">
    <meta name="twitter:card" content="summary_large_image">
    <meta http-equiv="refresh" content="0; url={{ base_url }}">
</head>
<body><a href="{{ base_url }}">{{ site_name }}</a></body>
</html>
""")

DEFAULT_DESCRIPTION = "Fashion, shoes and phones imported from China and Nigeria, delivered in Cameroon."


def is_bot(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    return any(p.search(user_agent) for p in BOT_PATTERNS)


def format_price(price: float) -> str:
    # fr-CM grouping uses a space between thousands
    return f"{int(round(price or 0)):,}".replace(",", " ")


def product_meta(product: dict, base_url: str, product_url: str,
                 active_image: Optional[str] = None, selected_color: Optional[str] = None) -> dict:
    name = product.get("name", "")
    price = product.get("price") or 0
    title = f"{name} - {SITE_NAME}"
    description = product.get("description") or \
        f"{name} available for {CURRENCY_SYMBOL} {format_price(price)}. Shop now at {SITE_NAME}!"
    if selected_color:
        description += f" Available in {selected_color}."

    images = product.get("image") or []
    image = active_image or (images[0] if images else f"{base_url}/default-product-image.jpg")
    color_suffix = f" in {selected_color}" if selected_color else ""
    keywords = ", ".join(k for k in [name, "fashion", "shopping", SITE_NAME,
                                     product.get("category"), product.get("subcategory")] if k)
    return {
        "title": title,
        "description": description,
        "keywords": keywords,
        "image": image,
        "image_alt": f"{name}{color_suffix} - {CURRENCY_SYMBOL} {format_price(price)}",
        "url": product_url,
        "price": price,
        "currency": CURRENCY,
        "category": product.get("category") or "Fashion",
    }


def structured_data(meta: dict) -> str:
    data = {
        "@context": "https://schema.org/",
        "@type": "Product",
        "name": meta["title"],
        "image": meta["image"],
        "description": meta["description"],
        "brand": {"@type": "Brand", "name": SITE_NAME},
        "offers": {
            "@type": "Offer",
            "url": meta["url"],
            "priceCurrency": CURRENCY,
            "price": str(meta["price"]),
            "availability": "https://schema.org/InStock",
        },
    }
    # keep "</script>" out of the inline block
    return json.dumps(data).replace("<", "\\u003c")


def render_product_page(product: dict, base_url: str, product_url: str) -> str:
    meta = product_meta(product, base_url, product_url)
    return PRODUCT_TEMPLATE.render(meta=meta, site_name=SITE_NAME, currency=CURRENCY,
                                   structured_data=Markup(structured_data(meta)))


def render_default_page(base_url: str) -> str:
    return DEFAULT_TEMPLATE.render(site_name=SITE_NAME, base_url=base_url, description=DEFAULT_DESCRIPTION)
