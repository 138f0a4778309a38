"""
Operator commands

    python manage.py create-super-admin
    python manage.py seed-products --count 20
"""
import os
import random
import logging
from datetime import datetime, timezone

import click
from dotenv import load_dotenv

load_dotenv()

import database
from auth import hash_password, permissions_for_role
from schemas import Admin, Product, NO_SIZE

logger = logging.getLogger("store.manage")

SEED_COLORS = [("Black", "#000000"), ("White", "#ffffff"), ("Navy", "#1f2a44"), ("Red", "#c0392b")]
SEED_CATEGORIES = {
    "clothing": ("Men", ["S", "M", "L", "XL"]),
    "shoes": ("Shoes", ["40", "41", "42", "43"]),
    "phone": ("Phones", [NO_SIZE]),
}


def _require_db():
    if database.db is None:
        raise click.ClickException("Database not available. Set DATABASE_URL and DATABASE_NAME.")
    return database.db


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool):
    """Store maintenance commands."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command("create-super-admin")
@click.option("--username", default=lambda: os.getenv("SUPER_ADMIN_USERNAME", "superadmin"), show_default="env")
@click.option("--email", default=lambda: os.getenv("SUPER_ADMIN_EMAIL"), show_default="env")
@click.option("--password", default=lambda: os.getenv("SUPER_ADMIN_PASSWORD"), show_default="env")
def create_super_admin(username: str, email: str, password: str):
    """Create the first super admin unless one already exists."""
    db = _require_db()
    if not email or not password:
        raise click.ClickException("SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD are required")
    if db["admin"].find_one({"role": "super_admin"}):
        click.echo("Super admin already exists")
        return

    admin = Admin(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role="super_admin",
        permissions=permissions_for_role("super_admin"),
    )
    admin_id = database.create_document("admin", admin)
    logger.info("Created super admin %s", admin_id)
    click.echo(f"Super admin created: {admin.email}")


def fake_product(fake, size_type: str) -> Product:
    category, sizes = SEED_CATEGORIES[size_type]
    colors = []
    for name, hex_value in random.sample(SEED_COLORS, k=random.randint(1, 2)):
        entries = [{"size": s, "quantity": random.randint(0, 30)} for s in sizes]
        if size_type == "phone":
            entries[0]["price"] = float(random.randint(80, 400) * 1000)
        colors.append({"color_name": name, "color_hex": hex_value, "sizes": entries})
    return Product(
        name=fake.catch_phrase(),
        description=fake.paragraph(nb_sentences=3),
        price=float(random.randint(5, 80) * 1000),
        image=[fake.image_url()],
        category=category,
        colors=colors,
        bestseller=random.random() < 0.2,
        has_sizes=size_type != "phone",
        size_type=size_type,
        keywords=fake.words(nb=3),
        country_of_origin=random.choice(["Nigeria", "China"]),
        weight=round(random.uniform(0.1, 2.0), 2),
        date=datetime.now(timezone.utc),
    )


@cli.command("seed-products")
@click.option("--count", default=20, show_default=True, type=click.IntRange(1, 500))
def seed_products(count: int):
    """Insert fake products for local development."""
    from faker import Faker
    fake = Faker()
    _require_db()

    for _ in range(count):
        database.create_document("product", fake_product(fake, random.choice(list(SEED_CATEGORIES))))
    click.echo(f"Seeded {count} products")


if __name__ == "__main__":
    cli()
