# Overview: Product catalog boundary; lookups used for validation, plus central stock seeding.

from __future__ import annotations

from ..extensions import db
from ..errors import NotFoundError, ValidationError
from ..models import Product


def get_product(product_id: int, *, require_active: bool = True) -> Product:
    """Resolve a product for validation (exists, current price, packaging factor)."""
    if product_id is None:
        raise ValidationError("product_id is required")
    product = db.session.get(Product, product_id)
    if product is None or (require_active and not product.is_active):
        raise NotFoundError("Product not found", product_id=product_id)
    return product


def list_products(*, include_inactive: bool = False) -> list[Product]:
    q = db.session.query(Product)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


def create_product(
    name: str,
    *,
    packet_price_cents: int,
    packets_per_unit: int,
    stock_units: int = 0,
    description: str | None = None,
) -> Product:
    if not name or not name.strip():
        raise ValidationError("name is required")
    if packet_price_cents < 0:
        raise ValidationError("packet_price_cents must be >= 0")
    if packets_per_unit < 1:
        raise ValidationError("packets_per_unit must be >= 1")
    if stock_units < 0:
        raise ValidationError("stock_units must be >= 0")

    product = Product(
        name=name.strip(),
        description=description,
        packet_price_cents=packet_price_cents,
        packets_per_unit=packets_per_unit,
        stock_units=stock_units,
    )
    db.session.add(product)
    db.session.flush()
    return product


def add_central_stock(product_id: int, units: int) -> Product:
    """Receive new issuer-level inventory into central stock."""
    if units < 1:
        raise ValidationError("units must be >= 1")
    product = get_product(product_id, require_active=False)
    db.session.query(Product).filter(Product.id == product.id).update(
        {Product.stock_units: Product.stock_units + units},
        synchronize_session="fetch",
    )
    db.session.flush()
    return product
