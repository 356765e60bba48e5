from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Product catalog entry plus the issuer-level central stock counter.

    The catalog itself (names, prices, packaging) is owned elsewhere; the
    fulfillment core only reads it for validation and valuation.

    CENTRAL STOCK:
    - stock_units is un-requested, un-owned inventory (in units, not packets).
    - Decremented exactly once per approved request, by an atomic conditional
      UPDATE (see ledger_service.decrement_central_stock).
    - Never touched by allocations.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents
    packet_price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Packaging factor: packets contained in one unit
    packets_per_unit = db.Column(db.Integer, nullable=False, default=1)

    stock_units = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock_units={self.stock_units}>"

    @property
    def unit_price_cents(self) -> int:
        return self.packet_price_cents * self.packets_per_unit

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "packet_price_cents": self.packet_price_cents,
            "packets_per_unit": self.packets_per_unit,
            "stock_units": self.stock_units,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "packet_price_cents": self.packet_price_cents,
            "packets_per_unit": self.packets_per_unit,
        }
