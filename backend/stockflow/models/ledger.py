from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Lot(db.Model):
    """
    One approved request's worth of entitlement for a distributor.

    Lots are never merged: each approved request opens exactly one lot
    (source_request_id is unique), tracked and allocated independently.

    INVARIANT (permanent):
    - available_units == total_units - allocated_units
    - 0 <= allocated_units <= total_units
    A violation is an OverAllocationError, never a clamped value.

    Mutated only through ledger_service.apply_allocation.
    """
    __tablename__ = "lots"
    __table_args__ = (
        db.UniqueConstraint("source_request_id", name="uq_lots_source_request"),
        # FIFO walk: distributor + product, oldest first
        db.Index("ix_lots_distributor_product_created", "distributor_id", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    distributor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    total_units = db.Column(db.Integer, nullable=False)
    allocated_units = db.Column(db.Integer, nullable=False, default=0)
    available_units = db.Column(db.Integer, nullable=False)

    source_request_id = db.Column(db.Integer, db.ForeignKey("stock_requests.id"), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        onupdate=utcnow,
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    distributor = db.relationship("User")
    product = db.relationship("Product")
    source_request = db.relationship("StockRequest", backref=db.backref("lot", uselist=False))

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Lot id={self.id} distributor_id={self.distributor_id} product_id={self.product_id} "
            f"total={self.total_units} allocated={self.allocated_units} available={self.available_units}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "distributor_id": self.distributor_id,
            "product_id": self.product_id,
            "total_units": self.total_units,
            "allocated_units": self.allocated_units,
            "available_units": self.available_units,
            "source_request_id": self.source_request_id,
            "created_at": to_utc_z(self.created_at),
        }


class Allocation(db.Model):
    """
    N units of a specific lot pushed from a distributor to a downstream party.

    INVARIANT: SUM(quantity) over allocations of a lot == lot.allocated_units.

    Deleted only as the compensating action of a failed multi-lot allocation.
    """
    __tablename__ = "allocations"
    __table_args__ = (
        db.Index("ix_allocations_distributor_recipient", "distributor_id", "recipient_id"),
        db.Index("ix_allocations_recipient", "recipient_id"),
        db.Index("ix_allocations_product", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    distributor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)

    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False, index=True)

    notes = db.Column(db.Text, nullable=False, default="")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    distributor = db.relationship("User", foreign_keys=[distributor_id])
    recipient = db.relationship("User", foreign_keys=[recipient_id])
    product = db.relationship("Product")
    lot = db.relationship("Lot", backref=db.backref("allocations", lazy=True))

    def __repr__(self) -> str:
        return (
            f"<Allocation id={self.id} lot_id={self.lot_id} recipient_id={self.recipient_id} "
            f"quantity={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "distributor_id": self.distributor_id,
            "recipient_id": self.recipient_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "lot_id": self.lot_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class LedgerEvent(db.Model):
    """
    Append-only audit log for fulfillment events.

    Written in the same DB transaction as the change it records; never
    updated or deleted. occurred_at is business time, created_at system time.
    """
    __tablename__ = "ledger_events"
    __table_args__ = (
        db.Index("ix_ledger_events_type_occurred", "event_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    request_id = db.Column(db.Integer, db.ForeignKey("stock_requests.id"), nullable=True, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=True, index=True)
    allocation_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    note = db.Column(db.Text, nullable=True)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_user_id": self.actor_user_id,
            "request_id": self.request_id,
            "lot_id": self.lot_id,
            "allocation_id": self.allocation_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
        }
