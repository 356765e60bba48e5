from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


# Request status (terminal: approved, cancelled)
REQUEST_STATUS_PENDING = "pending"
REQUEST_STATUS_APPROVED = "approved"
REQUEST_STATUS_CANCELLED = "cancelled"

# Payment status (orthogonal to request status)
PAYMENT_STATUS_PENDING = "pending"    # no receipt yet
PAYMENT_STATUS_PAID = "paid"          # receipt uploaded, awaiting verification
PAYMENT_STATUS_VERIFIED = "verified"  # approver accepted the receipt
PAYMENT_STATUS_REJECTED = "rejected"  # approver rejected the receipt, re-upload allowed


class StockRequest(db.Model):
    """
    A distributor's ask for N units of a product from central stock.

    LIFECYCLE:
    - status: pending -> approved | cancelled (both terminal)
    - payment_status: pending -> paid -> verified
                                   paid -> rejected -> paid (re-upload, no cap)
    - status may become approved only when payment_status == verified.

    ATTRIBUTION:
    - processed_by_user_id / processed_at record who approved or cancelled.
    - payment_verified_by_user_id / payment_verified_at record who verified
      or rejected the receipt.

    CONCURRENCY: version_id is an optimistic lock; two approvers racing on the
    same request cannot both flush a transition.
    """
    __tablename__ = "stock_requests"
    __table_args__ = (
        db.Index("ix_stock_requests_requester_status", "requester_id", "status"),
        db.Index("ix_stock_requests_product_status", "product_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    requester_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=REQUEST_STATUS_PENDING)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING)

    # Opaque reference returned by receipt storage
    receipt_ref = db.Column(db.String(512), nullable=True)

    payment_verified_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    payment_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_notes = db.Column(db.Text, nullable=False, default="")

    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=False, default="")

    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        onupdate=utcnow,
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    requester = db.relationship("User", foreign_keys=[requester_id])
    product = db.relationship("Product")
    processed_by = db.relationship("User", foreign_keys=[processed_by_user_id])
    payment_verified_by = db.relationship("User", foreign_keys=[payment_verified_by_user_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockRequest id={self.id} requester_id={self.requester_id} "
            f"product_id={self.product_id} quantity={self.quantity} "
            f"status={self.status} payment_status={self.payment_status}>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (REQUEST_STATUS_APPROVED, REQUEST_STATUS_CANCELLED)

    @property
    def value_cents(self) -> int:
        return self.quantity * self.product.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "requester": self.requester.to_summary() if self.requester else None,
            "product_id": self.product_id,
            "product": self.product.to_summary() if self.product else None,
            "quantity": self.quantity,
            "status": self.status,
            "payment_status": self.payment_status,
            "receipt_ref": self.receipt_ref,
            "payment_verified_by_user_id": self.payment_verified_by_user_id,
            "payment_verified_at": to_utc_z(self.payment_verified_at),
            "payment_notes": self.payment_notes,
            "processed_by_user_id": self.processed_by_user_id,
            "processed_at": to_utc_z(self.processed_at),
            "notes": self.notes,
            "requested_at": to_utc_z(self.requested_at),
            "version_id": self.version_id,
        }
