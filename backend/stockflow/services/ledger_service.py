# Overview: Service-layer operations for the inventory ledger; central stock, lots and audit events.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import DuplicateError, InsufficientStockError, NotFoundError, OverAllocationError, ValidationError
from ..models import Allocation, LedgerEvent, Lot, Product
from ..time_utils import utcnow
from .concurrency import lock_for_update
"""
Stockflow Inventory Ledger Invariants (authoritative)

Central stock:
- Product.stock_units is never negative.
- Decremented only by request approval, via one atomic conditional UPDATE
  (check-and-subtract), never read-then-write.

Lots:
- One lot per approved request (unique source_request_id); never merged.
- available_units == total_units - allocated_units, 0 <= allocated_units <= total_units.
- allocated_units changes only through apply_allocation; violations raise
  OverAllocationError and are logged at CRITICAL, never clamped.

Allocations:
- SUM(Allocation.quantity) per lot == Lot.allocated_units.

Audit:
- Ledger events are append-only and written in the same DB transaction as
  the change they record.
"""


def append_ledger_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    request_id: int | None = None,
    lot_id: int | None = None,
    allocation_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[str] = None,
) -> LedgerEvent:
    """
    Append-only ledger event.

    - No domain logic here.
    - No deletes/updates of existing events.
    """
    ev = LedgerEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        request_id=request_id,
        lot_id=lot_id,
        allocation_id=allocation_id,
        occurred_at=occurred_at or utcnow(),
        note=note,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def decrement_central_stock(product_id: int, quantity: int) -> int:
    """
    Atomically subtract quantity from central stock if enough is available.

    First caller to pass the check wins; a concurrent caller for the same
    product sees the already-reduced level and fails. Returns the remaining
    stock level.
    """
    matched = db.session.query(Product).filter(
        Product.id == product_id,
        Product.stock_units >= quantity,
    ).update(
        {Product.stock_units: Product.stock_units - quantity},
        synchronize_session="fetch",
    )

    current = db.session.query(Product.stock_units).filter(Product.id == product_id).scalar()
    if current is None:
        raise NotFoundError("Product not found", product_id=product_id)

    if matched == 0:
        raise InsufficientStockError(
            f"Insufficient stock to approve this request. "
            f"Available: {current} units, Requested: {quantity} units",
            available=int(current),
            requested=quantity,
        )
    return int(current)


def get_lot(lot_id: int, *, lock: bool = False) -> Lot:
    query = db.session.query(Lot).filter_by(id=lot_id)
    if lock:
        query = lock_for_update(query)
    lot = query.first()
    if lot is None:
        raise NotFoundError("Lot not found", lot_id=lot_id)
    return lot


def open_lot(
    distributor_id: int,
    product_id: int,
    total_units: int,
    source_request_id: int,
    *,
    actor_user_id: int | None = None,
) -> Lot:
    """
    Open a new lot for an approved request.

    Idempotency guard: a second lot for the same source request raises
    DuplicateError, so a retried approval cannot double-credit a distributor.
    """
    if not isinstance(total_units, int) or isinstance(total_units, bool) or total_units < 1:
        raise ValidationError("total_units must be a positive integer")

    existing = db.session.query(Lot).filter_by(source_request_id=source_request_id).first()
    if existing is not None:
        raise DuplicateError(
            f"Lot already exists for request {source_request_id}",
            lot_id=existing.id,
            source_request_id=source_request_id,
        )

    lot = Lot(
        distributor_id=distributor_id,
        product_id=product_id,
        total_units=total_units,
        allocated_units=0,
        available_units=total_units,
        source_request_id=source_request_id,
    )
    db.session.add(lot)
    db.session.flush()

    append_ledger_event(
        event_type="lot.opened",
        entity_type="lot",
        entity_id=lot.id,
        actor_user_id=actor_user_id,
        request_id=source_request_id,
        lot_id=lot.id,
        occurred_at=lot.created_at,
        payload=f"distributor_id={distributor_id},product_id={product_id},total_units={total_units}",
    )
    return lot


def apply_allocation(lot: Lot | int, delta: int) -> Lot:
    """
    Move allocated_units by delta (positive: allocate, negative: roll back)
    and recompute available_units.

    Raises OverAllocationError if the lot is already inconsistent or the
    result would leave 0 <= allocated_units <= total_units.
    """
    if not isinstance(lot, Lot):
        lot = get_lot(lot, lock=True)

    if lot.available_units != lot.total_units - lot.allocated_units:
        current_app.logger.critical(
            "Ledger inconsistency on lot %s: total=%s allocated=%s available=%s",
            lot.id, lot.total_units, lot.allocated_units, lot.available_units,
        )
        raise OverAllocationError(f"Lot {lot.id} is inconsistent", lot_id=lot.id, delta=delta)

    new_allocated = lot.allocated_units + delta
    if new_allocated < 0 or new_allocated > lot.total_units:
        current_app.logger.critical(
            "Over-allocation on lot %s: allocated=%s delta=%s total=%s",
            lot.id, lot.allocated_units, delta, lot.total_units,
        )
        raise OverAllocationError(
            f"Lot {lot.id} cannot move allocated units by {delta}",
            lot_id=lot.id,
            delta=delta,
        )

    lot.allocated_units = new_allocated
    lot.available_units = lot.total_units - new_allocated
    db.session.flush()
    return lot


def get_lots(distributor_id: int, product_id: int | None = None, *, lock: bool = False) -> list[Lot]:
    """Distributor's lots, oldest entitlement first."""
    query = db.session.query(Lot).filter(Lot.distributor_id == distributor_id)
    if product_id is not None:
        query = query.filter(Lot.product_id == product_id)
    if lock:
        query = lock_for_update(query)
    return query.order_by(Lot.created_at.asc(), Lot.id.asc()).all()


def get_stock_summary(distributor_id: int, product_id: int) -> dict:
    row = db.session.query(
        func.coalesce(func.sum(Lot.total_units), 0).label("total"),
        func.coalesce(func.sum(Lot.allocated_units), 0).label("allocated"),
        func.coalesce(func.sum(Lot.available_units), 0).label("available"),
        func.count(Lot.id).label("lots"),
    ).filter(
        Lot.distributor_id == distributor_id,
        Lot.product_id == product_id,
    ).one()

    return {
        "distributor_id": distributor_id,
        "product_id": product_id,
        "total_units": int(row.total or 0),
        "allocated_units": int(row.allocated or 0),
        "available_units": int(row.available or 0),
        "lot_count": int(row.lots or 0),
    }


def get_distributor_stock(distributor_id: int) -> list[dict]:
    """Distributor's entitlement grouped by product, with per-lot sources."""
    by_product: dict[int, dict] = {}
    for lot in get_lots(distributor_id):
        entry = by_product.get(lot.product_id)
        if entry is None:
            entry = {
                "product": lot.product.to_summary(),
                "total_units": 0,
                "allocated_units": 0,
                "available_units": 0,
                "sources": [],
            }
            by_product[lot.product_id] = entry
        entry["total_units"] += lot.total_units
        entry["allocated_units"] += lot.allocated_units
        entry["available_units"] += lot.available_units
        entry["sources"].append(lot.to_dict())
    return list(by_product.values())


def check_ledger_consistency() -> list[dict]:
    """
    Scan every lot for invariant violations.

    Returns a list of violations (empty when the ledger is consistent).
    """
    allocated_by_lot = dict(
        db.session.query(Allocation.lot_id, func.sum(Allocation.quantity))
        .group_by(Allocation.lot_id)
        .all()
    )

    violations = []
    for lot in db.session.query(Lot).order_by(Lot.id.asc()).all():
        problems = []
        if lot.available_units != lot.total_units - lot.allocated_units:
            problems.append("available_units != total_units - allocated_units")
        if lot.allocated_units < 0 or lot.allocated_units > lot.total_units:
            problems.append("allocated_units out of bounds")
        allocated_sum = int(allocated_by_lot.get(lot.id) or 0)
        if allocated_sum != lot.allocated_units:
            problems.append(
                f"allocation records sum to {allocated_sum}, lot records {lot.allocated_units}"
            )
        if problems:
            violations.append({"lot": lot.to_dict(), "problems": problems})

    orphan_ids = set(allocated_by_lot) - {lot_id for (lot_id,) in db.session.query(Lot.id).all()}
    for lot_id in sorted(orphan_ids):
        violations.append({"lot": {"id": lot_id}, "problems": ["allocations reference a missing lot"]})

    return violations
