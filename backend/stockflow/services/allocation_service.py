# backend/stockflow/services/allocation_service.py
"""
Allocation engine: push a distributor's entitlement down to a field agent.

WHY: Distributors hold entitlement as independent lots (one per approved
request). Allocating to a downstream party consumes those lots oldest-first
and must either succeed for the full quantity or leave every lot exactly as
it was.

ALGORITHM:
1. Lock the distributor+product key and the distributor's lots for the product.
2. Walk lots ordered by created_at ascending. For each lot with availability,
   take min(available, remaining): create an Allocation, apply_allocation(+portion),
   and push (allocation, lot, portion) onto the undo list.
3. If lots run out with remaining > 0: compensating rollback. Delete every
   allocation created in this call and apply_allocation(-portion) for each undo
   entry, then raise InsufficientStockError reporting what was available.

The rollback is a compensating transaction, not an atomic commit. It is safe
because the walk runs under the per-key lock; routes additionally roll back
the DB transaction on any error.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import InsufficientStockError, NotFoundError, OverAllocationError, RollbackError
from ..models import Allocation, Lot, Role, User
from ..signals import allocation_created, allocation_rolled_back, emit
from ..time_utils import to_utc_z
from .catalog_service import get_product
from .concurrency import keyed_lock, run_with_retry
from .ledger_service import append_ledger_event, apply_allocation, get_lots
from .request_service import validate_quantity


# Attempts per compensating step before the rollback is escalated as fatal
ROLLBACK_ATTEMPTS = 3


@dataclass
class AllocationResult:
    """One logical allocation event, possibly backed by several lots."""
    distributor_id: int
    recipient_id: int
    product_id: int
    quantity: int
    allocations: list[Allocation] = field(default_factory=list)

    @property
    def lot_ids(self) -> list[int]:
        return [a.lot_id for a in self.allocations]

    def to_dict(self) -> dict:
        return {
            "distributor_id": self.distributor_id,
            "recipient_id": self.recipient_id,
            "product_id": self.product_id,
            "total_allocated": self.quantity,
            "allocations": [a.to_dict() for a in self.allocations],
        }


@dataclass
class _UndoEntry:
    allocation: Allocation
    lot: Lot
    portion: int


def _resolve_recipient(distributor_id: int, recipient_id: int) -> User:
    """Recipient must be an active field agent created by the distributor."""
    recipient = db.session.query(User).filter_by(
        id=recipient_id,
        parent_id=distributor_id,
        role=Role.FIELD_AGENT.value,
        is_active=True,
    ).first()
    if recipient is None:
        raise NotFoundError("Recipient not found or access denied", recipient_id=recipient_id)
    return recipient


def list_recipients(distributor_id: int) -> list[User]:
    """Field agents the distributor may allocate to, by username."""
    return (
        db.session.query(User)
        .filter_by(parent_id=distributor_id, role=Role.FIELD_AGENT.value, is_active=True)
        .order_by(User.username.asc())
        .all()
    )


def _compensate(undo: list[_UndoEntry]) -> None:
    """
    Undo every (allocation, lot, portion) applied in this call.

    A step rejected by the ledger is retried; one that keeps failing is
    escalated as a fatal RollbackError.

    A database error ends the walk with a session rollback instead: every
    forward step of this call was flushed but not committed, so the rollback
    restores the lots and drops the allocations. Other uncommitted work in
    the session is discarded with it, as run_with_retry does.
    """
    for entry in reversed(undo):
        for attempt in range(1, ROLLBACK_ATTEMPTS + 1):
            try:
                if inspect(entry.allocation).persistent:
                    db.session.delete(entry.allocation)
                    db.session.flush()
                if entry.portion:
                    apply_allocation(entry.lot, -entry.portion)
                break
            except OverAllocationError as exc:
                current_app.logger.critical(
                    "Rollback of allocation on lot %s failed (attempt %s/%s): %s",
                    entry.lot.id, attempt, ROLLBACK_ATTEMPTS, exc,
                )
                if attempt == ROLLBACK_ATTEMPTS:
                    raise RollbackError(
                        f"Compensating rollback failed on lot {entry.lot.id}",
                        lot_id=entry.lot.id,
                        portion=entry.portion,
                    ) from exc
            except (OperationalError, StaleDataError) as exc:
                current_app.logger.error(
                    "Rollback of allocation on lot %s hit a database error; rolling back the transaction: %s",
                    entry.lot.id, exc,
                )
                db.session.rollback()
                return


def allocate(
    distributor_id: int,
    recipient_id: int,
    product_id: int,
    quantity: int,
    notes: str | None = None,
) -> AllocationResult:
    """
    Allocate quantity units of product from the distributor's lots (oldest
    first) to the recipient.

    Returns:
        AllocationResult: the allocation records created, one per lot touched

    Raises:
        ValidationError: quantity < 1
        NotFoundError: unknown product, or recipient not owned by the distributor
        InsufficientStockError: lots cannot cover quantity; nothing is allocated
        OverAllocationError / RollbackError: fatal ledger inconsistency
    """
    validate_quantity(quantity)
    product = get_product(product_id)
    _resolve_recipient(distributor_id, recipient_id)

    def _op():
        undo: list[_UndoEntry] = []
        remaining = quantity

        try:
            for lot in get_lots(distributor_id, product.id, lock=True):
                if remaining == 0:
                    break
                if lot.available_units <= 0:
                    continue

                portion = min(lot.available_units, remaining)
                allocation = Allocation(
                    distributor_id=distributor_id,
                    recipient_id=recipient_id,
                    product_id=product.id,
                    quantity=portion,
                    lot_id=lot.id,
                    notes=notes or "",
                )
                db.session.add(allocation)
                db.session.flush()

                # portion stays 0 until the lot accepts it
                entry = _UndoEntry(allocation=allocation, lot=lot, portion=0)
                undo.append(entry)
                apply_allocation(lot, portion)
                entry.portion = portion

                remaining -= portion
        except OverAllocationError:
            _compensate(undo)
            raise

        if remaining > 0:
            available = quantity - remaining
            _compensate(undo)
            current_app.logger.warning(
                "Allocation rolled back for distributor %s product %s: requested %s, available %s",
                distributor_id, product.id, quantity, available,
            )
            emit(
                allocation_rolled_back,
                distributor_id,
                recipient_id=recipient_id,
                product_id=product.id,
                requested=quantity,
                available=available,
            )
            raise InsufficientStockError(
                f"Insufficient stock. Available: {available} units, Requested: {quantity} units",
                available=available,
                requested=quantity,
            )

        for entry in undo:
            append_ledger_event(
                event_type="allocation.created",
                entity_type="allocation",
                entity_id=entry.allocation.id,
                actor_user_id=distributor_id,
                lot_id=entry.lot.id,
                allocation_id=entry.allocation.id,
                occurred_at=entry.allocation.created_at,
                note=entry.allocation.notes or None,
                payload=f"recipient_id={recipient_id},product_id={product.id},quantity={entry.portion}",
            )

        return AllocationResult(
            distributor_id=distributor_id,
            recipient_id=recipient_id,
            product_id=product.id,
            quantity=quantity,
            allocations=[entry.allocation for entry in undo],
        )

    with keyed_lock(("allocation", distributor_id, product.id)):
        result = run_with_retry(_op)

    current_app.logger.info(
        "Allocated %s units of product %s from distributor %s to recipient %s across lots %s",
        quantity, product.id, distributor_id, recipient_id, result.lot_ids,
    )
    emit(allocation_created, result)
    return result


def list_distributor_allocations(distributor_id: int) -> list[dict]:
    """Distributor's allocations grouped by recipient, newest first."""
    allocations = (
        db.session.query(Allocation)
        .filter(Allocation.distributor_id == distributor_id)
        .order_by(Allocation.created_at.desc(), Allocation.id.desc())
        .all()
    )

    by_recipient: dict[int, dict] = {}
    for allocation in allocations:
        entry = by_recipient.get(allocation.recipient_id)
        if entry is None:
            entry = {
                "recipient": allocation.recipient.to_summary(),
                "allocations": [],
                "total_units": 0,
            }
            by_recipient[allocation.recipient_id] = entry
        entry["allocations"].append({
            **allocation.to_dict(),
            "product": allocation.product.to_summary(),
        })
        entry["total_units"] += allocation.quantity
    return list(by_recipient.values())


def get_recipient_stock(recipient_id: int) -> list[dict]:
    """Units a field agent has received, grouped by product."""
    allocations = (
        db.session.query(Allocation)
        .filter(Allocation.recipient_id == recipient_id)
        .order_by(Allocation.created_at.desc(), Allocation.id.desc())
        .all()
    )

    by_product: dict[int, dict] = {}
    for allocation in allocations:
        entry = by_product.get(allocation.product_id)
        if entry is None:
            entry = {
                "product": allocation.product.to_summary(),
                "total_units": 0,
                "allocations": [],
            }
            by_product[allocation.product_id] = entry
        entry["total_units"] += allocation.quantity
        entry["allocations"].append({
            "id": allocation.id,
            "quantity": allocation.quantity,
            "distributor": allocation.distributor.to_summary(),
            "notes": allocation.notes,
            "allocated_at": to_utc_z(allocation.created_at),
        })
    return list(by_product.values())
