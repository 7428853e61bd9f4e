from __future__ import annotations

import logging
import os
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_manager.models.rental_models import ItemKind, MovementReason, StockMovement

from .audit_service import log_audit
from .catalog_service import get_item
from .errors import InsufficientStock, ValidationError
from .transaction import atomic_operation, lock_items


LOW_STOCK_THRESHOLD = int(os.environ.get("RENTAL_LOW_STOCK_THRESHOLD") or "5")
MANUAL_REASONS = {
    MovementReason.ADJUSTMENT,
    MovementReason.REPAIR,
    MovementReason.LOSS,
    MovementReason.FOUND,
}
LIFECYCLE_REASONS = {MovementReason.CHECKOUT, MovementReason.RETURN}
NEGATIVE_REASONS = {MovementReason.LOSS, MovementReason.CHECKOUT}
POSITIVE_REASONS = {MovementReason.FOUND, MovementReason.RETURN}
REASON_DESCRIPTIONS = {
    MovementReason.CHECKOUT: "Item checked out to customer",
    MovementReason.RETURN: "Item returned from customer",
    MovementReason.ADJUSTMENT: "Manual stock adjustment",
    MovementReason.REPAIR: "Item sent for repair or returned from repair",
    MovementReason.LOSS: "Item lost or damaged",
    MovementReason.FOUND: "Item found or recovered",
}
LOGGER = logging.getLogger("rental_manager.ledger")


def _require_atomic(db: Session, item_id: int):
    item = get_item(db, item_id)
    if ItemKind(item.Kind) != ItemKind.ATOMIC:
        raise ValidationError(f"Stock is only tracked for atomic items; item {item_id} is {ItemKind(item.Kind).value}.")
    return item


def _coerce_reason(raw) -> MovementReason:
    try:
        return MovementReason(raw)
    except ValueError as exc:
        allowed = ", ".join(reason.value for reason in MovementReason)
        raise ValidationError(f"Reason must be one of: {allowed}.") from exc


def _require_int(value, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be an integer.")
    return value


def _validate_reason_rules(
    reason: MovementReason,
    delta: int,
    notes: str | None,
    order_id: int | None,
    lifecycle: bool,
) -> None:
    if reason in LIFECYCLE_REASONS:
        if not lifecycle:
            raise ValidationError(f"{reason.value} movements are issued by the order lifecycle only.")
        if order_id is None:
            raise ValidationError(f"{reason.value} movements must be associated with an order.")
    if reason in NEGATIVE_REASONS and delta >= 0:
        raise ValidationError(f"{reason.value} movements must have a negative delta.")
    if reason in POSITIVE_REASONS and delta <= 0:
        raise ValidationError(f"{reason.value} movements must have a positive delta.")
    if reason == MovementReason.ADJUSTMENT and not (notes or "").strip():
        raise ValidationError("Adjustment movements require notes explaining the reason.")


def on_hand(db: Session, item_id: int) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(StockMovement.Delta), 0)).where(StockMovement.ItemID == item_id)
    ).scalar()
    return int(total or 0)


def apply_movement(
    db: Session,
    item_id: int,
    delta: int,
    reason: MovementReason | str,
    actor: str,
    notes: str | None = None,
    order_id: int | None = None,
    *,
    lifecycle: bool = False,
) -> StockMovement:
    """Append one movement to the ledger of an atomic item.

    The running sum may not go negative, except for Return movements issued
    by the order lifecycle, which always restore what a Checkout removed.
    Callers own the transaction; see ``adjust_stock`` and ``set_stock``.
    """
    item = _require_atomic(db, item_id)
    movement_reason = _coerce_reason(reason)
    change = _require_int(delta, "Delta")
    created_by = (actor or "").strip()
    if not created_by:
        raise ValidationError("Created by is required.")
    if len(created_by) > 255:
        raise ValidationError("Created by must be 255 characters or less.")
    _validate_reason_rules(movement_reason, change, notes, order_id, lifecycle)

    current = on_hand(db, item.ItemID)
    exempt = lifecycle and movement_reason == MovementReason.RETURN
    if current + change < 0 and not exempt:
        LOGGER.warning(
            "Movement refused item_id=%s on_hand=%s delta=%s reason=%s",
            item.ItemID,
            current,
            change,
            movement_reason.value,
        )
        raise InsufficientStock(item.ItemID, current, change)

    movement = StockMovement(
        ItemID=item.ItemID,
        OrderID=order_id,
        Delta=change,
        Reason=movement_reason,
        Notes=notes,
        CreatedBy=created_by,
        CreatedAt=datetime.now(),
    )
    db.add(movement)
    db.flush()
    LOGGER.info(
        "Movement applied item_id=%s delta=%s reason=%s order_id=%s on_hand=%s",
        item.ItemID,
        change,
        movement_reason.value,
        order_id,
        current + change,
    )
    return movement


def _require_target(target_qty) -> int:
    target = _require_int(target_qty, "Target quantity")
    if target < 0:
        raise ValidationError("Stock quantity cannot be negative.")
    return target


def set_exact(db: Session, item_id: int, target_qty: int, actor: str, notes: str | None = None) -> StockMovement:
    target = _require_target(target_qty)
    delta = target - on_hand(db, item_id)
    return apply_movement(
        db,
        item_id,
        delta,
        MovementReason.ADJUSTMENT,
        actor,
        (notes or "").strip() or f"Stock count set to {target}",
    )


@atomic_operation
def adjust_stock(
    db: Session,
    item_id: int,
    delta: int,
    reason: MovementReason | str,
    notes: str | None,
    actor: str,
) -> StockMovement:
    movement_reason = _coerce_reason(reason)
    if movement_reason not in MANUAL_REASONS:
        raise ValidationError(f"{movement_reason.value} movements are issued by the order lifecycle only.")
    if _require_int(delta, "Delta") == 0:
        raise ValidationError("Delta cannot be zero.")
    _require_atomic(db, item_id)
    lock_items(db, [item_id])
    movement = apply_movement(db, item_id, delta, movement_reason, actor, notes)
    log_audit(db, "Item", item_id, "AdjustStock", f"{movement_reason.value} {delta:+d}", user_id=actor)
    return movement


@atomic_operation
def set_stock(db: Session, item_id: int, exact_quantity: int, notes: str | None, actor: str) -> StockMovement:
    _require_atomic(db, item_id)
    target = _require_target(exact_quantity)
    lock_items(db, [item_id])
    movement = set_exact(db, item_id, target, actor, notes)
    log_audit(db, "Item", item_id, "SetStock", f"target={target} delta={movement.Delta:+d}", user_id=actor)
    return movement


def movement_history(db: Session, item_id: int, limit: int = 50) -> list[StockMovement]:
    get_item(db, item_id)
    stmt = (
        select(StockMovement)
        .where(StockMovement.ItemID == item_id)
        .order_by(StockMovement.MovementID.desc())
        .limit(max(1, int(limit)))
    )
    return list(db.execute(stmt).scalars().all())


def order_movements(db: Session, order_id: int) -> list[StockMovement]:
    stmt = select(StockMovement).where(StockMovement.OrderID == order_id).order_by(StockMovement.MovementID)
    return list(db.execute(stmt).scalars().all())


def stock_status(quantity: int, threshold: int = LOW_STOCK_THRESHOLD) -> str:
    if quantity <= 0:
        return "out_of_stock"
    if quantity <= threshold:
        return "low_stock"
    return "in_stock"


def stock_summary(db: Session, item_id: int) -> dict:
    item = _require_atomic(db, item_id)
    rows = db.execute(
        select(StockMovement.Reason, func.count(), func.sum(StockMovement.Delta), func.max(StockMovement.CreatedAt))
        .where(StockMovement.ItemID == item_id)
        .group_by(StockMovement.Reason)
    ).all()
    by_reason = {}
    last_movement_at = None
    movement_count = 0
    for reason, count, total, latest in rows:
        by_reason[MovementReason(reason).value] = {"count": int(count), "delta": int(total or 0)}
        movement_count += int(count)
        if latest and (last_movement_at is None or latest > last_movement_at):
            last_movement_at = latest

    quantity = on_hand(db, item_id)
    return {
        "itemID": item.ItemID,
        "sku": item.Sku,
        "name": item.Name,
        "onHand": quantity,
        "stockStatus": stock_status(quantity),
        "movementCount": movement_count,
        "lastMovementAt": last_movement_at,
        "byReason": by_reason,
    }


def serialize_movement(movement: StockMovement) -> dict:
    reason = MovementReason(movement.Reason)
    delta = int(movement.Delta)
    if delta > 0:
        movement_type = "increase"
    elif delta < 0:
        movement_type = "decrease"
    else:
        movement_type = "neutral"
    return {
        "movementID": movement.MovementID,
        "itemID": movement.ItemID,
        "orderID": movement.OrderID,
        "delta": delta,
        "reason": reason.value,
        "reasonDescription": REASON_DESCRIPTIONS[reason],
        "movementType": movement_type,
        "isOrderRelated": reason in LIFECYCLE_REASONS,
        "notes": movement.Notes,
        "createdBy": movement.CreatedBy,
        "createdAt": movement.CreatedAt,
    }
