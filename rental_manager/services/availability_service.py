from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_manager.models.rental_models import (
    Item,
    ItemKind,
    MovementReason,
    Order,
    OrderLine,
    OrderStatus,
    StockMovement,
)

from .catalog_service import explode, get_item, resolve_components
from .errors import ValidationError
from .stock_ledger_service import on_hand


BLOCKING_STATES = (OrderStatus.RESERVED, OrderStatus.CHECKED_OUT)


class _Unbounded:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNBOUNDED"


# Service items carry no stock constraint. Not a number: never subtract from it.
UNBOUNDED = _Unbounded()


def covers(available, requested: int) -> bool:
    return available is UNBOUNDED or available >= requested


def order_window(order: Order) -> tuple[datetime, datetime]:
    return (order.SetupStart or order.StartDate, order.CleanupEnd or order.ReturnDueDate)


def require_window(window_start: datetime | None, window_end: datetime | None) -> None:
    if window_start is None or window_end is None:
        raise ValidationError("Window start and end are required.")
    if window_end <= window_start:
        raise ValidationError("Window end must be after window start.")


@dataclass
class WindowSnapshot:
    """Commitments held against atomic stock over one window."""

    window_start: datetime
    window_end: datetime
    exclude_order_id: int | None
    committed: dict[int, int] = field(default_factory=dict)
    held_out: dict[int, int] = field(default_factory=dict)
    order_ids: set[int] = field(default_factory=set)


def _overlapping_lines(db: Session, window_start: datetime, window_end: datetime, exclude_order_id: int | None):
    order_start = func.coalesce(Order.SetupStart, Order.StartDate)
    order_end = func.coalesce(Order.CleanupEnd, Order.ReturnDueDate)
    stmt = (
        select(OrderLine.OrderID, OrderLine.ItemID, OrderLine.Quantity, Order.Status)
        .join(Order, Order.OrderID == OrderLine.OrderID)
        .where(Order.Status.in_(BLOCKING_STATES))
        .where(order_start < window_end)
        .where(order_end > window_start)
    )
    if exclude_order_id is not None:
        stmt = stmt.where(Order.OrderID != exclude_order_id)
    return db.execute(stmt).all()


def held_out_by_order(db: Session, order_ids: set[int]) -> dict[int, dict[int, int]]:
    """Units each order still holds out of the ledger, per atomic item."""
    if not order_ids:
        return {}
    rows = db.execute(
        select(StockMovement.OrderID, StockMovement.ItemID, func.sum(StockMovement.Delta))
        .where(StockMovement.OrderID.in_(sorted(order_ids)))
        .where(StockMovement.Reason.in_((MovementReason.CHECKOUT, MovementReason.RETURN)))
        .group_by(StockMovement.OrderID, StockMovement.ItemID)
    ).all()
    held: dict[int, dict[int, int]] = {}
    for order_id, item_id, total in rows:
        outstanding = -int(total or 0)
        if outstanding > 0:
            held.setdefault(order_id, {})[item_id] = outstanding
    return held


def window_snapshot(
    db: Session,
    window_start: datetime,
    window_end: datetime,
    exclude_order_id: int | None = None,
) -> WindowSnapshot:
    require_window(window_start, window_end)
    snapshot = WindowSnapshot(window_start, window_end, exclude_order_id)
    exploded: dict[int, list[tuple[int, int]]] = {}
    checked_out: set[int] = set()
    for order_id, item_id, quantity, status in _overlapping_lines(db, window_start, window_end, exclude_order_id):
        snapshot.order_ids.add(order_id)
        if OrderStatus(status) == OrderStatus.CHECKED_OUT:
            checked_out.add(order_id)
            continue
        if item_id not in exploded:
            exploded[item_id] = explode(db, item_id)
        for atomic_id, multiplier in exploded[item_id]:
            snapshot.committed[atomic_id] = snapshot.committed.get(atomic_id, 0) + int(quantity) * multiplier
    # Checked-out orders commit exactly the units their Checkout movements took,
    # whatever their composites are made of today.
    for held in held_out_by_order(db, checked_out).values():
        for atomic_id, units in held.items():
            snapshot.held_out[atomic_id] = snapshot.held_out.get(atomic_id, 0) + units
            snapshot.committed[atomic_id] = snapshot.committed.get(atomic_id, 0) + units
    return snapshot


def atomic_free(db: Session, atomic_id: int, snapshot: WindowSnapshot) -> int:
    owned = on_hand(db, atomic_id) + snapshot.held_out.get(atomic_id, 0)
    return max(0, owned - snapshot.committed.get(atomic_id, 0))


def availability_from_snapshot(db: Session, item: Item, snapshot: WindowSnapshot):
    kind = ItemKind(item.Kind)
    if kind == ItemKind.SERVICE:
        return UNBOUNDED
    if kind == ItemKind.ATOMIC:
        return atomic_free(db, item.ItemID, snapshot)
    if kind == ItemKind.COMPOSITE:
        components = resolve_components(db, item.ItemID)
        if not components:
            raise ValidationError(f"Composite item {item.ItemID} has no components defined.")
        return min(atomic_free(db, atomic_id, snapshot) // multiplier for atomic_id, multiplier in components)
    raise ValueError(f"Unhandled item kind: {kind!r}")


def availability(
    db: Session,
    item_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_order_id: int | None = None,
):
    """Units of ``item_id`` free for new commitment over ``[window_start, window_end)``.

    Returns an int >= 0, or ``UNBOUNDED`` for service items.
    """
    require_window(window_start, window_end)
    item = get_item(db, item_id)
    if ItemKind(item.Kind) == ItemKind.SERVICE:
        return UNBOUNDED
    snapshot = window_snapshot(db, window_start, window_end, exclude_order_id)
    return availability_from_snapshot(db, item, snapshot)


def get_availability(
    db: Session,
    item_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_order_id: int | None = None,
) -> dict:
    require_window(window_start, window_end)
    item = get_item(db, item_id)
    kind = ItemKind(item.Kind)
    payload = {
        "itemID": item.ItemID,
        "sku": item.Sku,
        "kind": kind.value,
        "startDate": window_start,
        "endDate": window_end,
        "excludeOrderID": exclude_order_id,
    }
    if kind == ItemKind.SERVICE:
        payload.update({"available": None, "unbounded": True})
        return payload

    snapshot = window_snapshot(db, window_start, window_end, exclude_order_id)
    available = availability_from_snapshot(db, item, snapshot)
    payload.update({"available": available, "unbounded": False})
    if kind == ItemKind.ATOMIC:
        payload.update(
            {
                "onHand": on_hand(db, item.ItemID),
                "committed": snapshot.committed.get(item.ItemID, 0),
                "heldOut": snapshot.held_out.get(item.ItemID, 0),
            }
        )
    else:
        payload["components"] = [
            {
                "itemID": atomic_id,
                "multiplier": multiplier,
                "available": atomic_free(db, atomic_id, snapshot),
                "sets": atomic_free(db, atomic_id, snapshot) // multiplier,
            }
            for atomic_id, multiplier in resolve_components(db, item.ItemID)
        ]
    return payload


def conflicting_orders(
    db: Session,
    item_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_order_id: int | None = None,
) -> list[dict]:
    """Orders holding stock that ``item_id`` needs during the window."""
    require_window(window_start, window_end)
    wanted = {atomic_id for atomic_id, _ in explode(db, item_id)}
    if not wanted:
        return []

    rows = _overlapping_lines(db, window_start, window_end, exclude_order_id)
    held = held_out_by_order(db, {row[0] for row in rows if OrderStatus(row[3]) == OrderStatus.CHECKED_OUT})
    conflicts: dict[int, dict] = {}
    exploded: dict[int, list[tuple[int, int]]] = {}
    for order_id, line_item_id, quantity, status in rows:
        if OrderStatus(status) == OrderStatus.CHECKED_OUT:
            if order_id in conflicts:
                continue
            units = {atomic_id: count for atomic_id, count in held.get(order_id, {}).items() if atomic_id in wanted}
        else:
            if line_item_id not in exploded:
                exploded[line_item_id] = explode(db, line_item_id)
            units = {
                atomic_id: int(quantity) * multiplier
                for atomic_id, multiplier in exploded[line_item_id]
                if atomic_id in wanted
            }
        if not units:
            continue
        entry = conflicts.get(order_id)
        if entry is None:
            order = db.get(Order, order_id)
            start, end = order_window(order)
            entry = {
                "orderID": order_id,
                "status": OrderStatus(status).value,
                "customerID": order.CustomerID,
                "windowStart": start,
                "windowEnd": end,
                "consumes": {},
            }
            conflicts[order_id] = entry
        for atomic_id, count in units.items():
            entry["consumes"][atomic_id] = entry["consumes"].get(atomic_id, 0) + count
    return sorted(conflicts.values(), key=lambda row: (row["windowStart"], row["orderID"]))
