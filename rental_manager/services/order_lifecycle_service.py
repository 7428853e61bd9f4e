from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_manager.models.rental_models import (
    Item,
    ItemKind,
    MovementReason,
    Order,
    OrderLine,
    OrderStatus,
)

from .audit_service import get_audit_trail, log_audit
from .availability_service import (
    atomic_free,
    availability_from_snapshot,
    covers,
    order_window,
    window_snapshot,
)
from .catalog_service import coerce_amount, explode, get_item
from .errors import InsufficientAvailability, InvalidStateTransition, NotFound, Shortage, ValidationError
from .pricing_service import (
    apply_line_pricing,
    money,
    order_totals,
    recalc_total_cost,
    snapshot_tier_prices,
)
from .stock_ledger_service import apply_movement, order_movements
from .transaction import atomic_operation, lock_items


DEFAULT_ACTOR = "system"
STATE_TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.RESERVED, OrderStatus.CANCELLED},
    OrderStatus.RESERVED: {OrderStatus.CHECKED_OUT, OrderStatus.CANCELLED},
    OrderStatus.CHECKED_OUT: {OrderStatus.RETURNED},
    OrderStatus.RETURNED: set(),
    OrderStatus.CANCELLED: set(),
}
TRANSITION_ACTIONS = {
    OrderStatus.RESERVED: "Reserve",
    OrderStatus.CHECKED_OUT: "Checkout",
    OrderStatus.RETURNED: "Return",
    OrderStatus.CANCELLED: "Cancel",
}
LOGGER = logging.getLogger("rental_manager.lifecycle")


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id) if order_id is not None else None
    if not order:
        raise NotFound("Order", order_id)
    return order


def _load_order_for_update(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order)
        .where(Order.OrderID == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not order:
        raise NotFound("Order", order_id)
    return order


def _find_line(order: Order, line_id: int) -> OrderLine:
    line = next((row for row in order.Lines if row.OrderLineID == line_id), None)
    if line is None:
        raise NotFound("OrderLine", line_id)
    return line


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a whole number greater than 0.")
    return quantity


def _require_draft(order: Order) -> None:
    current = OrderStatus(order.Status)
    if current != OrderStatus.DRAFT:
        raise InvalidStateTransition(
            current.value,
            OrderStatus.DRAFT.value,
            "lines can only be changed while the order is Draft",
        )


def _check_transition(order: Order, target: OrderStatus) -> None:
    current = OrderStatus(order.Status)
    if target not in STATE_TRANSITIONS[current]:
        LOGGER.warning("Transition refused order_id=%s current=%s target=%s", order.OrderID, current.value, target.value)
        raise InvalidStateTransition(current.value, target.value)


def _apply_transition(db: Session, order: Order, target: OrderStatus, actor: str, details: str | None = None) -> None:
    previous = OrderStatus(order.Status)
    order.Status = target
    order.UpdatedDate = datetime.now()
    db.flush()
    log_audit(
        db,
        "Order",
        order.OrderID,
        TRANSITION_ACTIONS[target],
        details or f"{previous.value} -> {target.value}",
        user_id=actor,
    )
    LOGGER.info(
        "Order transitioned order_id=%s from=%s to=%s actor=%s",
        order.OrderID,
        previous.value,
        target.value,
        actor,
    )


def _validate_window(
    start_date: datetime | None,
    return_due_date: datetime | None,
    setup_start: datetime | None,
    order_start: datetime | None,
    order_end: datetime | None,
    cleanup_end: datetime | None,
) -> None:
    if start_date is None or return_due_date is None:
        raise ValidationError("Start date and return due date are required.")
    if return_due_date <= start_date:
        raise ValidationError("Return due date must be after start date.")
    if order_start and order_end and order_end <= order_start:
        raise ValidationError("Order End must be after Order Start.")
    if setup_start and order_start and order_start < setup_start:
        raise ValidationError("Order Start must be on/after Setup Start.")
    if order_end and cleanup_end and cleanup_end < order_end:
        raise ValidationError("Cleanup End must be on/after Order End.")
    if setup_start and cleanup_end and cleanup_end <= setup_start:
        raise ValidationError("Cleanup End must be after Setup Start.")
    window_start = setup_start or start_date
    window_end = cleanup_end or return_due_date
    if window_end <= window_start:
        raise ValidationError("The blocking window of the order is empty.")


def _touched_atomic_ids(db: Session, item_ids) -> set[int]:
    touched: set[int] = set()
    for item_id in set(item_ids):
        touched.update(atomic_id for atomic_id, _ in explode(db, item_id))
    return touched


def _lock_order_items(db: Session, order: Order, extra_item_ids=()) -> None:
    item_ids = {line.ItemID for line in order.Lines} | set(extra_item_ids)
    # Composite rows are locked alongside their atomic stock, as component edits do.
    lock_items(db, item_ids | _touched_atomic_ids(db, item_ids))


def collect_shortages(db: Session, order: Order, demand: list[tuple[int, int]]) -> list[Shortage]:
    """Shortfalls of ``demand`` against the order's window, the order itself excluded.

    Demand is checked per requested item and, aggregated, per atomic
    component, so lines that share a component cannot jointly oversubscribe it.
    """
    window_start, window_end = order_window(order)
    snapshot = window_snapshot(db, window_start, window_end, exclude_order_id=order.OrderID)

    item_demand: dict[int, int] = {}
    atomic_demand: dict[int, int] = {}
    sources: dict[int, set[int]] = {}
    for item_id, quantity in demand:
        item = get_item(db, item_id)
        if ItemKind(item.Kind) == ItemKind.SERVICE:
            continue
        item_demand[item_id] = item_demand.get(item_id, 0) + quantity
        for atomic_id, multiplier in explode(db, item_id):
            atomic_demand[atomic_id] = atomic_demand.get(atomic_id, 0) + quantity * multiplier
            sources.setdefault(atomic_id, set()).add(item_id)

    shortages: list[Shortage] = []
    reported: set[int] = set()
    for item_id, requested in item_demand.items():
        available = availability_from_snapshot(db, get_item(db, item_id), snapshot)
        if not covers(available, requested):
            shortages.append(Shortage(itemId=item_id, requested=requested, available=available))
            reported.add(item_id)
    for atomic_id, requested in atomic_demand.items():
        # Already named, either directly or through every item that draws on it.
        if atomic_id in reported or sources[atomic_id] <= reported:
            continue
        available = atomic_free(db, atomic_id, snapshot)
        if available < requested:
            shortages.append(Shortage(itemId=atomic_id, requested=requested, available=available))
    return shortages


def _order_demand(order: Order, replace: dict[int, int] | None = None) -> list[tuple[int, int]]:
    replace = replace or {}
    return [(line.ItemID, replace.get(line.OrderLineID, line.Quantity)) for line in order.Lines]


def _raise_if_short(order: Order, shortages: list[Shortage], action: str) -> None:
    if not shortages:
        return
    LOGGER.warning(
        "Availability check failed order_id=%s action=%s shortages=%s",
        order.OrderID,
        action,
        [(s.itemId, s.requested, s.available) for s in shortages],
    )
    raise InsufficientAvailability(shortages)


def _require_line_availability(db: Session, order: Order, demand: list[tuple[int, int]], item: Item, action: str) -> None:
    relevant = {item.ItemID} | {atomic_id for atomic_id, _ in explode(db, item.ItemID)}
    shortages = [s for s in collect_shortages(db, order, demand) if s.itemId in relevant]
    _raise_if_short(order, shortages, action)


def _require_order_availability(db: Session, order: Order, action: str) -> None:
    if not order.Lines:
        raise ValidationError("Order must have at least one line item.")
    _raise_if_short(order, collect_shortages(db, order, _order_demand(order)), action)


@atomic_operation
def create_order(
    db: Session,
    customer_id: int,
    sales_person_id: int,
    start_date: datetime,
    return_due_date: datetime,
    setup_start: datetime | None = None,
    order_start: datetime | None = None,
    order_end: datetime | None = None,
    cleanup_end: datetime | None = None,
    discount_amount=0,
    tax_amount=0,
    rebate_percent=0,
    notes: str | None = None,
    actor: str = DEFAULT_ACTOR,
    lines: list[tuple[int, int]] | None = None,
) -> Order:
    """Open a Draft order, optionally with its first ``(item_id, quantity)`` lines.

    Either the order and every requested line are stored, or nothing is.
    """
    if not customer_id:
        raise ValidationError("Customer ID is required.")
    if not sales_person_id:
        raise ValidationError("Sales person ID is required.")
    _validate_window(start_date, return_due_date, setup_start, order_start, order_end, cleanup_end)
    rebate = Decimal(str(rebate_percent or 0))
    if rebate < 0 or rebate > 100:
        raise ValidationError("Rebate percent must be between 0 and 100.")

    now = datetime.now()
    order = Order(
        CustomerID=customer_id,
        SalesPersonID=sales_person_id,
        Status=OrderStatus.DRAFT,
        StartDate=start_date,
        ReturnDueDate=return_due_date,
        SetupStart=setup_start,
        OrderStart=order_start,
        OrderEnd=order_end,
        CleanupEnd=cleanup_end,
        DiscountAmount=coerce_amount(discount_amount or 0, "Discount amount"),
        TaxAmount=coerce_amount(tax_amount or 0, "Tax amount"),
        RebatePercent=rebate,
        TotalCost=Decimal("0.00"),
        Notes=notes,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(order)
    db.flush()
    log_audit(db, "Order", order.OrderID, "CreateOrder", f"customer={customer_id}", user_id=actor)
    for item_id, quantity in lines or []:
        _append_line(db, order, item_id, quantity, actor)
    LOGGER.info("Order created order_id=%s customer_id=%s lines=%s actor=%s", order.OrderID, customer_id, len(order.Lines), actor)
    return order


@atomic_operation
def update_order_pricing(
    db: Session,
    order_id: int,
    discount_amount=None,
    tax_amount=None,
    rebate_percent=None,
    actor: str = DEFAULT_ACTOR,
) -> Order:
    order = _load_order_for_update(db, order_id)
    _require_draft(order)
    if discount_amount is not None:
        order.DiscountAmount = coerce_amount(discount_amount, "Discount amount")
    if tax_amount is not None:
        order.TaxAmount = coerce_amount(tax_amount, "Tax amount")
    if rebate_percent is not None:
        rebate = Decimal(str(rebate_percent))
        if rebate < 0 or rebate > 100:
            raise ValidationError("Rebate percent must be between 0 and 100.")
        order.RebatePercent = rebate
    recalc_total_cost(order)
    order.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "Order", order.OrderID, "UpdatePricing", f"total={order.TotalCost}", user_id=actor)
    return order


@atomic_operation
def add_line(db: Session, order_id: int, item_id: int, quantity: int, actor: str = DEFAULT_ACTOR) -> OrderLine:
    order = _load_order_for_update(db, order_id)
    return _append_line(db, order, item_id, quantity, actor)


def _append_line(db: Session, order: Order, item_id: int, quantity: int, actor: str) -> OrderLine:
    requested = _require_quantity(quantity)
    item = get_item(db, item_id)
    _require_draft(order)

    _lock_order_items(db, order, [item.ItemID])
    _require_line_availability(db, order, _order_demand(order) + [(item.ItemID, requested)], item, "add_line")

    line = OrderLine(ItemID=item.ItemID, Quantity=requested)
    line.Item = item
    snapshot_tier_prices(line, item)
    order.Lines.append(line)
    apply_line_pricing(order, line, item)
    recalc_total_cost(order)
    order.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "Order", order.OrderID, "AddLine", f"item={item.ItemID} quantity={requested}", user_id=actor)
    LOGGER.info("Line added order_id=%s line_id=%s item_id=%s quantity=%s", order.OrderID, line.OrderLineID, item.ItemID, requested)
    return line


@atomic_operation
def edit_line(
    db: Session,
    order_id: int,
    line_id: int,
    quantity: int | None = None,
    price_per_day=None,
    price_per_hour=None,
    actor: str = DEFAULT_ACTOR,
) -> OrderLine:
    if quantity is None and price_per_day is None and price_per_hour is None:
        raise ValidationError("Nothing to update.")
    new_quantity = _require_quantity(quantity) if quantity is not None else None
    order = _load_order_for_update(db, order_id)
    line = _find_line(order, line_id)
    _require_draft(order)
    item = line.Item
    kind = ItemKind(item.Kind)

    if price_per_day is not None:
        if kind == ItemKind.SERVICE:
            raise ValidationError("Service lines are billed hourly; set pricePerHour instead.")
        line.PricePerDay = coerce_amount(price_per_day, "Price per day")
    if price_per_hour is not None:
        if kind != ItemKind.SERVICE:
            raise ValidationError("Only service lines take an hourly price.")
        line.PricePerHour = coerce_amount(price_per_hour, "Price per hour")

    if new_quantity is not None and new_quantity != line.Quantity:
        if new_quantity > line.Quantity:
            _lock_order_items(db, order)
            demand = _order_demand(order, replace={line.OrderLineID: new_quantity})
            _require_line_availability(db, order, demand, item, "edit_line")
        line.Quantity = new_quantity

    apply_line_pricing(order, line, item)
    recalc_total_cost(order)
    order.UpdatedDate = datetime.now()
    db.flush()
    log_audit(
        db,
        "Order",
        order.OrderID,
        "EditLine",
        f"line={line.OrderLineID} quantity={line.Quantity} total={line.LineTotal}",
        user_id=actor,
    )
    return line


@atomic_operation
def remove_line(db: Session, order_id: int, line_id: int, actor: str = DEFAULT_ACTOR) -> None:
    order = _load_order_for_update(db, order_id)
    line = _find_line(order, line_id)
    _require_draft(order)
    order.Lines.remove(line)
    recalc_total_cost(order)
    order.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "Order", order.OrderID, "RemoveLine", f"line={line_id} item={line.ItemID}", user_id=actor)
    LOGGER.info("Line removed order_id=%s line_id=%s", order.OrderID, line_id)


@atomic_operation
def recalculate_order(db: Session, order_id: int, actor: str = DEFAULT_ACTOR) -> Order:
    order = _load_order_for_update(db, order_id)
    _require_draft(order)
    for line in order.Lines:
        apply_line_pricing(order, line, line.Item)
    recalc_total_cost(order)
    order.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "Order", order.OrderID, "Recalculate", f"total={order.TotalCost}", user_id=actor)
    return order


@atomic_operation
def reserve(db: Session, order_id: int, actor: str = DEFAULT_ACTOR) -> Order:
    order = _load_order_for_update(db, order_id)
    _check_transition(order, OrderStatus.RESERVED)
    _lock_order_items(db, order)
    _require_order_availability(db, order, "reserve")
    recalc_total_cost(order)
    _apply_transition(db, order, OrderStatus.RESERVED, actor)
    return order


@atomic_operation
def checkout(db: Session, order_id: int, actor: str = DEFAULT_ACTOR) -> Order:
    order = _load_order_for_update(db, order_id)
    _check_transition(order, OrderStatus.CHECKED_OUT)
    _lock_order_items(db, order)
    # Stock may have been lost or adjusted since the reservation was taken.
    _require_order_availability(db, order, "checkout")

    removed = 0
    for line in order.Lines:
        for atomic_id, multiplier in explode(db, line.ItemID):
            units = int(line.Quantity) * multiplier
            apply_movement(
                db,
                atomic_id,
                -units,
                MovementReason.CHECKOUT,
                actor,
                f"Checkout of order {order.OrderID}, line {line.OrderLineID}",
                order_id=order.OrderID,
                lifecycle=True,
            )
            removed += units
    _apply_transition(db, order, OrderStatus.CHECKED_OUT, actor, f"Reserved -> CheckedOut; units={removed}")
    return order


@atomic_operation
def return_order(db: Session, order_id: int, actor: str = DEFAULT_ACTOR) -> Order:
    order = _load_order_for_update(db, order_id)
    _check_transition(order, OrderStatus.RETURNED)
    checkouts = [m for m in order_movements(db, order.OrderID) if MovementReason(m.Reason) == MovementReason.CHECKOUT]
    lock_items(db, [m.ItemID for m in checkouts])

    restored = 0
    for movement in checkouts:
        apply_movement(
            db,
            movement.ItemID,
            -int(movement.Delta),
            MovementReason.RETURN,
            actor,
            f"Return of order {order.OrderID} (reverses movement {movement.MovementID})",
            order_id=order.OrderID,
            lifecycle=True,
        )
        restored += -int(movement.Delta)
    _apply_transition(db, order, OrderStatus.RETURNED, actor, f"CheckedOut -> Returned; units={restored}")
    return order


@atomic_operation
def cancel(db: Session, order_id: int, actor: str = DEFAULT_ACTOR) -> Order:
    order = _load_order_for_update(db, order_id)
    _check_transition(order, OrderStatus.CANCELLED)
    _apply_transition(db, order, OrderStatus.CANCELLED, actor)
    return order


def get_valid_transitions(db: Session, order_id: int) -> dict:
    order = get_order(db, order_id)
    current = OrderStatus(order.Status)
    allowed = STATE_TRANSITIONS[current]
    return {
        "orderID": order.OrderID,
        "currentStatus": current.value,
        "validTransitions": sorted(target.value for target in allowed),
        "canReserve": OrderStatus.RESERVED in allowed,
        "canCheckout": OrderStatus.CHECKED_OUT in allowed,
        "canReturn": OrderStatus.RETURNED in allowed,
        "canCancel": OrderStatus.CANCELLED in allowed,
        "linesEditable": current == OrderStatus.DRAFT,
    }


def get_status_history(db: Session, order_id: int) -> list[dict]:
    get_order(db, order_id)
    status_by_action = {action: status.value for status, action in TRANSITION_ACTIONS.items()}
    status_by_action["CreateOrder"] = OrderStatus.DRAFT.value
    history = []
    for entry in get_audit_trail(db, "Order", order_id):
        if entry.Action not in status_by_action:
            continue
        history.append(
            {
                "status": status_by_action[entry.Action],
                "timestamp": entry.CreatedAt,
                "createdBy": entry.UserID,
                "details": entry.Details,
            }
        )
    return history


def serialize_line(line: OrderLine) -> dict:
    return {
        "orderLineID": line.OrderLineID,
        "orderID": line.OrderID,
        "itemID": line.ItemID,
        "sku": line.Item.Sku if line.Item else None,
        "kind": ItemKind(line.Item.Kind).value if line.Item else None,
        "quantity": line.Quantity,
        "pricePerDay": line.PricePerDay,
        "startFee": line.StartFee,
        "rentalDays": line.RentalDays,
        "pricePerHour": line.PricePerHour,
        "hours": line.Hours,
        "lineTotal": money(line.LineTotal),
    }


def serialize_order(order: Order) -> dict:
    window_start, window_end = order_window(order)
    return {
        "orderID": order.OrderID,
        "customerID": order.CustomerID,
        "salesPersonID": order.SalesPersonID,
        "status": OrderStatus(order.Status).value,
        "startDate": order.StartDate,
        "returnDueDate": order.ReturnDueDate,
        "setupStart": order.SetupStart,
        "orderStart": order.OrderStart,
        "orderEnd": order.OrderEnd,
        "cleanupEnd": order.CleanupEnd,
        "windowStart": window_start,
        "windowEnd": window_end,
        "notes": order.Notes,
        "totals": order_totals(order),
        "totalCost": money(order.TotalCost),
        "version": order.Version,
        "createdDate": order.CreatedDate,
        "updatedDate": order.UpdatedDate,
        "lines": [serialize_line(line) for line in order.Lines],
    }
