from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_manager.models.rental_models import Item, ItemComponent, ItemKind, ItemPriceTier, PriceTier

from .audit_service import log_audit
from .errors import CycleDetected, NotFound, ValidationError
from .transaction import atomic_operation, lock_items


SKU_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_SKU_LENGTH = 100
MAX_NAME_LENGTH = 255
MAX_PRICE = Decimal("999999.99")
CENTS = Decimal("0.01")
ALLOWED_TIERS = {
    ItemKind.ATOMIC: {PriceTier.START, PriceTier.DAILY},
    ItemKind.COMPOSITE: {PriceTier.START, PriceTier.DAILY},
    ItemKind.SERVICE: {PriceTier.HOURLY},
}
LOGGER = logging.getLogger("rental_manager.catalog")


def validate_sku(sku: str | None) -> bool:
    if not sku or not isinstance(sku, str):
        return False
    return bool(SKU_PATTERN.match(sku)) and len(sku) <= MAX_SKU_LENGTH


def _coerce_kind(raw) -> ItemKind:
    try:
        return ItemKind(raw)
    except ValueError as exc:
        allowed = ", ".join(kind.value for kind in ItemKind)
        raise ValidationError(f"Item kind must be one of: {allowed}.") from exc


def _coerce_tier(raw) -> PriceTier:
    try:
        return PriceTier(raw)
    except ValueError as exc:
        allowed = ", ".join(tier.value for tier in PriceTier)
        raise ValidationError(f"Price tier must be one of: {allowed}.") from exc


def coerce_amount(raw, label: str = "Price") -> Decimal:
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{label} must be a number.") from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{label} must be non-negative.")
    if amount > MAX_PRICE:
        raise ValidationError(f"{label} must be less than {MAX_PRICE}.")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _check_tier_allowed(kind: ItemKind, tier: PriceTier) -> None:
    if tier not in ALLOWED_TIERS[kind]:
        raise ValidationError(f"{kind.value} items do not take a {tier.value} price tier.")


def get_item(db: Session, item_id: int | None) -> Item:
    item = db.get(Item, item_id) if item_id is not None else None
    if not item:
        raise NotFound("Item", item_id)
    return item


def get_price_tiers(item: Item) -> dict[PriceTier, Decimal]:
    return {PriceTier(row.Tier): Decimal(row.Amount) for row in item.PriceTiers}


@atomic_operation
def create_item(
    db: Session,
    sku: str,
    name: str,
    kind: ItemKind | str,
    price_tiers: dict | None = None,
    description: str | None = None,
    actor: str | None = None,
) -> Item:
    item_kind = _coerce_kind(kind)
    sku_value = (sku or "").strip()
    if not validate_sku(sku_value):
        raise ValidationError("SKU must be 1-100 characters of letters, digits, hyphens or underscores.")
    name_value = (name or "").strip()
    if not name_value:
        raise ValidationError("Item name is required.")
    if len(name_value) > MAX_NAME_LENGTH:
        raise ValidationError("Item name must be 255 characters or less.")
    if db.execute(select(Item.ItemID).where(Item.Sku == sku_value)).first():
        raise ValidationError(f"SKU {sku_value} is already in use.")

    now = datetime.now()
    item = Item(
        Sku=sku_value,
        Name=name_value,
        Kind=item_kind,
        Description=description,
        Revision=0,
        CreatedDate=now,
        UpdatedDate=now,
    )
    for raw_tier, raw_amount in (price_tiers or {}).items():
        tier = _coerce_tier(raw_tier)
        _check_tier_allowed(item_kind, tier)
        item.PriceTiers.append(ItemPriceTier(Tier=tier, Amount=coerce_amount(raw_amount, f"{tier.value} price")))

    db.add(item)
    db.flush()
    log_audit(db, "Item", item.ItemID, "CreateItem", f"{item_kind.value} {sku_value}", user_id=actor)
    LOGGER.info("Item created item_id=%s sku=%s kind=%s", item.ItemID, sku_value, item_kind.value)
    return item


@atomic_operation
def set_price_tier(db: Session, item_id: int, tier: PriceTier | str, amount, actor: str | None = None) -> ItemPriceTier:
    item = get_item(db, item_id)
    price_tier = _coerce_tier(tier)
    _check_tier_allowed(ItemKind(item.Kind), price_tier)
    value = coerce_amount(amount, f"{price_tier.value} price")

    row = next((existing for existing in item.PriceTiers if PriceTier(existing.Tier) == price_tier), None)
    if row is None:
        row = ItemPriceTier(Tier=price_tier, Amount=value)
        item.PriceTiers.append(row)
    else:
        row.Amount = value
    db.flush()
    log_audit(db, "Item", item.ItemID, "SetPriceTier", f"{price_tier.value}={value}", user_id=actor)
    return row


def resolve_components(db: Session, composite_id: int) -> list[tuple[int, int]]:
    """Flatten a composite into ``(atomic_item_id, multiplier)`` pairs.

    Multipliers are multiplied along each path from the composite down to an
    atomic leaf and summed when the same leaf is reachable more than once.
    Leaves keep the order in which they are first reached.
    """
    composite = get_item(db, composite_id)
    if ItemKind(composite.Kind) != ItemKind.COMPOSITE:
        raise ValidationError(f"Item {composite_id} is not a composite item.")
    totals: dict[int, int] = {}
    _accumulate_leaves(db, composite, 1, [composite.ItemID], totals)
    return list(totals.items())


def _accumulate_leaves(db: Session, item: Item, multiplier: int, path: list[int], totals: dict[int, int]) -> None:
    for edge in item.Components:
        child = edge.Child or get_item(db, edge.ChildItemID)
        if child.ItemID in path:
            raise CycleDetected(f"Component cycle: {' -> '.join(str(i) for i in path + [child.ItemID])}", path + [child.ItemID])
        effective = multiplier * int(edge.Quantity)
        kind = ItemKind(child.Kind)
        if kind == ItemKind.ATOMIC:
            totals[child.ItemID] = totals.get(child.ItemID, 0) + effective
        elif kind == ItemKind.COMPOSITE:
            _accumulate_leaves(db, child, effective, path + [child.ItemID], totals)
        elif kind == ItemKind.SERVICE:
            raise ValidationError(f"Composite {path[0]} bundles service item {child.ItemID}.")
        else:
            raise ValueError(f"Unhandled item kind: {kind!r}")


def explode(db: Session, item_id: int) -> list[tuple[int, int]]:
    """Atomic stock consumed by one unit of ``item_id``."""
    item = get_item(db, item_id)
    kind = ItemKind(item.Kind)
    if kind == ItemKind.ATOMIC:
        return [(item.ItemID, 1)]
    if kind == ItemKind.COMPOSITE:
        return resolve_components(db, item.ItemID)
    if kind == ItemKind.SERVICE:
        return []
    raise ValueError(f"Unhandled item kind: {kind!r}")


def _component_adjacency(db: Session) -> dict[int, list[int]]:
    adjacency: dict[int, list[int]] = {}
    rows = db.execute(select(ItemComponent.ParentItemID, ItemComponent.ChildItemID)).all()
    for parent_id, child_id in rows:
        adjacency.setdefault(parent_id, []).append(child_id)
    return adjacency


def _find_path(adjacency: dict[int, list[int]], start: int, target: int) -> list[int] | None:
    stack = [(start, [start])]
    visited: set[int] = set()
    while stack:
        node, path = stack.pop()
        if node == target:
            return path
        if node in visited:
            continue
        visited.add(node)
        for child_id in adjacency.get(node, []):
            stack.append((child_id, path + [child_id]))
    return None


def _require_quantity(quantity) -> int:
    try:
        value = int(quantity)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Component quantity must be an integer.") from exc
    if value < 1 or value != quantity:
        raise ValidationError("Component quantity must be a whole number of at least 1.")
    return value


def _find_edge(parent: Item, child_id: int) -> ItemComponent | None:
    return next((edge for edge in parent.Components if edge.ChildItemID == child_id), None)


def _lock_recipe(db: Session, parent: Item, extra_ids=()) -> None:
    # The composite and every atomic child, the same rows a booking of it locks.
    lock_items(db, [parent.ItemID, *extra_ids, *(edge.ChildItemID for edge in parent.Components)])


@atomic_operation
def add_component(db: Session, parent_id: int, child_id: int, quantity: int, actor: str | None = None) -> ItemComponent:
    required = _require_quantity(quantity)
    parent = get_item(db, parent_id)
    child = get_item(db, child_id)
    if ItemKind(parent.Kind) != ItemKind.COMPOSITE:
        raise ValidationError(f"Item {parent_id} must be composite to have components.")
    if parent.ItemID == child.ItemID:
        raise CycleDetected("An item cannot be a component of itself.", [parent.ItemID, child.ItemID])
    if ItemKind(child.Kind) != ItemKind.ATOMIC:
        raise CycleDetected(
            f"Composite items may only bundle atomic items; item {child.ItemID} is {ItemKind(child.Kind).value}.",
            [parent.ItemID, child.ItemID],
        )

    cycle = _find_path(_component_adjacency(db), child.ItemID, parent.ItemID)
    if cycle:
        path = [parent.ItemID] + cycle
        raise CycleDetected(f"Adding this component would create a cycle: {' -> '.join(str(i) for i in path)}", path)

    _lock_recipe(db, parent, [child.ItemID])
    edge = _find_edge(parent, child.ItemID)
    if edge is None:
        edge = ItemComponent(ChildItemID=child.ItemID, Quantity=required, Position=len(parent.Components))
        parent.Components.append(edge)
        action = "AddComponent"
    else:
        edge.Quantity = required
        action = "UpdateComponent"
    db.flush()
    log_audit(db, "Item", parent.ItemID, action, f"child={child.ItemID} quantity={required}", user_id=actor)
    LOGGER.info("Component %s parent=%s child=%s quantity=%s", action, parent.ItemID, child.ItemID, required)
    return edge


@atomic_operation
def update_component_quantity(db: Session, parent_id: int, child_id: int, quantity: int, actor: str | None = None) -> ItemComponent:
    required = _require_quantity(quantity)
    parent = get_item(db, parent_id)
    edge = _find_edge(parent, child_id)
    if edge is None:
        raise NotFound("Component", f"{parent_id}->{child_id}")
    _lock_recipe(db, parent)
    edge.Quantity = required
    db.flush()
    log_audit(db, "Item", parent.ItemID, "UpdateComponent", f"child={child_id} quantity={required}", user_id=actor)
    return edge


@atomic_operation
def remove_component(db: Session, parent_id: int, child_id: int, actor: str | None = None) -> None:
    parent = get_item(db, parent_id)
    if ItemKind(parent.Kind) != ItemKind.COMPOSITE:
        raise ValidationError(f"Item {parent_id} is not a composite item.")
    edge = _find_edge(parent, child_id)
    if edge is None:
        raise NotFound("Component", f"{parent_id}->{child_id}")
    _lock_recipe(db, parent)
    parent.Components.remove(edge)
    for position, remaining in enumerate(parent.Components):
        remaining.Position = position
    db.flush()
    log_audit(db, "Item", parent.ItemID, "RemoveComponent", f"child={child_id}", user_id=actor)
    LOGGER.info("Component removed parent=%s child=%s", parent.ItemID, child_id)


def serialize_item(item: Item) -> dict:
    kind = ItemKind(item.Kind)
    payload = {
        "itemID": item.ItemID,
        "sku": item.Sku,
        "name": item.Name,
        "kind": kind.value,
        "description": item.Description,
        "priceTiers": {tier.value: amount for tier, amount in get_price_tiers(item).items()},
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
    if kind == ItemKind.COMPOSITE:
        payload["components"] = [
            {"childItemID": edge.ChildItemID, "quantity": edge.Quantity, "position": edge.Position}
            for edge in item.Components
        ]
    return payload
