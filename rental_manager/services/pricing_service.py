from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from rental_manager.models.rental_models import Item, ItemKind, Order, OrderLine, PriceTier

from .catalog_service import get_price_tiers
from .errors import ValidationError


CENTS = Decimal("0.01")
SECONDS_PER_DAY = 24 * 60 * 60
SECONDS_PER_HOUR = 60 * 60
EQUIPMENT_KINDS = (ItemKind.ATOMIC, ItemKind.COMPOSITE)


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def rental_days(start: datetime, end: datetime) -> int:
    """Whole days billed for ``[start, end)``; any started day counts, minimum 1."""
    if start is None or end is None or end <= start:
        raise ValidationError("Return due date must be after start date.")
    return max(1, math.ceil((end - start).total_seconds() / SECONDS_PER_DAY))


def round_to_quarter_hour(hours) -> Decimal:
    value = Decimal(str(hours or 0))
    if value <= 0:
        return Decimal("0.00")
    quarters = (value * 4).to_integral_value(rounding=ROUND_CEILING)
    return (quarters / 4).quantize(CENTS)


def billed_hours(start: datetime, end: datetime) -> Decimal:
    if start is None or end is None or end <= start:
        raise ValidationError("Service window end must be after its start.")
    return round_to_quarter_hour(Decimal(str((end - start).total_seconds())) / SECONDS_PER_HOUR)


def service_window(order: Order) -> tuple[datetime, datetime]:
    if order.OrderStart and order.OrderEnd:
        return order.OrderStart, order.OrderEnd
    return order.StartDate, order.ReturnDueDate


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a whole number greater than 0.")
    return quantity


def line_total(
    kind: ItemKind | str,
    quantity: int,
    *,
    price_per_day=None,
    start_fee=None,
    days: int | None = None,
    price_per_hour=None,
    hours=None,
) -> Decimal:
    item_kind = ItemKind(kind)
    units = _require_quantity(quantity)
    if item_kind in EQUIPMENT_KINDS:
        if price_per_day is None:
            raise ValidationError("A Daily price is required for equipment lines.")
        if days is None or days < 1:
            raise ValidationError("Rental days must be at least 1.")
        total = units * Decimal(str(price_per_day)) * days + Decimal(str(start_fee or 0))
    elif item_kind == ItemKind.SERVICE:
        if price_per_hour is None:
            raise ValidationError("An Hourly price is required for service lines.")
        if hours is None:
            raise ValidationError("Billed hours are required for service lines.")
        total = units * Decimal(str(price_per_hour)) * round_to_quarter_hour(hours)
    else:
        raise ValueError(f"Unhandled item kind: {item_kind!r}")
    return money(total)


def price(item: Item, quantity: int, rental_days: int | None = None, hours=None) -> Decimal:
    """Subtotal for ``quantity`` units of ``item`` at its catalog price tiers.

    Equipment (atomic and composite) bills the Daily tier per unit per day
    plus the Start tier once per line. Services bill the Hourly tier against
    ``hours`` rounded up to the next quarter hour; ``rental_days`` is ignored.
    """
    kind = ItemKind(item.Kind)
    tiers = get_price_tiers(item)
    if kind in EQUIPMENT_KINDS:
        if PriceTier.DAILY not in tiers:
            raise ValidationError(f"Item {item.Sku} has no Daily price tier.")
        return line_total(
            kind,
            quantity,
            price_per_day=tiers[PriceTier.DAILY],
            start_fee=tiers.get(PriceTier.START),
            days=rental_days,
        )
    if kind == ItemKind.SERVICE:
        if PriceTier.HOURLY not in tiers:
            raise ValidationError(f"Item {item.Sku} has no Hourly price tier.")
        return line_total(kind, quantity, price_per_hour=tiers[PriceTier.HOURLY], hours=hours)
    raise ValueError(f"Unhandled item kind: {kind!r}")


def snapshot_tier_prices(line: OrderLine, item: Item) -> None:
    kind = ItemKind(item.Kind)
    tiers = get_price_tiers(item)
    if kind in EQUIPMENT_KINDS:
        if PriceTier.DAILY not in tiers:
            raise ValidationError(f"Item {item.Sku} has no Daily price tier.")
        line.PricePerDay = tiers[PriceTier.DAILY]
        line.StartFee = tiers.get(PriceTier.START)
        line.PricePerHour = None
    elif kind == ItemKind.SERVICE:
        if PriceTier.HOURLY not in tiers:
            raise ValidationError(f"Item {item.Sku} has no Hourly price tier.")
        line.PricePerHour = tiers[PriceTier.HOURLY]
        line.PricePerDay = None
        line.StartFee = None
    else:
        raise ValueError(f"Unhandled item kind: {kind!r}")


def apply_line_pricing(order: Order, line: OrderLine, item: Item) -> None:
    kind = ItemKind(item.Kind)
    if kind in EQUIPMENT_KINDS:
        line.RentalDays = rental_days(order.StartDate, order.ReturnDueDate)
        line.Hours = None
        line.LineTotal = line_total(
            kind,
            line.Quantity,
            price_per_day=line.PricePerDay,
            start_fee=line.StartFee,
            days=line.RentalDays,
        )
    elif kind == ItemKind.SERVICE:
        line.RentalDays = None
        line.Hours = billed_hours(*service_window(order))
        line.LineTotal = line_total(kind, line.Quantity, price_per_hour=line.PricePerHour, hours=line.Hours)
    else:
        raise ValueError(f"Unhandled item kind: {kind!r}")


def order_totals(order: Order) -> dict:
    equipment_total = Decimal("0")
    services_total = Decimal("0")
    for line in order.Lines:
        if ItemKind(line.Item.Kind) == ItemKind.SERVICE:
            services_total += money(line.LineTotal)
        else:
            equipment_total += money(line.LineTotal)

    rebate_pct = Decimal(str(order.RebatePercent or 0))
    rebate = money(equipment_total * rebate_pct / 100)
    discount = money(order.DiscountAmount)
    tax = money(order.TaxAmount)
    subtotal = money(equipment_total + services_total)
    total = money(max(Decimal("0"), subtotal - rebate - discount) + tax)
    return {
        "equipmentTotal": money(equipment_total),
        "servicesTotal": money(services_total),
        "subtotal": subtotal,
        "rebatePercent": rebate_pct,
        "rebateAmount": rebate,
        "discountAmount": discount,
        "taxAmount": tax,
        "total": total,
    }


def recalc_total_cost(order: Order) -> None:
    order.TotalCost = order_totals(order)["total"]
