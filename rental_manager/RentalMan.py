import logging
import os
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, text
from sqlalchemy.orm import Session, selectinload

from dotenv import load_dotenv

load_dotenv()

from rental_manager.db.deps import get_rental_db
from rental_manager.db.session import engine_rental
from rental_manager.models.rental_models import Item, Order, OrderLine, OrderStatus, create_schema
from rental_manager.schemas.items import ComponentQuantityUpdate, ComponentUpsert, CreateItemDto, PriceTierUpsert
from rental_manager.schemas.orders import (
    CreateOrderDto,
    CreateOrderLineDto,
    EditOrderLineDto,
    OrderPricingUpdate,
    OrderTransitionRequest,
)
from rental_manager.schemas.stock import StockAdjustmentRequest, StockSetRequest
from rental_manager.services.audit_service import get_audit_trail, serialize_audit_entry
from rental_manager.services.availability_service import conflicting_orders, get_availability
from rental_manager.services.catalog_service import (
    add_component,
    create_item,
    get_item,
    remove_component,
    resolve_components,
    serialize_item,
    set_price_tier,
    update_component_quantity,
)
from rental_manager.services.errors import (
    ConcurrencyConflict,
    CycleDetected,
    InsufficientAvailability,
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    RentalEngineError,
    ValidationError,
)
from rental_manager.services.order_lifecycle_service import (
    add_line,
    cancel,
    checkout,
    create_order,
    edit_line,
    get_order,
    get_status_history,
    get_valid_transitions,
    recalculate_order,
    remove_line,
    reserve,
    return_order,
    serialize_line,
    serialize_order,
    update_order_pricing,
)
from rental_manager.services.stock_ledger_service import (
    adjust_stock,
    movement_history,
    serialize_movement,
    set_stock,
    stock_summary,
)

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

if _env_flag("RENTAL_CREATE_SCHEMA", "false"):
    create_schema(engine_rental)

DEFAULT_ACTOR = "system"
STATUS_CODES = {
    ValidationError: 400,
    CycleDetected: 400,
    InvalidStateTransition: 400,
    NotFound: 404,
    InsufficientAvailability: 409,
    InsufficientStock: 409,
    ConcurrencyConflict: 409,
}
TRANSITION_HANDLERS = {
    OrderStatus.RESERVED: reserve,
    OrderStatus.CHECKED_OUT: checkout,
    OrderStatus.RETURNED: return_order,
    OrderStatus.CANCELLED: cancel,
}
API_LOGGER = logging.getLogger("rental_manager.api")


def _http_error(exc: RentalEngineError) -> HTTPException:
    status_code = next((code for error_cls, code in STATUS_CODES.items() if isinstance(exc, error_cls)), 400)
    if status_code == 409:
        API_LOGGER.warning("Request refused status=%s error=%s detail=%s", status_code, exc.code, exc)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _actor(x_actor: str | None) -> str:
    return (x_actor or "").strip() or DEFAULT_ACTOR


def _load_order(db: Session, order_id: int) -> Order:
    stmt = (
        select(Order)
        .options(selectinload(Order.Lines).selectinload(OrderLine.Item))
        .where(Order.OrderID == order_id)
    )
    order = db.execute(stmt).scalars().first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/items")
def get_items(db: Session = Depends(get_rental_db)):
    stmt = select(Item).options(selectinload(Item.PriceTiers), selectinload(Item.Components)).order_by(Item.Sku)
    return [serialize_item(item) for item in db.execute(stmt).scalars().all()]


@app.post("/api/items")
def create_item_route(
    payload: CreateItemDto,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        item = create_item(
            db,
            payload.sku,
            payload.name,
            payload.kind,
            price_tiers=payload.priceTiers,
            description=payload.description,
            actor=_actor(x_actor),
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_item(item)


@app.get("/api/items/{item_id}")
def get_item_route(item_id: int, db: Session = Depends(get_rental_db)):
    try:
        return serialize_item(get_item(db, item_id))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.put("/api/items/{item_id}/prices/{tier}")
def set_price_tier_route(
    item_id: int,
    tier: str,
    payload: PriceTierUpsert,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        set_price_tier(db, item_id, tier, payload.amount, actor=_actor(x_actor))
        return serialize_item(get_item(db, item_id))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/items/{item_id}/components")
def get_components(item_id: int, db: Session = Depends(get_rental_db)):
    try:
        resolved = resolve_components(db, item_id)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return {
        "itemID": item_id,
        "components": [{"itemID": atomic_id, "multiplier": multiplier} for atomic_id, multiplier in resolved],
    }


@app.post("/api/items/{item_id}/components")
def add_component_route(
    item_id: int,
    payload: ComponentUpsert,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        add_component(db, item_id, payload.childItemID, payload.quantity, actor=_actor(x_actor))
        return serialize_item(get_item(db, item_id))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.put("/api/items/{item_id}/components/{child_id}")
def update_component_route(
    item_id: int,
    child_id: int,
    payload: ComponentQuantityUpdate,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        update_component_quantity(db, item_id, child_id, payload.quantity, actor=_actor(x_actor))
        return serialize_item(get_item(db, item_id))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/items/{item_id}/components/{child_id}")
def remove_component_route(
    item_id: int,
    child_id: int,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        remove_component(db, item_id, child_id, actor=_actor(x_actor))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return {"message": "Component removed"}


@app.get("/api/items/{item_id}/availability")
def get_availability_route(
    item_id: int,
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    exclude_order_id: int | None = Query(None, alias="excludeOrderID"),
    include_conflicts: bool = Query(False, alias="includeConflicts"),
    db: Session = Depends(get_rental_db),
):
    try:
        payload = get_availability(db, item_id, start_date, end_date, exclude_order_id)
        if include_conflicts:
            payload["conflicts"] = conflicting_orders(db, item_id, start_date, end_date, exclude_order_id)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return payload


@app.get("/api/items/{item_id}/stock")
def get_stock(item_id: int, db: Session = Depends(get_rental_db)):
    try:
        return stock_summary(db, item_id)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/items/{item_id}/stock/movements")
def get_stock_movements(
    item_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_rental_db),
):
    try:
        return [serialize_movement(row) for row in movement_history(db, item_id, limit)]
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/items/{item_id}/stock/adjust")
def adjust_stock_route(
    item_id: int,
    payload: StockAdjustmentRequest,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        movement = adjust_stock(db, item_id, payload.delta, payload.reason, payload.notes, _actor(x_actor))
        return {"movement": serialize_movement(movement), "stock": stock_summary(db, item_id)}
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/items/{item_id}/stock/set")
def set_stock_route(
    item_id: int,
    payload: StockSetRequest,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        movement = set_stock(db, item_id, payload.quantity, payload.notes, _actor(x_actor))
        return {"movement": serialize_movement(movement), "stock": stock_summary(db, item_id)}
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/orders")
def get_orders(
    status: str | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    stmt = (
        select(Order)
        .options(selectinload(Order.Lines).selectinload(OrderLine.Item))
        .order_by(Order.CreatedDate.desc(), Order.OrderID.desc())
    )
    if status:
        try:
            stmt = stmt.where(Order.Status == OrderStatus(status))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown order status: {status}") from exc
    return [serialize_order(order) for order in db.execute(stmt).scalars().all()]


@app.post("/api/orders")
def create_order_route(
    payload: CreateOrderDto,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        order = create_order(
            db,
            payload.customerID,
            payload.salesPersonID,
            payload.startDate,
            payload.returnDueDate,
            setup_start=payload.setupStart,
            order_start=payload.orderStart,
            order_end=payload.orderEnd,
            cleanup_end=payload.cleanupEnd,
            discount_amount=payload.discountAmount,
            tax_amount=payload.taxAmount,
            rebate_percent=payload.rebatePercent,
            notes=payload.notes,
            actor=_actor(x_actor),
            lines=[(line.itemID, line.quantity) for line in payload.lines],
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_order(order)


@app.get("/api/orders/{order_id}")
def get_order_route(order_id: int, db: Session = Depends(get_rental_db)):
    return serialize_order(_load_order(db, order_id))


@app.put("/api/orders/{order_id}/pricing")
def update_order_pricing_route(
    order_id: int,
    payload: OrderPricingUpdate,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        order = update_order_pricing(
            db,
            order_id,
            discount_amount=payload.discountAmount,
            tax_amount=payload.taxAmount,
            rebate_percent=payload.rebatePercent,
            actor=_actor(x_actor),
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_order(order)


@app.post("/api/orders/{order_id}/recalculate")
def recalculate_order_route(
    order_id: int,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        order = recalculate_order(db, order_id, actor=_actor(x_actor))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_order(order)


@app.post("/api/orders/{order_id}/lines")
def add_line_route(
    order_id: int,
    payload: CreateOrderLineDto,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        line = add_line(db, order_id, payload.itemID, payload.quantity, actor=_actor(x_actor))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_line(line)


@app.put("/api/orders/{order_id}/lines/{line_id}")
def edit_line_route(
    order_id: int,
    line_id: int,
    payload: EditOrderLineDto,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        line = edit_line(
            db,
            order_id,
            line_id,
            quantity=payload.quantity,
            price_per_day=payload.pricePerDay,
            price_per_hour=payload.pricePerHour,
            actor=_actor(x_actor),
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_line(line)


@app.delete("/api/orders/{order_id}/lines/{line_id}")
def remove_line_route(
    order_id: int,
    line_id: int,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        remove_line(db, order_id, line_id, actor=_actor(x_actor))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return {"message": "Line removed"}


def _run_transition(db: Session, order_id: int, target: OrderStatus, x_actor: str | None) -> dict:
    try:
        order = TRANSITION_HANDLERS[target](db, order_id, actor=_actor(x_actor))
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return serialize_order(order)


@app.post("/api/orders/{order_id}/reserve")
def reserve_order(order_id: int, db: Session = Depends(get_rental_db), x_actor: str | None = Header(None, alias="X-Actor")):
    return _run_transition(db, order_id, OrderStatus.RESERVED, x_actor)


@app.post("/api/orders/{order_id}/checkout")
def checkout_order(order_id: int, db: Session = Depends(get_rental_db), x_actor: str | None = Header(None, alias="X-Actor")):
    return _run_transition(db, order_id, OrderStatus.CHECKED_OUT, x_actor)


@app.post("/api/orders/{order_id}/return")
def return_order_route(order_id: int, db: Session = Depends(get_rental_db), x_actor: str | None = Header(None, alias="X-Actor")):
    return _run_transition(db, order_id, OrderStatus.RETURNED, x_actor)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: int, db: Session = Depends(get_rental_db), x_actor: str | None = Header(None, alias="X-Actor")):
    return _run_transition(db, order_id, OrderStatus.CANCELLED, x_actor)


@app.post("/api/orders/{order_id}/transition")
def transition_order(
    order_id: int,
    payload: OrderTransitionRequest,
    db: Session = Depends(get_rental_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        target = OrderStatus(payload.targetStatus)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown order status: {payload.targetStatus}") from exc
    if target not in TRANSITION_HANDLERS:
        try:
            current = get_order(db, order_id).Status
        except RentalEngineError as lookup_exc:
            raise _http_error(lookup_exc) from lookup_exc
        raise _http_error(InvalidStateTransition(OrderStatus(current).value, target.value))
    return _run_transition(db, order_id, target, x_actor)


@app.get("/api/orders/{order_id}/transitions")
def get_order_transitions(order_id: int, db: Session = Depends(get_rental_db)):
    try:
        return get_valid_transitions(db, order_id)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/api/orders/{order_id}/history")
def get_order_history(order_id: int, db: Session = Depends(get_rental_db)):
    try:
        return {
            "orderID": order_id,
            "statusHistory": get_status_history(db, order_id),
            "auditTrail": [serialize_audit_entry(row) for row in get_audit_trail(db, "Order", order_id)],
        }
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
