import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_manager.models.rental_models import (
    Item,
    ItemComponent,
    ItemKind,
    ItemPriceTier,
    MovementReason,
    Order,
    OrderStatus,
    PriceTier,
    StockMovement,
    create_schema,
)

WEEK_START = datetime(2024, 3, 4, 9, 0)


def build_test_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    create_schema(engine)
    return engine


def build_test_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def days(count: int) -> timedelta:
    return timedelta(days=count)


class EngineTestCase(unittest.TestCase):
    """Fresh in-memory database per test with small factories for catalog rows."""

    def setUp(self):
        self.engine = build_test_engine()
        self.SessionLocal = build_test_session_factory(self.engine)
        self.db = self.SessionLocal()
        self._sku_counter = 0

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _next_sku(self, prefix: str) -> str:
        self._sku_counter += 1
        return f"{prefix}-{self._sku_counter:03d}"

    def revision_of(self, item: Item) -> int:
        return self.db.execute(select(Item.Revision).where(Item.ItemID == item.ItemID)).scalar_one()

    def make_item(self, kind: ItemKind, tiers: dict | None = None, sku: str | None = None) -> Item:
        item = Item(
            Sku=sku or self._next_sku(kind.value.upper()),
            Name=f"{kind.value} item",
            Kind=kind,
            Revision=0,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        for tier, amount in (tiers or {}).items():
            item.PriceTiers.append(ItemPriceTier(Tier=tier, Amount=Decimal(str(amount))))
        self.db.add(item)
        self.db.commit()
        return item

    def make_atomic(self, stock: int = 0, daily="10.00", start=None, sku: str | None = None) -> Item:
        tiers = {PriceTier.DAILY: daily}
        if start is not None:
            tiers[PriceTier.START] = start
        item = self.make_item(ItemKind.ATOMIC, tiers, sku=sku)
        if stock:
            self.seed_stock(item, stock)
        return item

    def make_composite(self, components: list[tuple[Item, int]], daily="50.00", start=None) -> Item:
        tiers = {PriceTier.DAILY: daily}
        if start is not None:
            tiers[PriceTier.START] = start
        item = self.make_item(ItemKind.COMPOSITE, tiers)
        for position, (child, quantity) in enumerate(components):
            item.Components.append(ItemComponent(ChildItemID=child.ItemID, Quantity=quantity, Position=position))
        self.db.commit()
        return item

    def make_service(self, hourly="40.00") -> Item:
        return self.make_item(ItemKind.SERVICE, {PriceTier.HOURLY: hourly})

    def seed_stock(self, item: Item, quantity: int) -> None:
        self.db.add(
            StockMovement(
                ItemID=item.ItemID,
                Delta=quantity,
                Reason=MovementReason.FOUND,
                Notes="initial count",
                CreatedBy="seed",
                CreatedAt=datetime.now(),
            )
        )
        self.db.commit()

    def make_order(self, start: datetime = WEEK_START, length_days: int = 3, status=OrderStatus.DRAFT, **fields) -> Order:
        order = Order(
            CustomerID=fields.pop("CustomerID", 1),
            SalesPersonID=fields.pop("SalesPersonID", 7),
            Status=status,
            StartDate=start,
            ReturnDueDate=start + days(length_days),
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
            **fields,
        )
        self.db.add(order)
        self.db.commit()
        return order
