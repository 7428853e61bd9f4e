import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_manager.db.base import Base


class ItemKind(str, enum.Enum):
    ATOMIC = "Atomic"
    COMPOSITE = "Composite"
    SERVICE = "Service"


class PriceTier(str, enum.Enum):
    START = "Start"
    DAILY = "Daily"
    HOURLY = "Hourly"


class MovementReason(str, enum.Enum):
    ADJUSTMENT = "Adjustment"
    REPAIR = "Repair"
    LOSS = "Loss"
    FOUND = "Found"
    CHECKOUT = "Checkout"
    RETURN = "Return"


class OrderStatus(str, enum.Enum):
    DRAFT = "Draft"
    RESERVED = "Reserved"
    CHECKED_OUT = "CheckedOut"
    RETURNED = "Returned"
    CANCELLED = "Cancelled"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _enum_column(enum_cls, **kwargs) -> Column:
    return Column(
        Enum(enum_cls, native_enum=False, length=20, values_callable=_enum_values),
        **kwargs,
    )


class Item(Base):
    __tablename__ = "Items"

    ItemID = Column(Integer, primary_key=True)
    Sku = Column(String(100), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    Kind = _enum_column(ItemKind, nullable=False)
    Description = Column(String(1000))
    Revision = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    PriceTiers = relationship("ItemPriceTier", back_populates="Item", cascade="all, delete-orphan")
    Components = relationship(
        "ItemComponent",
        foreign_keys="ItemComponent.ParentItemID",
        back_populates="Parent",
        cascade="all, delete-orphan",
        order_by="ItemComponent.Position",
    )
    StockMovements = relationship("StockMovement", back_populates="Item")


class ItemPriceTier(Base):
    __tablename__ = "ItemPriceTiers"
    __table_args__ = (UniqueConstraint("ItemID", "Tier", name="UQ_ItemPriceTiers_ItemTier"),)

    PriceTierID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    Tier = _enum_column(PriceTier, nullable=False)
    Amount = Column(Numeric(10, 2), nullable=False)

    Item = relationship("Item", back_populates="PriceTiers")


class ItemComponent(Base):
    __tablename__ = "ItemComponents"
    __table_args__ = (UniqueConstraint("ParentItemID", "ChildItemID", name="UQ_ItemComponents_Edge"),)

    ComponentID = Column(Integer, primary_key=True)
    ParentItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    ChildItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    Position = Column(Integer, nullable=False, default=0)

    Parent = relationship("Item", foreign_keys=[ParentItemID], back_populates="Components")
    Child = relationship("Item", foreign_keys=[ChildItemID])


class StockMovement(Base):
    __tablename__ = "StockMovements"

    MovementID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False, index=True)
    OrderID = Column(Integer, ForeignKey("Orders.OrderID"), index=True)
    Delta = Column(Integer, nullable=False)
    Reason = _enum_column(MovementReason, nullable=False)
    Notes = Column(String(1000))
    CreatedBy = Column(String(255), nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="StockMovements")


class Order(Base):
    __tablename__ = "Orders"

    OrderID = Column(Integer, primary_key=True)
    CustomerID = Column(Integer, nullable=False)
    SalesPersonID = Column(Integer, nullable=False)
    Status = _enum_column(OrderStatus, nullable=False, default=OrderStatus.DRAFT)
    StartDate = Column(DateTime, nullable=False)
    ReturnDueDate = Column(DateTime, nullable=False)
    SetupStart = Column(DateTime)
    OrderStart = Column(DateTime)
    OrderEnd = Column(DateTime)
    CleanupEnd = Column(DateTime)
    DiscountAmount = Column(Numeric(10, 2), default=0)
    TaxAmount = Column(Numeric(10, 2), default=0)
    RebatePercent = Column(Numeric(5, 2), default=0)
    TotalCost = Column(Numeric(12, 2), default=0)
    Notes = Column(String(1000))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Lines = relationship(
        "OrderLine",
        back_populates="Order",
        cascade="all, delete-orphan",
        order_by="OrderLine.OrderLineID",
    )

    __mapper_args__ = {"version_id_col": Version}


class OrderLine(Base):
    __tablename__ = "OrderLines"

    OrderLineID = Column(Integer, primary_key=True)
    OrderID = Column(Integer, ForeignKey("Orders.OrderID"), nullable=False, index=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    PricePerDay = Column(Numeric(10, 2))
    StartFee = Column(Numeric(10, 2))
    RentalDays = Column(Integer)
    PricePerHour = Column(Numeric(10, 2))
    Hours = Column(Numeric(8, 2))
    LineTotal = Column(Numeric(12, 2))

    Order = relationship("Order", back_populates="Lines")
    Item = relationship("Item")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())


def create_schema(bind) -> None:
    Base.metadata.create_all(bind)
