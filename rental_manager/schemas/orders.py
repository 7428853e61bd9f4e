from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateOrderLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1


class CreateOrderDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: int
    salesPersonID: int
    startDate: datetime
    returnDueDate: datetime
    setupStart: Optional[datetime] = None
    orderStart: Optional[datetime] = None
    orderEnd: Optional[datetime] = None
    cleanupEnd: Optional[datetime] = None
    discountAmount: Decimal = Decimal("0")
    taxAmount: Decimal = Decimal("0")
    rebatePercent: Decimal = Decimal("0")
    notes: Optional[str] = None
    lines: List[CreateOrderLineDto] = []


class EditOrderLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: Optional[int] = None
    pricePerDay: Optional[Decimal] = None
    pricePerHour: Optional[Decimal] = None


class OrderPricingUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    discountAmount: Optional[Decimal] = None
    taxAmount: Optional[Decimal] = None
    rebatePercent: Optional[Decimal] = None


class OrderTransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targetStatus: str
