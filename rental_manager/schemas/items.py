from decimal import Decimal
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sku: str
    name: str
    kind: Literal["Atomic", "Composite", "Service"]
    description: Optional[str] = None
    priceTiers: Dict[str, Decimal] = {}


class PriceTierUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal


class ComponentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    childItemID: int
    quantity: int = 1


class ComponentQuantityUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: int
