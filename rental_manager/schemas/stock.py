from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class StockAdjustmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    delta: int
    reason: Literal["Adjustment", "Repair", "Loss", "Found"] = "Adjustment"
    notes: Optional[str] = None


class StockSetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: int
    notes: Optional[str] = None
