from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateInventoryCheckDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    warehouseID: Optional[int] = None
    checkDate: Optional[date] = None
    notes: Optional[str] = None


class InventoryCountDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    actualQuantity: int
    notes: Optional[str] = None


class CompleteInventoryCheckDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    adjustStock: bool = True
