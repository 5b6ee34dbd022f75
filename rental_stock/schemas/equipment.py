from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class EquipmentCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    inventoryNumber: Optional[str] = None
    categoryID: Optional[int] = None
    warehouseID: Optional[int] = None
    totalStock: int = 0
    dailyRate: Optional[float] = None


class EquipmentStatusDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["available", "maintenance", "retired"]


class StockAdjustmentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    delta: int
    reason: Optional[str] = None
