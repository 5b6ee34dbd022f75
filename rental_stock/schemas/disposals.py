from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateSaleDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = 1
    unitPrice: float
    customerID: Optional[int] = None
    invoiceNumber: Optional[str] = None
    notes: Optional[str] = None


class CreateWriteOffDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = 1
    reason: str
    valuePerUnit: Optional[float] = None
    notes: Optional[str] = None
