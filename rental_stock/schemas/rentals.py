from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateOrderDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orderNumber: Optional[str] = None
    customerID: Optional[int] = None
    notes: Optional[str] = None


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orderID: int
    equipmentID: int
    quantity: int = 1
    issueDate: date
    plannedReturnDate: date
    dailyRate: Optional[float] = None
    batchID: Optional[str] = None
    status: Optional[Literal["created", "issued"]] = "created"
    note: Optional[str] = None


class RentalLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = 1
    dailyRate: Optional[float] = None
    note: Optional[str] = None


class CreateRentalBatchDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orderID: int
    issueDate: date
    plannedReturnDate: date
    batchID: Optional[str] = None
    status: Optional[Literal["created", "issued"]] = "created"
    items: List[RentalLineDto] = Field(default_factory=list)


class ReturnRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnQuantity: int
    condition: str = "ok"
    actualReturnDate: Optional[date] = None
    damageDescription: Optional[str] = None
    additionalCharges: Optional[float] = None
    batchID: Optional[str] = None
    notes: Optional[str] = None


class ReturnLineDto(ReturnRequestDto):
    rentalID: int


class ReturnBatchDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    batchID: Optional[str] = None
    items: List[ReturnLineDto] = Field(default_factory=list)
