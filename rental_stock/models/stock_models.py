from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_stock.db.base import Base


class EquipmentLine(Base):
    __tablename__ = "Equipment"
    __table_args__ = (
        CheckConstraint("TotalStock >= 0", name="ck_equipment_total_stock_non_negative"),
    )

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    InventoryNumber = Column(String(100), nullable=False, unique=True)
    CategoryID = Column(Integer)
    WarehouseID = Column(Integer)
    TotalStock = Column(Integer, nullable=False, default=0)
    DailyRate = Column(Numeric(10, 2))
    Status = Column(String(20), nullable=False, default="available")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("RentalItem", back_populates="Equipment")
    Sales = relationship("Sale", back_populates="Equipment")
    WriteOffs = relationship("WriteOff", back_populates="Equipment")


class Order(Base):
    __tablename__ = "Orders"

    OrderID = Column(Integer, primary_key=True)
    OrderNumber = Column(String(50), nullable=False, unique=True)
    CustomerID = Column(Integer)
    Status = Column(String(20), nullable=False, default="created")
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("RentalItem", back_populates="Order")


class RentalItem(Base):
    __tablename__ = "Rentals"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_rentals_quantity_positive"),
        Index("ix_rentals_equipment_status", "EquipmentID", "Status"),
        Index("ix_rentals_batch", "BatchID"),
    )

    RentalID = Column(Integer, primary_key=True)
    OrderID = Column(Integer, ForeignKey("Orders.OrderID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    Quantity = Column(Integer, nullable=False)
    IssueDate = Column(Date, nullable=False)
    PlannedReturnDate = Column(Date, nullable=False)
    ActualReturnDate = Column(Date)
    DailyRate = Column(Numeric(10, 2))
    Status = Column(String(20), nullable=False, default="created")
    BatchID = Column(String(64))
    Note = Column(String(1000))
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Order = relationship("Order", back_populates="Rentals")
    Equipment = relationship("EquipmentLine", back_populates="Rentals")
    Returns = relationship("ReturnRecord", back_populates="Rental", order_by="ReturnRecord.ReturnID")


class ReturnRecord(Base):
    __tablename__ = "Returns"
    __table_args__ = (
        CheckConstraint("ReturnQuantity >= 1", name="ck_returns_quantity_positive"),
        Index("ix_returns_batch", "BatchID"),
    )

    ReturnID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    ReturnQuantity = Column(Integer, nullable=False)
    ActualReturnDate = Column(Date, nullable=False)
    Condition = Column(String(20), nullable=False, default="ok")
    DamageDescription = Column(String(1000))
    AdditionalCharges = Column(Numeric(10, 2), default=0)
    BatchID = Column(String(64))
    Notes = Column(String(1000))
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())

    Rental = relationship("RentalItem", back_populates="Returns")


class Sale(Base):
    __tablename__ = "Sales"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_sales_quantity_positive"),
        Index("ix_sales_equipment_status", "EquipmentID", "Status"),
    )

    SaleID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    CustomerID = Column(Integer)
    InvoiceNumber = Column(String(50))
    Quantity = Column(Integer, nullable=False)
    UnitPrice = Column(Numeric(10, 2), nullable=False)
    TotalAmount = Column(Numeric(12, 2))
    Status = Column(String(20), nullable=False, default="pending")
    Notes = Column(String(1000))
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("EquipmentLine", back_populates="Sales")


class WriteOff(Base):
    __tablename__ = "WriteOffs"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_write_offs_quantity_positive"),
        Index("ix_write_offs_equipment_status", "EquipmentID", "Status"),
    )

    WriteOffID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    Quantity = Column(Integer, nullable=False)
    ValuePerUnit = Column(Numeric(10, 2))
    TotalValue = Column(Numeric(12, 2))
    Reason = Column(String(500), nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    Notes = Column(String(1000))
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("EquipmentLine", back_populates="WriteOffs")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class InventoryCheck(Base):
    __tablename__ = "InventoryChecks"
    __table_args__ = (
        Index("ix_inventory_checks_warehouse_status", "WarehouseID", "Status"),
    )

    InventoryCheckID = Column(Integer, primary_key=True)
    WarehouseID = Column(Integer)
    CheckDate = Column(Date, nullable=False)
    Status = Column(String(20), nullable=False, default="in_progress")
    Notes = Column(String(1000))
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    CompletedDate = Column(DateTime)

    Items = relationship(
        "InventoryCheckItem",
        back_populates="Check",
        order_by="InventoryCheckItem.ItemID",
        cascade="all, delete-orphan",
    )


class InventoryCheckItem(Base):
    __tablename__ = "InventoryCheckItems"
    __table_args__ = (
        CheckConstraint("ExpectedQuantity >= 0", name="ck_inventory_items_expected_non_negative"),
        CheckConstraint("ActualQuantity IS NULL OR ActualQuantity >= 0", name="ck_inventory_items_actual_non_negative"),
    )

    ItemID = Column(Integer, primary_key=True)
    InventoryCheckID = Column(Integer, ForeignKey("InventoryChecks.InventoryCheckID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    ExpectedQuantity = Column(Integer, nullable=False)
    ActualQuantity = Column(Integer)
    Notes = Column(String(1000))
    UpdatedDate = Column(DateTime, server_default=func.now())

    Check = relationship("InventoryCheck", back_populates="Items")
    Equipment = relationship("EquipmentLine")
