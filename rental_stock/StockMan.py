import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from rental_stock.db.base import Base
from rental_stock.db.deps import get_stock_db
from rental_stock.db.session import engine_stock
from rental_stock.schemas.disposals import CreateSaleDto, CreateWriteOffDto
from rental_stock.schemas.equipment import EquipmentCreateDto, EquipmentStatusDto, StockAdjustmentDto
from rental_stock.schemas.inventory import CompleteInventoryCheckDto, CreateInventoryCheckDto, InventoryCountDto
from rental_stock.schemas.rentals import (
    CreateOrderDto,
    CreateRentalBatchDto,
    CreateRentalDto,
    ReturnBatchDto,
    ReturnRequestDto,
)
from rental_stock.services.allocation_service import with_retry
from rental_stock.services.batch_service import delivery_note, items_for_batch
from rental_stock.services.disposal_service import (
    cancel_sale,
    cancel_write_off,
    confirm_sale,
    confirm_write_off,
    create_sale,
    create_write_off,
    get_sale_or_404,
    get_write_off_or_404,
    serialize_sale,
    serialize_write_off,
)
from rental_stock.services.equipment_service import (
    adjust_stock,
    create_equipment,
    create_order,
    get_equipment_or_404,
    get_order_or_404,
    list_equipment,
    serialize_equipment,
    serialize_order,
    set_equipment_status,
)
from rental_stock.services.inventory_service import (
    cancel_inventory_check,
    complete_inventory_check,
    create_inventory_check,
    get_inventory_check_or_404,
    record_count,
    serialize_inventory_check,
)
from rental_stock.services.errors import StockError
from rental_stock.services.rental_service import (
    RentalLine,
    ReturnLine,
    create_rental,
    create_rental_batch,
    get_rental_or_404,
    issue_rental,
    list_rentals_for_order,
    list_returns_for_order,
    return_rental,
    return_rental_batch,
    serialize_rental,
    serialize_return,
)
from rental_stock.services.stock_ledger import snapshot_for_line, stock_snapshot

API_LOGGER = logging.getLogger("rental_stock.api")
ADMIN_ROLES = {"admin"}


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _env_flag("RENTAL_STOCK_CREATE_SCHEMA", "true"):
        Base.metadata.create_all(bind=engine_stock)
        API_LOGGER.info("Stock schema ensured.")
    yield


app = FastAPI(title="Rental Stock API", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(StockError)
async def stock_error_handler(request: Request, exc: StockError):
    API_LOGGER.warning(
        "%s %s rejected: %s (%s)",
        request.method,
        request.url.path,
        exc.message,
        exc.code,
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()), headers=headers)


def _require_admin_actor(x_actor_id: str | None, x_actor_role: str | None) -> int:
    raw = str(x_actor_id or "").strip()
    if not raw:
        raise HTTPException(status_code=401, detail="Not logged in.")
    if not raw.isdigit() or int(raw) <= 0:
        raise HTTPException(status_code=401, detail="Invalid actor.")
    if str(x_actor_role or "").strip().lower() not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return int(raw)


def admin_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> int:
    return _require_admin_actor(x_actor_id, x_actor_role)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_stock_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment(
    status: str | None = Query(None),
    warehouse_id: int | None = Query(None, alias="warehouseID"),
    db: Session = Depends(get_stock_db),
):
    lines = list_equipment(db, status=status, warehouse_id=warehouse_id)
    return [serialize_equipment(line, snapshot_for_line(db, line)) for line in lines]


@app.post("/api/equipment")
def post_equipment(payload: EquipmentCreateDto, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    line = create_equipment(
        db,
        name=payload.name,
        total_stock=payload.totalStock,
        daily_rate=payload.dailyRate,
        inventory_number=payload.inventoryNumber,
        category_id=payload.categoryID,
        warehouse_id=payload.warehouseID,
        actor_user_id=actor_id,
    )
    API_LOGGER.info("Equipment %s created by %s", line.EquipmentID, actor_id)
    return serialize_equipment(line, snapshot_for_line(db, line))


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_stock_db)):
    line = get_equipment_or_404(db, equipment_id)
    return serialize_equipment(line, snapshot_for_line(db, line))


@app.put("/api/equipment/{equipment_id}/status")
def put_equipment_status(
    equipment_id: int,
    payload: EquipmentStatusDto,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    line = with_retry(lambda: set_equipment_status(db, equipment_id, payload.status, actor_user_id=actor_id))
    return serialize_equipment(line, snapshot_for_line(db, line))


@app.post("/api/equipment/{equipment_id}/stock-adjustment")
def post_stock_adjustment(
    equipment_id: int,
    payload: StockAdjustmentDto,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    snapshot = with_retry(
        lambda: adjust_stock(db, equipment_id, payload.delta, reason=payload.reason, actor_user_id=actor_id)
    )
    return snapshot.to_dict()


@app.get("/api/equipment/{equipment_id}/availability")
def get_availability(equipment_id: int, db: Session = Depends(get_stock_db)):
    return stock_snapshot(db, equipment_id).to_dict()


@app.post("/api/orders")
def post_order(payload: CreateOrderDto, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    order = create_order(
        db,
        order_number=payload.orderNumber,
        customer_id=payload.customerID,
        notes=payload.notes,
        actor_user_id=actor_id,
    )
    return serialize_order(order)


@app.get("/api/orders/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_stock_db)):
    return serialize_order(get_order_or_404(db, order_id))


@app.get("/api/orders/{order_id}/rentals")
def get_order_rentals(order_id: int, db: Session = Depends(get_stock_db)):
    return [serialize_rental(db, rental) for rental in list_rentals_for_order(db, order_id)]


@app.get("/api/orders/{order_id}/returns")
def get_order_returns(order_id: int, db: Session = Depends(get_stock_db)):
    return [serialize_return(record) for record in list_returns_for_order(db, order_id)]


@app.post("/api/rentals")
def post_rental(payload: CreateRentalDto, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    rental = with_retry(
        lambda: create_rental(
            db,
            order_id=payload.orderID,
            equipment_id=payload.equipmentID,
            quantity=payload.quantity,
            issue_date=payload.issueDate,
            planned_return_date=payload.plannedReturnDate,
            daily_rate=payload.dailyRate,
            batch_id=payload.batchID,
            status=payload.status,
            note=payload.note,
            actor_user_id=actor_id,
        )
    )
    return serialize_rental(db, rental)


@app.post("/api/rentals/batch")
def post_rental_batch(
    payload: CreateRentalBatchDto,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    lines = [
        RentalLine(equipment_id=item.equipmentID, quantity=item.quantity, daily_rate=item.dailyRate, note=item.note)
        for item in payload.items
    ]
    batch_id, rentals = with_retry(
        lambda: create_rental_batch(
            db,
            order_id=payload.orderID,
            lines=lines,
            issue_date=payload.issueDate,
            planned_return_date=payload.plannedReturnDate,
            batch_id=payload.batchID,
            status=payload.status,
            actor_user_id=actor_id,
        )
    )
    return {"batchID": batch_id, "rentals": [serialize_rental(db, rental) for rental in rentals]}


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: int, db: Session = Depends(get_stock_db)):
    return serialize_rental(db, get_rental_or_404(db, rental_id))


@app.post("/api/rentals/{rental_id}/issue")
def post_issue_rental(rental_id: int, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    rental = with_retry(lambda: issue_rental(db, rental_id, actor_user_id=actor_id))
    return serialize_rental(db, rental)


@app.post("/api/rentals/{rental_id}/return")
def post_return_rental(
    rental_id: int,
    payload: ReturnRequestDto,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    record = with_retry(
        lambda: return_rental(
            db,
            rental_id,
            payload.returnQuantity,
            condition=payload.condition,
            actual_return_date=payload.actualReturnDate,
            damage_description=payload.damageDescription,
            additional_charges=payload.additionalCharges,
            batch_id=payload.batchID,
            notes=payload.notes,
            actor_user_id=actor_id,
        )
    )
    rental = get_rental_or_404(db, rental_id)
    return {"return": serialize_return(record), "rental": serialize_rental(db, rental)}


@app.post("/api/returns/batch")
def post_return_batch(payload: ReturnBatchDto, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    lines = [
        ReturnLine(
            rental_id=item.rentalID,
            return_quantity=item.returnQuantity,
            condition=item.condition,
            actual_return_date=item.actualReturnDate,
            damage_description=item.damageDescription,
            additional_charges=item.additionalCharges,
            notes=item.notes,
        )
        for item in payload.items
    ]
    batch_id, records = with_retry(
        lambda: return_rental_batch(db, lines, batch_id=payload.batchID, actor_user_id=actor_id)
    )
    return {"batchID": batch_id, "returns": [serialize_return(record) for record in records]}


@app.get("/api/batches/{batch_id}")
def get_batch(batch_id: str, db: Session = Depends(get_stock_db)):
    batch = items_for_batch(db, batch_id)
    if batch.kind == "issue":
        items = [serialize_rental(db, item) for item in batch.items]
    else:
        items = [serialize_return(item) for item in batch.items]
    return {"batchID": batch.batch_id, "kind": batch.kind, "items": items}


@app.get("/api/batches/{batch_id}/delivery-note")
def get_batch_delivery_note(batch_id: str, db: Session = Depends(get_stock_db)):
    return delivery_note(db, batch_id)


@app.post("/api/sales")
def post_sale(payload: CreateSaleDto, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    sale = with_retry(
        lambda: create_sale(
            db,
            payload.equipmentID,
            payload.quantity,
            payload.unitPrice,
            customer_id=payload.customerID,
            invoice_number=payload.invoiceNumber,
            notes=payload.notes,
            actor_user_id=actor_id,
        )
    )
    return serialize_sale(sale)


@app.get("/api/sales/{sale_id}")
def get_sale(sale_id: int, db: Session = Depends(get_stock_db)):
    return serialize_sale(get_sale_or_404(db, sale_id))


@app.post("/api/sales/{sale_id}/confirm")
def post_confirm_sale(sale_id: int, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    return serialize_sale(with_retry(lambda: confirm_sale(db, sale_id, actor_user_id=actor_id)))


@app.post("/api/sales/{sale_id}/cancel")
def post_cancel_sale(sale_id: int, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    return serialize_sale(with_retry(lambda: cancel_sale(db, sale_id, actor_user_id=actor_id)))


@app.post("/api/write-offs")
def post_write_off(payload: CreateWriteOffDto, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    write_off = with_retry(
        lambda: create_write_off(
            db,
            payload.equipmentID,
            payload.quantity,
            payload.reason,
            value_per_unit=payload.valuePerUnit,
            notes=payload.notes,
            actor_user_id=actor_id,
        )
    )
    return serialize_write_off(write_off)


@app.get("/api/write-offs/{write_off_id}")
def get_write_off(write_off_id: int, db: Session = Depends(get_stock_db)):
    return serialize_write_off(get_write_off_or_404(db, write_off_id))


@app.post("/api/write-offs/{write_off_id}/confirm")
def post_confirm_write_off(write_off_id: int, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    return serialize_write_off(with_retry(lambda: confirm_write_off(db, write_off_id, actor_user_id=actor_id)))


@app.post("/api/write-offs/{write_off_id}/cancel")
def post_cancel_write_off(write_off_id: int, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    return serialize_write_off(with_retry(lambda: cancel_write_off(db, write_off_id, actor_user_id=actor_id)))


@app.post("/api/inventory-checks")
def post_inventory_check(
    payload: CreateInventoryCheckDto,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    check = create_inventory_check(
        db,
        warehouse_id=payload.warehouseID,
        check_date=payload.checkDate,
        notes=payload.notes,
        actor_user_id=actor_id,
    )
    return serialize_inventory_check(check)


@app.get("/api/inventory-checks/{check_id}")
def get_inventory_check(check_id: int, db: Session = Depends(get_stock_db)):
    return serialize_inventory_check(get_inventory_check_or_404(db, check_id))


@app.put("/api/inventory-checks/{check_id}/items/{item_id}")
def put_inventory_count(
    check_id: int,
    item_id: int,
    payload: InventoryCountDto,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    record_count(db, check_id, item_id, payload.actualQuantity, notes=payload.notes)
    return serialize_inventory_check(get_inventory_check_or_404(db, check_id))


@app.post("/api/inventory-checks/{check_id}/complete")
def post_complete_inventory_check(
    check_id: int,
    payload: CompleteInventoryCheckDto | None = None,
    db: Session = Depends(get_stock_db),
    actor_id: int = Depends(admin_actor),
):
    adjust = payload.adjustStock if payload else True
    check = with_retry(lambda: complete_inventory_check(db, check_id, adjust_stock=adjust, actor_user_id=actor_id))
    return serialize_inventory_check(check)


@app.post("/api/inventory-checks/{check_id}/cancel")
def post_cancel_inventory_check(check_id: int, db: Session = Depends(get_stock_db), actor_id: int = Depends(admin_actor)):
    return serialize_inventory_check(cancel_inventory_check(db, check_id, actor_user_id=actor_id))
