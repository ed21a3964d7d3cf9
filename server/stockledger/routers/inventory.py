from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session, selectinload

from stockledger.auth import get_current_user_id
from stockledger.db import get_db
from stockledger.errors import InventoryError
from stockledger.inventory import queries, register, schemas
from stockledger.inventory.ledger import MovementFilters
from stockledger.inventory.notifications import LowStockNotifier, default_notifier
from stockledger.inventory.service import (
    adjust_stock,
    compensate_movement,
    create_inventory_record,
    release_reserved_stock,
    reserve_stock,
    transfer_stock,
    update_stock_levels,
)
from stockledger.models import Inventory


router = APIRouter(prefix="/api/inventory", tags=["inventory"], dependencies=[Depends(get_current_user_id)])


def get_low_stock_notifier() -> LowStockNotifier:
    return default_notifier


def _http_error(exc: InventoryError) -> HTTPException:
    headers = {"Retry-After": "1"} if exc.retryable else None
    return HTTPException(status_code=exc.status_code, detail=str(exc), headers=headers)


def _record_response(record: Inventory) -> schemas.InventoryRecordResponse:
    return schemas.InventoryRecordResponse(
        id=record.id,
        product_id=record.product_id,
        product_name=record.product.name if record.product else None,
        product_sku=record.product.sku if record.product else None,
        location_id=record.location_id,
        location_name=record.location.name if record.location else None,
        quantity=record.quantity,
        reserved_quantity=record.reserved_quantity,
        available_quantity=record.available_quantity,
        reorder_level=record.reorder_level,
        max_level=record.max_level,
        last_updated=record.last_updated,
    )


@router.get("", response_model=List[schemas.InventoryRecordResponse])
def list_inventory_records(
    product_id: Optional[int] = None,
    location_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    query = db.query(Inventory).options(selectinload(Inventory.product), selectinload(Inventory.location))
    if product_id is not None:
        query = query.filter(Inventory.product_id == product_id)
    if location_id is not None:
        query = query.filter(Inventory.location_id == location_id)
    records = query.order_by(Inventory.product_id.asc(), Inventory.location_id.asc()).all()
    return [_record_response(record) for record in records]


@router.post("", response_model=schemas.InventoryRecordResponse, status_code=status.HTTP_201_CREATED)
def create_inventory_record_endpoint(
    payload: schemas.InventoryRecordCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        record = create_inventory_record(
            db,
            product_id=payload.product_id,
            location_id=payload.location_id,
            user_id=user_id,
            initial_quantity=payload.initial_quantity,
            reorder_level=payload.reorder_level,
            max_level=payload.max_level,
            unit_cost=payload.unit_cost,
        )
    except InventoryError as exc:
        raise _http_error(exc)
    db.refresh(record)
    return _record_response(record)


@router.get("/products/{product_id}", response_model=schemas.ProductStockResponse)
def get_product_stock(product_id: int, db: Session = Depends(get_db)):
    records = register.get_records(db, product_id)
    return schemas.ProductStockResponse(
        product_id=product_id,
        total_quantity=queries.total_stock(db, product_id),
        records=[_record_response(record) for record in records],
    )


@router.post("/adjustments", response_model=schemas.StockAdjustmentResponse, status_code=status.HTTP_201_CREATED)
def create_stock_adjustment(
    payload: schemas.StockAdjustmentCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    notifier: LowStockNotifier = Depends(get_low_stock_notifier),
):
    try:
        result = adjust_stock(
            db,
            product_id=payload.product_id,
            location_id=payload.location_id,
            kind=payload.kind,
            magnitude=payload.quantity,
            user_id=user_id,
            reason=payload.reason,
            notes=payload.notes,
            unit_cost=payload.unit_cost,
            notifier=notifier,
        )
    except InventoryError as exc:
        raise _http_error(exc)
    return schemas.StockAdjustmentResponse.model_validate(result)


@router.post("/transfers", response_model=schemas.StockTransferResponse, status_code=status.HTTP_201_CREATED)
def create_stock_transfer(
    payload: schemas.StockTransferCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    notifier: LowStockNotifier = Depends(get_low_stock_notifier),
):
    try:
        result = transfer_stock(
            db,
            product_id=payload.product_id,
            from_location_id=payload.from_location_id,
            to_location_id=payload.to_location_id,
            quantity=payload.quantity,
            user_id=user_id,
            notes=payload.notes,
            notifier=notifier,
        )
    except InventoryError as exc:
        raise _http_error(exc)
    return schemas.StockTransferResponse.model_validate(result)


@router.post("/reservations", response_model=schemas.InventoryRecordResponse)
def reserve_inventory(payload: schemas.ReservationRequest, db: Session = Depends(get_db)):
    try:
        record = reserve_stock(
            db,
            product_id=payload.product_id,
            location_id=payload.location_id,
            quantity=payload.quantity,
        )
    except InventoryError as exc:
        raise _http_error(exc)
    return _record_response(record)


@router.post("/reservations/release", response_model=schemas.InventoryRecordResponse)
def release_inventory_reservation(payload: schemas.ReservationRequest, db: Session = Depends(get_db)):
    try:
        record = release_reserved_stock(
            db,
            product_id=payload.product_id,
            location_id=payload.location_id,
            quantity=payload.quantity,
        )
    except InventoryError as exc:
        raise _http_error(exc)
    return _record_response(record)


@router.put("/levels", response_model=List[schemas.InventoryRecordResponse])
def update_inventory_levels(payload: schemas.StockLevelsUpdateRequest, db: Session = Depends(get_db)):
    updated = []
    for level in payload.levels:
        try:
            record = update_stock_levels(
                db,
                product_id=level.product_id,
                location_id=level.location_id,
                reorder_level=level.reorder_level,
                max_level=level.max_level,
            )
        except InventoryError as exc:
            raise _http_error(exc)
        updated.append(_record_response(record))
    return updated


@router.get("/low-stock", response_model=List[schemas.LowStockItemResponse])
def list_low_stock(location_id: Optional[int] = None, db: Session = Depends(get_db)):
    return [
        schemas.LowStockItemResponse(
            product_id=record.product_id,
            product_name=record.product.name if record.product else None,
            product_sku=record.product.sku if record.product else None,
            location_id=record.location_id,
            location_name=record.location.name if record.location else None,
            quantity=record.quantity,
            reorder_level=record.reorder_level,
            deficit=record.deficit,
        )
        for record in queries.low_stock(db, location_id=location_id)
    ]


@router.get("/zero-stock", response_model=List[schemas.ZeroStockItemResponse])
def list_zero_stock(location_id: Optional[int] = None, db: Session = Depends(get_db)):
    return [
        schemas.ZeroStockItemResponse(
            product_id=record.product_id,
            product_name=record.product.name if record.product else None,
            product_sku=record.product.sku if record.product else None,
            location_id=record.location_id,
            location_name=record.location.name if record.location else None,
            last_updated=record.last_updated,
        )
        for record in queries.zero_stock(db, location_id=location_id)
    ]


@router.get("/locations/summary", response_model=List[schemas.LocationSummaryResponse])
def list_location_summaries(location_id: Optional[int] = None, db: Session = Depends(get_db)):
    return queries.location_summary(db, location_id=location_id)


@router.get("/movements", response_model=schemas.MovementPageResponse)
def list_stock_movements(
    product_id: Optional[int] = None,
    location_id: Optional[int] = None,
    user_id: Optional[int] = None,
    movement_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    direction: Optional[Literal["in", "out"]] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    filters = MovementFilters(
        product_id=product_id,
        location_id=location_id,
        user_id=user_id,
        movement_type=movement_type,
        reference_id=reference_id,
        start=start,
        end=end,
        direction=direction,
    )
    try:
        page = queries.movement_history(db, filters, limit=limit, offset=offset)
    except InventoryError as exc:
        raise _http_error(exc)
    return schemas.MovementPageResponse(
        items=[schemas.StockMovementResponse.model_validate(item) for item in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.post(
    "/movements/{movement_id}/reverse",
    response_model=schemas.StockAdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def reverse_stock_movement(
    movement_id: int,
    payload: Optional[schemas.MovementReversalCreate] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    notifier: LowStockNotifier = Depends(get_low_stock_notifier),
):
    try:
        result = compensate_movement(
            db,
            movement_id=movement_id,
            user_id=user_id,
            notes=payload.notes if payload else None,
            notifier=notifier,
        )
    except InventoryError as exc:
        raise _http_error(exc)
    return schemas.StockAdjustmentResponse.model_validate(result)
