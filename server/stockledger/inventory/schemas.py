from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal


DecimalValue = condecimal(max_digits=14, decimal_places=2)


class InventoryRecordResponse(BaseModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    location_id: int
    location_name: Optional[str] = None
    quantity: int
    reserved_quantity: int
    available_quantity: int
    reorder_level: int
    max_level: int
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)


class InventoryRecordCreate(BaseModel):
    product_id: int
    location_id: int
    initial_quantity: int = Field(default=0, ge=0)
    reorder_level: int = Field(default=0, ge=0)
    max_level: int = Field(default=0, ge=0)
    unit_cost: Optional[DecimalValue] = Field(default=None, ge=0)


class ProductStockResponse(BaseModel):
    product_id: int
    total_quantity: int
    records: List[InventoryRecordResponse]


class StockMovementResponse(BaseModel):
    id: int
    product_id: int
    location_id: int
    movement_type: str
    quantity: int
    unit_cost: Optional[DecimalValue] = None
    total_cost: Optional[DecimalValue] = None
    user_id: int
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MovementPageResponse(BaseModel):
    items: List[StockMovementResponse]
    total: int
    limit: int
    offset: int


class StockAdjustmentCreate(BaseModel):
    product_id: int
    location_id: int
    kind: Literal["increase", "decrease", "set"]
    quantity: int = Field(..., description="Magnitude for increase/decrease, target quantity for set.")
    reason: Optional[str] = Field(default=None, max_length=50)
    notes: Optional[str] = None
    unit_cost: Optional[DecimalValue] = Field(default=None, ge=0)


class StockAdjustmentResponse(BaseModel):
    product_id: int
    location_id: int
    old_quantity: int
    new_quantity: int
    movement: Optional[StockMovementResponse] = None

    model_config = ConfigDict(from_attributes=True)


class StockTransferCreate(BaseModel):
    product_id: int
    from_location_id: int
    to_location_id: int
    quantity: int = Field(..., description="Units to move; must be greater than 0.")
    notes: Optional[str] = None


class StockTransferResponse(BaseModel):
    reference_id: str
    product_id: int
    from_location_id: int
    to_location_id: int
    quantity: int
    source_quantity: int
    destination_quantity: int
    movements: List[StockMovementResponse]

    model_config = ConfigDict(from_attributes=True)


class ReservationRequest(BaseModel):
    product_id: int
    location_id: int
    quantity: int


class StockLevelUpdate(BaseModel):
    product_id: int
    location_id: int
    reorder_level: int = Field(..., ge=0)
    max_level: int = Field(default=0, ge=0)


class StockLevelsUpdateRequest(BaseModel):
    levels: List[StockLevelUpdate] = Field(..., min_length=1)


class LowStockItemResponse(BaseModel):
    product_id: int
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    location_id: int
    location_name: Optional[str] = None
    quantity: int
    reorder_level: int
    deficit: int


class ZeroStockItemResponse(BaseModel):
    product_id: int
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    location_id: int
    location_name: Optional[str] = None
    last_updated: datetime


class LocationSummaryResponse(BaseModel):
    location_id: int
    location_name: str
    product_count: int
    total_quantity: int
    total_reserved: int
    low_stock_count: int
    zero_stock_count: int

    model_config = ConfigDict(from_attributes=True)


class MovementReversalCreate(BaseModel):
    notes: Optional[str] = None
