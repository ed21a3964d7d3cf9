"""Append-only stock movement ledger.

Entries are never updated or deleted. A wrong entry is corrected by appending
a compensating ADJUSTMENT (see ``service.compensate_movement``).
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging
from typing import Literal, Optional

from sqlalchemy.orm import Session

from stockledger.config import settings
from stockledger.errors import InvalidMovementTypeError, InvalidQuantityError
from stockledger.models import MOVEMENT_TYPE_SET, MovementType, StockMovement, utcnow
from stockledger.utils import movement_total_cost, quantize_money


logger = logging.getLogger(__name__)


@dataclass
class MovementFilters:
    product_id: Optional[int] = None
    location_id: Optional[int] = None
    user_id: Optional[int] = None
    movement_type: Optional[str] = None
    reference_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    direction: Optional[Literal["in", "out"]] = None


@dataclass
class MovementPage:
    items: list[StockMovement] = field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0


def _normalize_movement_type(movement_type: MovementType | str) -> str:
    value = movement_type.value if isinstance(movement_type, MovementType) else str(movement_type).upper()
    if value not in MOVEMENT_TYPE_SET:
        raise InvalidMovementTypeError(f"Unknown movement type: {movement_type}")
    return value


def append_movement(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    movement_type: MovementType | str,
    quantity: int,
    user_id: int,
    unit_cost: Decimal | None = None,
    reference_id: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    type_value = _normalize_movement_type(movement_type)
    if quantity == 0:
        raise InvalidQuantityError("Stock movements must change the quantity.")

    movement = StockMovement(
        product_id=product_id,
        location_id=location_id,
        movement_type=type_value,
        quantity=quantity,
        unit_cost=quantize_money(unit_cost),
        total_cost=movement_total_cost(unit_cost, quantity),
        user_id=user_id,
        reference_id=reference_id,
        reason=reason,
        notes=notes,
        created_at=utcnow(),
    )
    db.add(movement)
    db.flush()
    logger.debug(
        "Appended movement id=%s type=%s product_id=%s location_id=%s quantity=%s reference_id=%s",
        movement.id,
        type_value,
        product_id,
        location_id,
        quantity,
        reference_id,
    )
    return movement


def get_movement(db: Session, movement_id: int) -> StockMovement | None:
    return db.query(StockMovement).filter(StockMovement.id == movement_id).first()


def _apply_filters(query, filters: MovementFilters):
    if filters.product_id is not None:
        query = query.filter(StockMovement.product_id == filters.product_id)
    if filters.location_id is not None:
        query = query.filter(StockMovement.location_id == filters.location_id)
    if filters.user_id is not None:
        query = query.filter(StockMovement.user_id == filters.user_id)
    if filters.movement_type:
        query = query.filter(StockMovement.movement_type == _normalize_movement_type(filters.movement_type))
    if filters.reference_id:
        query = query.filter(StockMovement.reference_id == filters.reference_id)
    if filters.start is not None:
        query = query.filter(StockMovement.created_at >= filters.start)
    if filters.end is not None:
        query = query.filter(StockMovement.created_at < filters.end)
    if filters.direction == "in":
        query = query.filter(StockMovement.quantity > 0)
    elif filters.direction == "out":
        query = query.filter(StockMovement.quantity < 0)
    return query


def list_movements(
    db: Session,
    filters: MovementFilters | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> MovementPage:
    filters = filters or MovementFilters()
    if limit < 1:
        raise InvalidQuantityError("limit must be at least 1.")
    if offset < 0:
        raise InvalidQuantityError("offset cannot be negative.")
    limit = min(limit, settings.max_page_size)

    query = _apply_filters(db.query(StockMovement), filters)
    total = query.count()
    items = (
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return MovementPage(items=items, total=total, limit=limit, offset=offset)
