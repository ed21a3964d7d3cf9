"""Read-only reporting over committed inventory state. Nothing here takes locks or writes."""
from dataclasses import dataclass
import logging

from sqlalchemy import case, func
from sqlalchemy.orm import Session, selectinload

from stockledger.inventory.ledger import MovementFilters, MovementPage, list_movements
from stockledger.models import Inventory, Location, StockMovement


logger = logging.getLogger(__name__)


@dataclass
class LocationSummary:
    location_id: int
    location_name: str
    product_count: int
    total_quantity: int
    total_reserved: int
    low_stock_count: int
    zero_stock_count: int


def total_stock(db: Session, product_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(Inventory.quantity), 0))
        .filter(Inventory.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def ledger_balance(db: Session, product_id: int, location_id: int | None = None) -> int:
    """Net signed ledger quantity; equals ``total_stock`` (or the record's quantity) when consistent."""
    query = db.query(func.coalesce(func.sum(StockMovement.quantity), 0)).filter(StockMovement.product_id == product_id)
    if location_id is not None:
        query = query.filter(StockMovement.location_id == location_id)
    return int(query.scalar() or 0)


def low_stock(db: Session, location_id: int | None = None) -> list[Inventory]:
    query = (
        db.query(Inventory)
        .options(selectinload(Inventory.product), selectinload(Inventory.location))
        .filter(Inventory.quantity > 0, Inventory.quantity <= Inventory.reorder_level)
    )
    if location_id is not None:
        query = query.filter(Inventory.location_id == location_id)
    return query.order_by(Inventory.product_id.asc(), Inventory.location_id.asc()).all()


def zero_stock(db: Session, location_id: int | None = None) -> list[Inventory]:
    query = (
        db.query(Inventory)
        .options(selectinload(Inventory.product), selectinload(Inventory.location))
        .filter(Inventory.quantity == 0)
    )
    if location_id is not None:
        query = query.filter(Inventory.location_id == location_id)
    return query.order_by(Inventory.product_id.asc(), Inventory.location_id.asc()).all()


def movement_history(
    db: Session,
    filters: MovementFilters | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> MovementPage:
    return list_movements(db, filters, limit=limit, offset=offset)


def location_summary(db: Session, location_id: int | None = None) -> list[LocationSummary]:
    low_case = case(
        ((Inventory.quantity > 0) & (Inventory.quantity <= Inventory.reorder_level), 1),
        else_=0,
    )
    zero_case = case((Inventory.quantity == 0, 1), else_=0)
    query = (
        db.query(
            Location.id,
            Location.name,
            func.count(Inventory.id),
            func.coalesce(func.sum(Inventory.quantity), 0),
            func.coalesce(func.sum(Inventory.reserved_quantity), 0),
            func.coalesce(func.sum(low_case), 0),
            func.coalesce(func.sum(zero_case), 0),
        )
        .outerjoin(Inventory, Inventory.location_id == Location.id)
        .group_by(Location.id, Location.name)
    )
    if location_id is not None:
        query = query.filter(Location.id == location_id)
    rows = query.order_by(Location.id.asc()).all()
    logger.debug("Location summary rows=%s location_id=%s", len(rows), location_id)
    return [
        LocationSummary(
            location_id=loc_id,
            location_name=name,
            product_count=int(product_count or 0),
            total_quantity=int(total_quantity or 0),
            total_reserved=int(total_reserved or 0),
            low_stock_count=int(low_count or 0),
            zero_stock_count=int(zero_count or 0),
        )
        for loc_id, name, product_count, total_quantity, total_reserved, low_count, zero_count in rows
    ]
