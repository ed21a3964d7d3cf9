from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column in this schema stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"
    SALE = "SALE"
    RETURN = "RETURN"
    DAMAGE = "DAMAGE"


MOVEMENT_TYPE_SET = {movement_type.value for movement_type in MovementType}
INCOMING_MOVEMENT_TYPES = {MovementType.IN.value, MovementType.RETURN.value}
OUTGOING_MOVEMENT_TYPES = {MovementType.OUT.value, MovementType.SALE.value, MovementType.DAMAGE.value}


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    sku = Column(String(100), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    inventory_records = relationship("Inventory", back_populates="product")


class Location(Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    inventory_records = relationship("Inventory", back_populates="location")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(200), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Inventory(Base):
    __tablename__ = "inventory"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    reorder_level = Column(Integer, nullable=False, default=0)
    # 0 means no upper bound.
    max_level = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow, nullable=False)

    product = relationship("Product", back_populates="inventory_records")
    location = relationship("Location", back_populates="inventory_records")

    __table_args__ = (
        UniqueConstraint("product_id", "location_id", name="uq_inventory_product_location"),
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved_quantity <= quantity", name="ck_inventory_reserved_within_quantity"),
        CheckConstraint("reorder_level >= 0", name="ck_inventory_reorder_level_non_negative"),
        CheckConstraint("max_level >= 0", name="ck_inventory_max_level_non_negative"),
    )

    @property
    def available_quantity(self) -> int:
        return (self.quantity or 0) - (self.reserved_quantity or 0)

    @property
    def is_low_stock(self) -> bool:
        return 0 < (self.quantity or 0) <= (self.reorder_level or 0)

    @property
    def deficit(self) -> int:
        return max((self.reorder_level or 0) - (self.quantity or 0), 0)


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    movement_type = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(14, 2), nullable=True)
    total_cost = Column(Numeric(14, 2), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reference_id = Column(String(100), nullable=True)
    reason = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    product = relationship("Product")
    location = relationship("Location")

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="ck_stock_movements_quantity_non_zero"),
        Index("ix_stock_movements_product_created", "product_id", "created_at"),
        Index("ix_stock_movements_location_created", "location_id", "created_at"),
        Index("ix_stock_movements_reference", "reference_id"),
    )

    @property
    def is_incoming(self) -> bool:
        return self.movement_type in INCOMING_MOVEMENT_TYPES

    @property
    def is_outgoing(self) -> bool:
        return self.movement_type in OUTGOING_MOVEMENT_TYPES
