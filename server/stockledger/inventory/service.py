from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
import logging
import threading
import uuid

from sqlalchemy.orm import Session

from stockledger.db import unit_of_work
from stockledger.errors import (
    InsufficientStockError,
    InvalidMovementTypeError,
    InvalidQuantityError,
    InventoryExistsError,
    MaxLevelExceededError,
    NotFoundError,
    OperationCancelledError,
    ReservedExceedsQuantityError,
    SameLocationError,
)
from stockledger.inventory import ledger, register
from stockledger.inventory.notifications import LowStockEvent, LowStockNotifier, emit_low_stock
from stockledger.models import Inventory, Location, MovementType, Product, StockMovement, utcnow


logger = logging.getLogger(__name__)

REASON_REVERSAL = "REVERSAL"
REASON_INITIAL_STOCK = "INITIAL_STOCK"


class AdjustmentKind(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    SET = "set"


@dataclass
class AdjustmentResult:
    product_id: int
    location_id: int
    old_quantity: int
    new_quantity: int
    movement: StockMovement | None = None


@dataclass
class TransferResult:
    reference_id: str
    product_id: int
    from_location_id: int
    to_location_id: int
    quantity: int
    source_quantity: int
    destination_quantity: int
    movements: list[StockMovement] = field(default_factory=list)


def _require_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantityError(f"{name} must be a whole number.")
    return value


def _require_positive(value, name: str = "Quantity") -> int:
    value = _require_int(value, name)
    if value <= 0:
        raise InvalidQuantityError(f"{name} must be greater than 0.")
    return value


def _require_non_negative(value, name: str) -> int:
    value = _require_int(value, name)
    if value < 0:
        raise InvalidQuantityError(f"{name} cannot be negative.")
    return value


def _require_product(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product or not product.is_active:
        raise NotFoundError(f"Product {product_id} not found.")
    return product


def _require_location(db: Session, location_id: int) -> Location:
    location = db.query(Location).filter(Location.id == location_id).first()
    if not location or not location.is_active:
        raise NotFoundError(f"Location {location_id} not found.")
    return location


def _raise_if_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("Inventory operation was cancelled before commit.")


def _low_stock_event(record: Inventory) -> LowStockEvent | None:
    reorder_level = record.reorder_level or 0
    if reorder_level > 0 and record.quantity <= reorder_level:
        return LowStockEvent(
            product_id=record.product_id,
            location_id=record.location_id,
            quantity=record.quantity,
            reorder_level=reorder_level,
            occurred_at=utcnow(),
        )
    return None


def preview_adjustment(kind: AdjustmentKind | str, current_quantity: int, magnitude: int) -> int:
    """Quantity an adjustment would produce; raises if the inputs are invalid.

    Pure function, safe for callers that want to show the result before submitting.
    """
    kind = AdjustmentKind(kind)
    magnitude = _require_int(magnitude, "Adjustment quantity")
    if kind is AdjustmentKind.SET:
        if magnitude < 0:
            raise InvalidQuantityError("Stock cannot be set to a negative quantity.")
        return magnitude
    if magnitude <= 0:
        raise InvalidQuantityError("Adjustment quantity must be greater than 0.")
    new_quantity = current_quantity + magnitude if kind is AdjustmentKind.INCREASE else current_quantity - magnitude
    if new_quantity < 0:
        raise InvalidQuantityError(
            f"Cannot decrease stock by {magnitude}; only {current_quantity} on hand."
        )
    return new_quantity


def _apply_adjustment(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    kind: AdjustmentKind,
    magnitude: int,
    user_id: int,
    reason: str | None,
    notes: str | None,
    unit_cost: Decimal | None,
    reference_id: str | None,
):
    _require_product(db, product_id)
    _require_location(db, location_id)

    record = register.lock_records(db, product_id, [location_id]).get(location_id)
    old_quantity = record.quantity if record else 0
    new_quantity = preview_adjustment(kind, old_quantity, magnitude)

    if record is None and new_quantity != old_quantity:
        record = register.lock_or_create_record(db, product_id, location_id)
        if record.quantity != old_quantity:
            old_quantity = record.quantity
            new_quantity = preview_adjustment(kind, old_quantity, magnitude)

    reserved = record.reserved_quantity if record else 0
    if new_quantity < reserved:
        raise ReservedExceedsQuantityError(
            f"Cannot set quantity to {new_quantity}; {reserved} units are reserved."
        )

    movement = None
    low_stock = None
    if new_quantity != old_quantity:
        record = register.upsert_quantity(db, product_id, location_id, new_quantity)
        movement = ledger.append_movement(
            db,
            product_id=product_id,
            location_id=location_id,
            movement_type=MovementType.ADJUSTMENT,
            quantity=new_quantity - old_quantity,
            user_id=user_id,
            unit_cost=unit_cost,
            reference_id=reference_id,
            reason=reason,
            notes=notes,
        )
        low_stock = _low_stock_event(record)
    return old_quantity, new_quantity, movement, low_stock


def _finish_adjustment(
    kind: AdjustmentKind,
    product_id: int,
    location_id: int,
    user_id: int,
    reason: str | None,
    outcome,
    notifier: LowStockNotifier | None,
) -> AdjustmentResult:
    old_quantity, new_quantity, movement, low_stock = outcome
    logger.info(
        "Adjusted stock: product_id=%s location_id=%s kind=%s %s -> %s user_id=%s reason=%s",
        product_id,
        location_id,
        kind.value,
        old_quantity,
        new_quantity,
        user_id,
        reason,
    )
    if low_stock:
        emit_low_stock(notifier, low_stock)
    return AdjustmentResult(
        product_id=product_id,
        location_id=location_id,
        old_quantity=old_quantity,
        new_quantity=new_quantity,
        movement=movement,
    )


def adjust_stock(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    kind: AdjustmentKind | str,
    magnitude: int,
    user_id: int,
    reason: str | None = None,
    notes: str | None = None,
    unit_cost: Decimal | None = None,
    reference_id: str | None = None,
    notifier: LowStockNotifier | None = None,
    cancel: threading.Event | None = None,
    lock_timeout_ms: int | None = None,
) -> AdjustmentResult:
    try:
        kind = AdjustmentKind(kind)
    except ValueError:
        raise InvalidQuantityError(f"Unknown adjustment kind: {kind}")
    _raise_if_cancelled(cancel)

    with unit_of_work(db, lock_timeout_ms=lock_timeout_ms):
        outcome = _apply_adjustment(
            db,
            product_id=product_id,
            location_id=location_id,
            kind=kind,
            magnitude=magnitude,
            user_id=user_id,
            reason=reason,
            notes=notes,
            unit_cost=unit_cost,
            reference_id=reference_id,
        )
        _raise_if_cancelled(cancel)

    return _finish_adjustment(kind, product_id, location_id, user_id, reason, outcome, notifier)


def transfer_stock(
    db: Session,
    *,
    product_id: int,
    from_location_id: int,
    to_location_id: int,
    quantity: int,
    user_id: int,
    notes: str | None = None,
    notifier: LowStockNotifier | None = None,
    cancel: threading.Event | None = None,
    lock_timeout_ms: int | None = None,
) -> TransferResult:
    if from_location_id == to_location_id:
        raise SameLocationError("Source and destination locations must differ.")
    quantity = _require_positive(quantity, "Transfer quantity")
    _raise_if_cancelled(cancel)

    reference_id = uuid.uuid4().hex
    low_stock = None
    with unit_of_work(db, lock_timeout_ms=lock_timeout_ms):
        _require_product(db, product_id)
        _require_location(db, from_location_id)
        _require_location(db, to_location_id)

        records: dict[int, Inventory | None] = {}
        for location_id in sorted((from_location_id, to_location_id)):
            if location_id == from_location_id:
                records[location_id] = register.lock_records(db, product_id, [location_id]).get(location_id)
            else:
                records[location_id] = register.lock_or_create_record(db, product_id, location_id)
        source = records[from_location_id]
        destination = records[to_location_id]

        available = source.available_quantity if source else 0
        if available < quantity:
            raise InsufficientStockError(
                f"Cannot transfer {quantity} units of product {product_id}; "
                f"only {available} available at location {from_location_id}."
            )
        if destination.max_level and destination.quantity + quantity > destination.max_level:
            raise MaxLevelExceededError(
                f"Transfer would raise location {to_location_id} to {destination.quantity + quantity}, "
                f"above its max level of {destination.max_level}."
            )

        source = register.upsert_quantity(db, product_id, from_location_id, source.quantity - quantity)
        destination = register.upsert_quantity(db, product_id, to_location_id, destination.quantity + quantity)
        movements = [
            ledger.append_movement(
                db,
                product_id=product_id,
                location_id=from_location_id,
                movement_type=MovementType.TRANSFER,
                quantity=-quantity,
                user_id=user_id,
                reference_id=reference_id,
                notes=notes,
            ),
            ledger.append_movement(
                db,
                product_id=product_id,
                location_id=to_location_id,
                movement_type=MovementType.TRANSFER,
                quantity=quantity,
                user_id=user_id,
                reference_id=reference_id,
                notes=notes,
            ),
        ]
        source_quantity = source.quantity
        destination_quantity = destination.quantity
        low_stock = _low_stock_event(source)
        _raise_if_cancelled(cancel)

    logger.info(
        "Transferred stock: product_id=%s %s -> %s quantity=%s reference_id=%s user_id=%s",
        product_id,
        from_location_id,
        to_location_id,
        quantity,
        reference_id,
        user_id,
    )
    if low_stock:
        emit_low_stock(notifier, low_stock)
    return TransferResult(
        reference_id=reference_id,
        product_id=product_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        quantity=quantity,
        source_quantity=source_quantity,
        destination_quantity=destination_quantity,
        movements=movements,
    )


def create_inventory_record(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    user_id: int,
    initial_quantity: int = 0,
    reorder_level: int = 0,
    max_level: int = 0,
    unit_cost: Decimal | None = None,
) -> Inventory:
    initial_quantity = _require_non_negative(initial_quantity, "Initial quantity")
    reorder_level = _require_non_negative(reorder_level, "Reorder level")
    max_level = _require_non_negative(max_level, "Max level")
    if max_level and initial_quantity > max_level:
        raise MaxLevelExceededError(f"Initial quantity {initial_quantity} exceeds max level {max_level}.")

    with unit_of_work(db):
        _require_product(db, product_id)
        _require_location(db, location_id)
        if register.lock_records(db, product_id, [location_id]):
            raise InventoryExistsError(
                f"Inventory record already exists for product {product_id} at location {location_id}."
            )
        record = register.get_or_create_record(db, product_id, location_id)
        record.reorder_level = reorder_level
        record.max_level = max_level
        if initial_quantity:
            register.upsert_quantity(db, product_id, location_id, initial_quantity)
            ledger.append_movement(
                db,
                product_id=product_id,
                location_id=location_id,
                movement_type=MovementType.IN,
                quantity=initial_quantity,
                user_id=user_id,
                unit_cost=unit_cost,
                reason=REASON_INITIAL_STOCK,
            )

    logger.info(
        "Created inventory record: product_id=%s location_id=%s quantity=%s reorder_level=%s max_level=%s",
        product_id,
        location_id,
        initial_quantity,
        reorder_level,
        max_level,
    )
    return record


def _require_record(db: Session, product_id: int, location_id: int) -> Inventory:
    record = register.lock_records(db, product_id, [location_id]).get(location_id)
    if record is None:
        raise NotFoundError(f"No inventory record for product {product_id} at location {location_id}.")
    return record


def reserve_stock(db: Session, *, product_id: int, location_id: int, quantity: int) -> Inventory:
    quantity = _require_positive(quantity, "Reservation quantity")
    with unit_of_work(db):
        record = _require_record(db, product_id, location_id)
        if record.available_quantity < quantity:
            raise InsufficientStockError(
                f"Cannot reserve {quantity} units; only {record.available_quantity} available."
            )
        record.reserved_quantity = record.reserved_quantity + quantity
        record.last_updated = utcnow()
    logger.info("Reserved stock: product_id=%s location_id=%s quantity=%s", product_id, location_id, quantity)
    return record


def release_reserved_stock(db: Session, *, product_id: int, location_id: int, quantity: int) -> Inventory:
    quantity = _require_positive(quantity, "Release quantity")
    with unit_of_work(db):
        record = _require_record(db, product_id, location_id)
        if quantity > record.reserved_quantity:
            raise InvalidQuantityError(
                f"Cannot release {quantity} units; only {record.reserved_quantity} reserved."
            )
        record.reserved_quantity = record.reserved_quantity - quantity
        record.last_updated = utcnow()
    logger.info("Released reserved stock: product_id=%s location_id=%s quantity=%s", product_id, location_id, quantity)
    return record


def update_stock_levels(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    reorder_level: int,
    max_level: int,
) -> Inventory:
    reorder_level = _require_non_negative(reorder_level, "Reorder level")
    max_level = _require_non_negative(max_level, "Max level")
    if max_level and reorder_level > max_level:
        raise InvalidQuantityError("Reorder level cannot exceed max level.")
    with unit_of_work(db):
        record = _require_record(db, product_id, location_id)
        record.reorder_level = reorder_level
        record.max_level = max_level
        record.last_updated = utcnow()
    return record


def compensate_movement(
    db: Session,
    *,
    movement_id: int,
    user_id: int,
    notes: str | None = None,
    notifier: LowStockNotifier | None = None,
    lock_timeout_ms: int | None = None,
) -> AdjustmentResult:
    """Append an ADJUSTMENT that cancels out an earlier ledger entry.

    The register row of the entry's key is locked before the already-reversed
    check, so concurrent reversals of the same entry queue and only the first
    one lands. TRANSFER entries are rejected: each is one half of a pair, and
    stock is moved back with another transfer instead.
    """
    with unit_of_work(db, lock_timeout_ms=lock_timeout_ms):
        original = ledger.get_movement(db, movement_id)
        if original is None:
            raise NotFoundError(f"Stock movement {movement_id} not found.")
        if original.movement_type == MovementType.TRANSFER.value:
            raise InvalidMovementTypeError(
                f"Stock movement {movement_id} is half of transfer {original.reference_id}; "
                "transfer the stock back instead of reversing one side."
            )
        product_id = original.product_id
        location_id = original.location_id
        register.lock_records(db, product_id, [location_id])

        reversal_reference = f"reversal:{original.id}"
        already_reversed = ledger.list_movements(
            db, ledger.MovementFilters(reference_id=reversal_reference), limit=1
        ).total
        if already_reversed:
            raise InventoryExistsError(f"Stock movement {movement_id} has already been reversed.")

        kind = AdjustmentKind.DECREASE if original.quantity > 0 else AdjustmentKind.INCREASE
        reversal_notes = f"reverses movement #{original.id}"
        if notes:
            reversal_notes = f"{reversal_notes}: {notes}"
        outcome = _apply_adjustment(
            db,
            product_id=product_id,
            location_id=location_id,
            kind=kind,
            magnitude=abs(original.quantity),
            user_id=user_id,
            reason=REASON_REVERSAL,
            notes=reversal_notes,
            unit_cost=original.unit_cost,
            reference_id=reversal_reference,
        )

    return _finish_adjustment(kind, product_id, location_id, user_id, REASON_REVERSAL, outcome, notifier)
