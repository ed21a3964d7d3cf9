"""Quantity register: current (quantity, reserved, levels) per product and location.

Only the engines in ``stockledger.inventory.service`` write through this module,
and only inside their unit of work.
"""
import logging
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.errors import NegativeQuantityError, ReservedExceedsQuantityError
from stockledger.models import Inventory, utcnow


logger = logging.getLogger(__name__)


def get_record(db: Session, product_id: int, location_id: int) -> Inventory | None:
    return (
        db.query(Inventory)
        .filter(Inventory.product_id == product_id, Inventory.location_id == location_id)
        .first()
    )


def get_records(db: Session, product_id: int) -> list[Inventory]:
    return (
        db.query(Inventory)
        .filter(Inventory.product_id == product_id)
        .order_by(Inventory.location_id.asc())
        .all()
    )


def _select_for_update(db: Session, product_id: int, location_id: int) -> Inventory | None:
    return (
        db.query(Inventory)
        .filter(Inventory.product_id == product_id, Inventory.location_id == location_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def lock_records(db: Session, product_id: int, location_ids: Iterable[int]) -> dict[int, Inventory]:
    """Lock the existing rows for ``product_id`` at ``location_ids``.

    Rows are locked one at a time in ascending location id so that every caller
    acquires locks in the same order. Keys without a row are simply absent from
    the returned mapping.
    """
    locked: dict[int, Inventory] = {}
    for location_id in sorted(set(location_ids)):
        record = _select_for_update(db, product_id, location_id)
        if record is not None:
            locked[location_id] = record
    logger.debug("Locked inventory rows: product_id=%s locations=%s", product_id, sorted(locked))
    return locked


def lock_or_create_record(db: Session, product_id: int, location_id: int) -> Inventory:
    """Return the locked row for the key, inserting an empty one first if needed.

    A concurrent insert of the same key loses on the unique constraint inside a
    savepoint; the row the other transaction committed is then locked instead.
    """
    record = _select_for_update(db, product_id, location_id)
    if record is not None:
        return record
    try:
        with db.begin_nested():
            db.add(
                Inventory(
                    product_id=product_id,
                    location_id=location_id,
                    quantity=0,
                    reserved_quantity=0,
                    reorder_level=0,
                    max_level=0,
                    last_updated=utcnow(),
                )
            )
    except IntegrityError:
        logger.debug("Inventory row for product_id=%s location_id=%s created concurrently", product_id, location_id)
    return _select_for_update(db, product_id, location_id)


def get_or_create_record(db: Session, product_id: int, location_id: int) -> Inventory:
    record = get_record(db, product_id, location_id)
    if record:
        return record
    record = Inventory(
        product_id=product_id,
        location_id=location_id,
        quantity=0,
        reserved_quantity=0,
        reorder_level=0,
        max_level=0,
        last_updated=utcnow(),
    )
    db.add(record)
    db.flush()
    return record


def upsert_quantity(db: Session, product_id: int, location_id: int, new_quantity: int) -> Inventory:
    if new_quantity < 0:
        raise NegativeQuantityError(
            f"Quantity for product {product_id} at location {location_id} cannot be negative ({new_quantity})."
        )
    record = get_record(db, product_id, location_id)
    reserved = record.reserved_quantity if record else 0
    if reserved > new_quantity:
        raise ReservedExceedsQuantityError(
            f"Quantity {new_quantity} is below the {reserved} units reserved for product {product_id} "
            f"at location {location_id}."
        )
    if record is None:
        record = get_or_create_record(db, product_id, location_id)
    record.quantity = new_quantity
    record.last_updated = utcnow()
    db.flush()
    return record
