import pytest
from sqlalchemy.orm import sessionmaker

from stockledger.db import Base, create_store_engine
from stockledger.errors import (
    InsufficientStockError,
    InvalidMovementTypeError,
    InvalidQuantityError,
    MaxLevelExceededError,
    NotFoundError,
    SameLocationError,
)
from stockledger.inventory import queries, register
from stockledger.inventory.notifications import CollectingLowStockNotifier
from stockledger.inventory.service import compensate_movement, transfer_stock
from stockledger.models import Inventory, Location, MovementType, Product, StockMovement, User


def create_session():
    engine = create_store_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def seed(db):
    user = User(email="lead@store.test")
    product = Product(sku="BLT-M8", name="M8 Bolt")
    locations = [Location(name="Main"), Location(name="Branch"), Location(name="Overflow")]
    db.add_all([user, product] + locations)
    db.commit()
    return user.id, product.id, [location.id for location in locations]


def stock_record(db, product_id, location_id, quantity, reserved=0, reorder_level=0, max_level=0):
    db.add(
        Inventory(
            product_id=product_id,
            location_id=location_id,
            quantity=quantity,
            reserved_quantity=reserved,
            reorder_level=reorder_level,
            max_level=max_level,
        )
    )
    db.commit()


def test_transfer_moves_stock_and_writes_paired_entries():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)

    result = transfer_stock(
        db,
        product_id=product_id,
        from_location_id=main,
        to_location_id=branch,
        quantity=4,
        user_id=user_id,
        notes="weekly restock",
    )

    assert (result.source_quantity, result.destination_quantity) == (6, 4)
    assert register.get_record(db, product_id, main).quantity == 6
    assert register.get_record(db, product_id, branch).quantity == 4

    movements = db.query(StockMovement).order_by(StockMovement.id.asc()).all()
    assert [(m.location_id, m.quantity) for m in movements] == [(main, -4), (branch, 4)]
    assert {m.movement_type for m in movements} == {MovementType.TRANSFER.value}
    assert {m.reference_id for m in movements} == {result.reference_id}
    assert all(m.notes == "weekly restock" for m in movements)
    assert queries.total_stock(db, product_id) == 10


def test_each_transfer_gets_its_own_reference():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)

    first = transfer_stock(
        db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=1, user_id=user_id
    )
    second = transfer_stock(
        db, product_id=product_id, from_location_id=branch, to_location_id=main, quantity=1, user_id=user_id
    )

    assert first.reference_id != second.reference_id
    assert register.get_record(db, product_id, main).quantity == 10


def test_same_location_transfer_is_rejected():
    db = create_session()
    user_id, product_id, (main, _, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)

    with pytest.raises(SameLocationError):
        transfer_stock(
            db, product_id=product_id, from_location_id=main, to_location_id=main, quantity=1, user_id=user_id
        )

    assert register.get_record(db, product_id, main).quantity == 10
    assert db.query(StockMovement).count() == 0


def test_same_location_is_reported_before_bad_quantity():
    db = create_session()
    user_id, product_id, (main, _, _) = seed(db)

    with pytest.raises(SameLocationError):
        transfer_stock(
            db, product_id=product_id, from_location_id=main, to_location_id=main, quantity=0, user_id=user_id
        )


@pytest.mark.parametrize("quantity", [0, -3])
def test_non_positive_quantity_is_rejected(quantity):
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)

    with pytest.raises(InvalidQuantityError):
        transfer_stock(
            db,
            product_id=product_id,
            from_location_id=main,
            to_location_id=branch,
            quantity=quantity,
            user_id=user_id,
        )


def test_insufficient_stock_leaves_everything_untouched():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=3)

    with pytest.raises(InsufficientStockError):
        transfer_stock(
            db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=4, user_id=user_id
        )

    assert register.get_record(db, product_id, main).quantity == 3
    assert register.get_record(db, product_id, branch) is None
    assert db.query(StockMovement).count() == 0


def test_transfer_from_unstocked_location_is_insufficient():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)

    with pytest.raises(InsufficientStockError):
        transfer_stock(
            db, product_id=product_id, from_location_id=branch, to_location_id=main, quantity=1, user_id=user_id
        )

    assert db.query(Inventory).count() == 0


def test_reserved_units_cannot_be_transferred():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=10, reserved=7)

    with pytest.raises(InsufficientStockError):
        transfer_stock(
            db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=4, user_id=user_id
        )

    result = transfer_stock(
        db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=3, user_id=user_id
    )
    assert result.source_quantity == 7
    assert register.get_record(db, product_id, main).reserved_quantity == 7


def test_destination_max_level_is_enforced():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)
    stock_record(db, product_id, branch, quantity=8, max_level=10)

    with pytest.raises(MaxLevelExceededError):
        transfer_stock(
            db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=3, user_id=user_id
        )

    assert register.get_record(db, product_id, main).quantity == 10
    assert register.get_record(db, product_id, branch).quantity == 8

    result = transfer_stock(
        db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=2, user_id=user_id
    )
    assert result.destination_quantity == 10


def test_unknown_destination_is_not_found():
    db = create_session()
    user_id, product_id, (main, _, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)

    with pytest.raises(NotFoundError):
        transfer_stock(
            db, product_id=product_id, from_location_id=main, to_location_id=999, quantity=1, user_id=user_id
        )

    assert register.get_record(db, product_id, main).quantity == 10


def test_transfer_toward_lower_location_id_succeeds():
    db = create_session()
    user_id, product_id, (main, _, overflow) = seed(db)
    stock_record(db, product_id, overflow, quantity=5)

    result = transfer_stock(
        db, product_id=product_id, from_location_id=overflow, to_location_id=main, quantity=5, user_id=user_id
    )

    assert (result.source_quantity, result.destination_quantity) == (0, 5)
    assert [record.location_id for record in queries.zero_stock(db)] == [overflow]


def test_source_low_stock_event_after_transfer():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=6, reorder_level=3)
    notifier = CollectingLowStockNotifier()

    transfer_stock(
        db,
        product_id=product_id,
        from_location_id=main,
        to_location_id=branch,
        quantity=3,
        user_id=user_id,
        notifier=notifier,
    )

    assert [(event.location_id, event.quantity) for event in notifier.events] == [(main, 3)]


def test_transfer_entries_cannot_be_reversed_one_side_at_a_time():
    db = create_session()
    user_id, product_id, (main, branch, _) = seed(db)
    stock_record(db, product_id, main, quantity=10)
    result = transfer_stock(
        db, product_id=product_id, from_location_id=main, to_location_id=branch, quantity=4, user_id=user_id
    )
    incoming_id = next(movement.id for movement in result.movements if movement.quantity > 0)

    with pytest.raises(InvalidMovementTypeError):
        compensate_movement(db, movement_id=incoming_id, user_id=user_id)

    assert register.get_record(db, product_id, main).quantity == 6
    assert register.get_record(db, product_id, branch).quantity == 4
    assert db.query(StockMovement).count() == 2
