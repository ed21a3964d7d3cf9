from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.orm import sessionmaker

from stockledger.db import WRITE_LOCK_OPTION, Base, create_store_engine, retry_on_lock_timeout
from stockledger.errors import InsufficientStockError, InventoryExistsError, LockTimeoutError
from stockledger.inventory import queries, register
from stockledger.inventory.service import adjust_stock, compensate_movement, transfer_stock
from stockledger.models import Inventory, Location, Product, StockMovement, User


def create_session_factory(tmp_path, lock_timeout_ms=5000):
    engine = create_store_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}", lock_timeout_ms=lock_timeout_ms)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False)


def seed(SessionLocal):
    with SessionLocal() as db:
        user = User(email="night-shift@store.test")
        product = Product(sku="NL-2IN", name="2in Nails")
        locations = [Location(name="Dock"), Location(name="Floor")]
        db.add_all([user, product] + locations)
        db.commit()
        return user.id, product.id, [location.id for location in locations]


def test_concurrent_increases_are_not_lost(tmp_path):
    engine, SessionLocal = create_session_factory(tmp_path)
    user_id, product_id, (dock, _) = seed(SessionLocal)

    def increase_by_one(_):
        with SessionLocal() as db:
            return adjust_stock(
                db,
                product_id=product_id,
                location_id=dock,
                kind="increase",
                magnitude=1,
                user_id=user_id,
            ).new_quantity

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(increase_by_one, range(20)))

    assert sorted(results) == list(range(1, 21))
    with SessionLocal() as db:
        assert register.get_record(db, product_id, dock).quantity == 20
        assert db.query(Inventory).count() == 1
        assert db.query(StockMovement).count() == 20
        assert queries.ledger_balance(db, product_id, dock) == 20
    engine.dispose()


def test_concurrent_transfers_never_oversell(tmp_path):
    engine, SessionLocal = create_session_factory(tmp_path)
    user_id, product_id, (dock, floor) = seed(SessionLocal)
    with SessionLocal() as db:
        db.add(Inventory(product_id=product_id, location_id=dock, quantity=5))
        db.commit()

    def move_one(_):
        with SessionLocal() as db:
            try:
                transfer_stock(
                    db,
                    product_id=product_id,
                    from_location_id=dock,
                    to_location_id=floor,
                    quantity=1,
                    user_id=user_id,
                )
            except InsufficientStockError:
                return False
            return True

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(move_one, range(8)))

    assert outcomes.count(True) == 5
    with SessionLocal() as db:
        assert register.get_record(db, product_id, dock).quantity == 0
        assert register.get_record(db, product_id, floor).quantity == 5
        assert db.query(StockMovement).count() == 10
    engine.dispose()


def test_held_write_lock_times_out_as_lock_timeout_error(tmp_path, caplog):
    engine, SessionLocal = create_session_factory(tmp_path, lock_timeout_ms=100)
    user_id, product_id, (dock, _) = seed(SessionLocal)

    holder = engine.connect().execution_options(**{WRITE_LOCK_OPTION: True})
    held = holder.begin()
    try:
        with SessionLocal() as db:
            with pytest.raises(LockTimeoutError) as excinfo:
                adjust_stock(
                    db,
                    product_id=product_id,
                    location_id=dock,
                    kind="increase",
                    magnitude=1,
                    user_id=user_id,
                )
        assert excinfo.value.retryable is True
        assert excinfo.value.status_code == 503
        assert "Inventory lock unavailable" in caplog.text
        assert "database is locked" in caplog.text
        assert "Timed out" not in str(excinfo.value)
    finally:
        held.rollback()
        holder.close()

    with SessionLocal() as db:
        assert register.get_record(db, product_id, dock) is None
    engine.dispose()


def test_retry_on_lock_timeout_retries_then_succeeds():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise LockTimeoutError("busy")
        return "done"

    assert retry_on_lock_timeout(flaky, attempts=3, backoff_seconds=0) == "done"
    assert len(calls) == 3


def test_retry_on_lock_timeout_gives_up_after_last_attempt():
    calls = []

    def always_busy():
        calls.append(1)
        raise LockTimeoutError("busy")

    with pytest.raises(LockTimeoutError):
        retry_on_lock_timeout(always_busy, attempts=2, backoff_seconds=0)
    assert len(calls) == 2


def test_retry_on_lock_timeout_does_not_retry_other_errors():
    calls = []

    def short():
        calls.append(1)
        raise InsufficientStockError("empty")

    with pytest.raises(InsufficientStockError):
        retry_on_lock_timeout(short, attempts=5, backoff_seconds=0)
    assert len(calls) == 1


def test_adjustments_after_a_read_on_the_same_session_still_serialize(tmp_path):
    engine, SessionLocal = create_session_factory(tmp_path, lock_timeout_ms=2000)
    user_id, product_id, (dock, _) = seed(SessionLocal)

    def look_up_user_then_increase(_):
        with SessionLocal() as db:
            assert db.query(User).filter(User.id == user_id).first() is not None
            try:
                adjust_stock(
                    db,
                    product_id=product_id,
                    location_id=dock,
                    kind="increase",
                    magnitude=1,
                    user_id=user_id,
                )
            except LockTimeoutError:
                return "timeout"
            return "ok"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(look_up_user_then_increase, range(8)))

    assert outcomes == ["ok"] * 8
    with SessionLocal() as db:
        assert register.get_record(db, product_id, dock).quantity == 8
        assert db.query(StockMovement).count() == 8
    engine.dispose()


def test_opposite_direction_transfers_do_not_deadlock(tmp_path):
    engine, SessionLocal = create_session_factory(tmp_path)
    user_id, product_id, (dock, floor) = seed(SessionLocal)
    with SessionLocal() as db:
        db.add_all(
            [
                Inventory(product_id=product_id, location_id=dock, quantity=20),
                Inventory(product_id=product_id, location_id=floor, quantity=20),
            ]
        )
        db.commit()

    def move(index):
        source, destination = (dock, floor) if index % 2 == 0 else (floor, dock)
        with SessionLocal() as db:
            try:
                transfer_stock(
                    db,
                    product_id=product_id,
                    from_location_id=source,
                    to_location_id=destination,
                    quantity=2,
                    user_id=user_id,
                )
            except LockTimeoutError:
                return "timeout"
            return "ok"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(move, range(16)))

    assert outcomes == ["ok"] * 16
    with SessionLocal() as db:
        assert register.get_record(db, product_id, dock).quantity == 20
        assert register.get_record(db, product_id, floor).quantity == 20
        assert db.query(StockMovement).count() == 32
        assert queries.ledger_balance(db, product_id, dock) == 0
        assert queries.ledger_balance(db, product_id, floor) == 0
        assert queries.total_stock(db, product_id) == 40
    engine.dispose()


def test_concurrent_reversals_of_one_entry_land_once(tmp_path):
    engine, SessionLocal = create_session_factory(tmp_path)
    user_id, product_id, (dock, _) = seed(SessionLocal)
    with SessionLocal() as db:
        movement_id = adjust_stock(
            db,
            product_id=product_id,
            location_id=dock,
            kind="increase",
            magnitude=9,
            user_id=user_id,
        ).movement.id

    def reverse(_):
        with SessionLocal() as db:
            try:
                compensate_movement(db, movement_id=movement_id, user_id=user_id)
            except InventoryExistsError:
                return "already reversed"
            return "reversed"

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(reverse, range(6)))

    assert sorted(outcomes) == ["already reversed"] * 5 + ["reversed"]
    with SessionLocal() as db:
        assert register.get_record(db, product_id, dock).quantity == 0
        assert db.query(StockMovement).filter(StockMovement.reference_id == f"reversal:{movement_id}").count() == 1
    engine.dispose()
