# Overview: Pytest coverage for stock availability, reservation and the admin stock surface.

import os
import tempfile
import threading

import pytest
from sqlalchemy.exc import OperationalError

from ordering import create_app
from ordering.extensions import db
from ordering.models import Branch, Product, StockRecord
from ordering.services import stock_service
from ordering.services.stock_service import StockShortfallError
from ordering.validation import ConflictError, NotFoundError, ValidationError

from conftest import TEST_CONFIG, stock_of


class TestAvailability:
    def test_unmanaged_items_always_available(self, pizza):
        result = stock_service.check_availability([(pizza.id, 1000)])
        assert result.ok
        assert result.shortfalls == []

    def test_quantities_are_summed_per_product(self, tiramisu):
        assert stock_service.check_availability([(tiramisu.id, 3)]).ok

        result = stock_service.check_availability([(tiramisu.id, 3), (tiramisu.id, 3)])
        assert not result.ok
        assert result.shortfalls == [{
            "product_id": tiramisu.id,
            "product_name": "Tiramisu",
            "requested": 6,
            "available": 5,
        }]

    def test_rejects_non_positive_quantity(self, tiramisu):
        with pytest.raises(ValidationError):
            stock_service.check_availability([(tiramisu.id, 0)])


class TestReserve:
    def test_reserve_and_release(self, tiramisu, pizza):
        reserved = stock_service.reserve([(tiramisu.id, 2), (pizza.id, 4)])
        db.session.commit()

        assert reserved == [tiramisu.id]
        assert stock_of(tiramisu.id) == 3

        stock_service.release([(tiramisu.id, 2), (pizza.id, 4)])
        db.session.commit()
        assert stock_of(tiramisu.id) == 5

    def test_strict_shortfall_raises_with_details(self, tiramisu):
        with pytest.raises(StockShortfallError) as exc:
            stock_service.reserve([(tiramisu.id, 6)])
        db.session.rollback()

        assert exc.value.details["items"][0]["requested"] == 6
        assert exc.value.details["items"][0]["available"] == 5
        assert stock_of(tiramisu.id) == 5

    def test_non_strict_skips_lost_items(self, tiramisu, db_session, branch):
        cake = Product(branch_id=branch.id, name="Cheesecake", base_price_cents=600)
        db_session.add(cake)
        db_session.flush()
        db_session.add(StockRecord(product_id=cake.id, is_managed=True, quantity=1))
        db_session.commit()

        reserved = stock_service.reserve([(tiramisu.id, 2), (cake.id, 3)], strict=False)
        db.session.commit()

        assert reserved == [tiramisu.id]
        assert stock_of(tiramisu.id) == 3
        assert stock_of(cake.id) == 1

    def test_quantity_never_goes_negative(self, tiramisu):
        stock_service.reserve([(tiramisu.id, 5)])
        db.session.commit()

        with pytest.raises(StockShortfallError):
            stock_service.reserve([(tiramisu.id, 1)])
        db.session.rollback()
        assert stock_of(tiramisu.id) == 0


class TestAdmin:
    def test_set_stock_creates_record(self, pizza):
        record = stock_service.set_stock(pizza.id, is_managed=True, quantity=10, low_stock_threshold=3)
        assert record.is_managed is True
        assert record.quantity == 10

        with pytest.raises(ValidationError):
            stock_service.set_stock(pizza.id, quantity=-1)
        with pytest.raises(NotFoundError):
            stock_service.set_stock(999, quantity=1)

    def test_adjust_stock(self, tiramisu):
        assert stock_service.adjust_stock(tiramisu.id, 4).quantity == 9
        assert stock_service.adjust_stock(tiramisu.id, -9).quantity == 0

        with pytest.raises(ConflictError):
            stock_service.adjust_stock(tiramisu.id, -1)
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(tiramisu.id, 0)
        assert stock_of(tiramisu.id) == 0

    def test_low_stock_report(self, tiramisu, pizza, branch):
        assert stock_service.low_stock_report(branch.id) == []

        stock_service.adjust_stock(tiramisu.id, -4)
        rows = stock_service.low_stock_report(branch.id)

        assert len(rows) == 1
        assert rows[0]["product_id"] == tiramisu.id
        assert rows[0]["quantity"] == 1
        assert rows[0]["deficit"] == 1


class TestConcurrentReservation:
    """Real threads against a file-backed database."""

    @pytest.fixture()
    def file_app(self):
        fd, path = tempfile.mkstemp(suffix=".sqlite3")
        os.close(fd)
        config = dict(TEST_CONFIG, SQLALCHEMY_DATABASE_URI=f"sqlite:///{path}")
        app = create_app(config)
        with app.app_context():
            db.create_all()
        yield app
        with app.app_context():
            db.session.remove()
            db.engine.dispose()
        os.remove(path)

    def test_last_items_are_never_oversold(self, file_app):
        with file_app.app_context():
            branch = Branch(name="Race", code="RCE", timezone="UTC")
            db.session.add(branch)
            db.session.flush()
            product = Product(branch_id=branch.id, name="Last Slice", base_price_cents=300)
            db.session.add(product)
            db.session.flush()
            db.session.add(StockRecord(product_id=product.id, is_managed=True, quantity=5))
            db.session.commit()
            product_id = product.id

        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(12)

        def worker():
            with file_app.app_context():
                barrier.wait()
                try:
                    stock_service.reserve([(product_id, 1)])
                    db.session.commit()
                    outcome = "reserved"
                except (StockShortfallError, ConflictError, OperationalError):
                    db.session.rollback()
                    outcome = "rejected"
                finally:
                    db.session.remove()
                with lock:
                    outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with file_app.app_context():
            remaining = db.session.query(StockRecord.quantity).filter_by(product_id=product_id).scalar()

        reserved = outcomes.count("reserved")
        assert len(outcomes) == 12
        assert reserved <= 5
        assert remaining >= 0
        assert remaining == 5 - reserved
