import pytest

from duka.errors import InsufficientStock, InternalError, NotFound, ValidationError
from duka.extensions import db
from duka.models import Product
from duka.services import stock_service
from duka.services.concurrency import begin_write, in_transaction


def _stock(product_id):
    return db.session.get(Product, product_id).quantity_in_stock


class TestChecks:
    def test_check_available(self, product):
        assert stock_service.check_available(product, 50)
        assert not stock_service.check_available(product, 51)

    def test_services_are_always_available(self, service_product):
        assert stock_service.check_available(service_product, 1000)
        assert stock_service.reserve(service_product.id, 1000).id == service_product.id

    def test_reserve_reports_available_and_required(self, make_product):
        product = make_product(name="Sugar 1kg", quantity_in_stock=5)
        with pytest.raises(InsufficientStock) as exc:
            stock_service.reserve(product.id, 10)
        assert exc.value.details["available"] == 5
        assert exc.value.details["required"] == 10
        assert "Sugar 1kg" in exc.value.message

    def test_reserve_unknown_product(self, db_session):
        with pytest.raises(NotFound):
            stock_service.reserve(999999, 1)


class TestMutations:
    def test_unit_of_work_detection(self, db_session, product):
        db_session.commit()
        assert not in_transaction()
        begin_write()
        assert in_transaction()
        db_session.rollback()

    def test_decrement_requires_open_unit_of_work(self, db_session, product):
        product_id = product.id
        db_session.commit()
        with pytest.raises(InternalError):
            stock_service.commit_decrement(product_id, 1)

    def test_decrement_records_movement(self, db_session, product):
        product_id = product.id
        begin_write()
        movement = stock_service.commit_decrement(product_id, 3, reference_type="sale", reference_id=1, actor_id=7)
        db_session.commit()

        assert _stock(product_id) == 47
        assert movement.quantity_delta == -3
        assert movement.movement_type == stock_service.MOVEMENT_SALE
        assert [m.quantity_delta for m in stock_service.get_movements(product_id)] == [-3]

    def test_decrement_never_goes_negative(self, db_session, make_product):
        product_id = make_product(quantity_in_stock=5).id
        begin_write()
        with pytest.raises(InsufficientStock):
            stock_service.commit_decrement(product_id, 10)
        db_session.rollback()

        assert _stock(product_id) == 5
        assert stock_service.get_movements(product_id) == []

    def test_increment(self, db_session, product):
        product_id = product.id
        begin_write()
        stock_service.commit_increment(product_id, 4)
        db_session.commit()
        assert _stock(product_id) == 54

    def test_services_are_not_mutated(self, db_session, service_product):
        product_id = service_product.id
        begin_write()
        assert stock_service.commit_decrement(product_id, 5) is None
        db_session.commit()
        assert _stock(product_id) == 0
        assert stock_service.get_movements(product_id) == []

    def test_quantity_must_be_positive(self, db_session, product):
        product_id = product.id
        begin_write()
        with pytest.raises(ValidationError):
            stock_service.commit_decrement(product_id, 0)
        db_session.rollback()
