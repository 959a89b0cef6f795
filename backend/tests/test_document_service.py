from datetime import date

from duka.extensions import db
from duka.models import DocumentSequence, Sale
from duka.services.document_service import (
    PURCHASE_PREFIX,
    SALE_PREFIX,
    format_order_number,
    next_order_number,
    parse_sequence,
)

DAY = date(2026, 10, 18)


def test_format_pads_to_four_digits():
    assert format_order_number("SAL", DAY, 7) == "SAL-20261018-0007"


def test_format_widens_past_9999():
    assert format_order_number("PUR", DAY, 12345) == "PUR-20261018-12345"


def test_parse_sequence():
    assert parse_sequence("SAL-20261018-0042") == 42
    assert parse_sequence("SAL-20261018-X") is None


class TestNextOrderNumber:
    def test_sequential_within_a_day(self, db_session):
        numbers = [next_order_number(SALE_PREFIX, DAY) for _ in range(3)]
        db_session.commit()
        assert numbers == ["SAL-20261018-0001", "SAL-20261018-0002", "SAL-20261018-0003"]

    def test_prefixes_and_days_are_independent(self, db_session):
        assert next_order_number(SALE_PREFIX, DAY) == "SAL-20261018-0001"
        assert next_order_number(PURCHASE_PREFIX, DAY) == "PUR-20261018-0001"
        assert next_order_number(SALE_PREFIX, date(2026, 10, 19)) == "SAL-20261019-0001"
        db_session.commit()

    def test_rollback_returns_the_number(self, db_session):
        assert next_order_number(SALE_PREFIX, DAY) == "SAL-20261018-0001"
        db_session.rollback()
        assert next_order_number(SALE_PREFIX, DAY) == "SAL-20261018-0001"
        db_session.commit()

    def test_seeds_from_highest_existing_number(self, db_session, customer):
        db_session.add(Sale(
            sale_number="SAL-20261018-0041",
            customer_id=customer.id,
            cashier_id=1,
            subtotal_cents=100,
            vat_amount_cents=0,
            discount_amount_cents=0,
            total_amount_cents=100,
            payment_method="cash",
            status="completed",
        ))
        db_session.commit()

        assert next_order_number(SALE_PREFIX, DAY) == "SAL-20261018-0042"
        db_session.commit()

        row = db.session.query(DocumentSequence).filter_by(prefix=SALE_PREFIX, business_date=DAY).one()
        assert row.next_number == 43
