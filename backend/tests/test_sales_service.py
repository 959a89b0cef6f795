import pytest

from duka.errors import InsufficientStock, InvalidTransition, NotFound, ValidationError
from duka.extensions import db
from duka.models import Product, Sale, SaleItem
from duka.services import sales_service, stock_service
from duka.time_utils import business_date


def _number(seq):
    return f"SAL-{business_date():%Y%m%d}-{seq:04d}"


def _payload(customer, *lines, payment_method="cash", **extra):
    return {
        "customer_id": customer.id,
        "payment_method": payment_method,
        "items": [{"product_id": p.id, "quantity": q} for p, q in lines],
        **extra,
    }


def _stock(product_id):
    return db.session.get(Product, product_id).quantity_in_stock


# =============================================================================
# CREATE
# =============================================================================


class TestCreateSale:
    def test_cash_sale_is_completed_and_takes_stock(self, db_session, customer, product):
        product_id = product.id
        sale = sales_service.create_sale(7, _payload(customer, (product, 2)))

        assert sale.sale_number == _number(1)
        assert sale.status == "completed"
        assert sale.subtotal_cents == 20000
        assert sale.vat_amount_cents == 3200
        assert sale.total_amount_cents == 23200
        assert sale.amount_paid_cents == 23200
        assert sale.completed_at is not None
        assert len(sale.items) == 1
        assert sale.items[0].vat_rate_bps == 1600

        assert _stock(product_id) == 48
        movements = stock_service.get_movements(product_id)
        assert [(m.quantity_delta, m.reference_id) for m in movements] == [(-2, sale.id)]

    def test_totals_are_consistent(self, db_session, customer, product, make_product):
        inclusive = make_product(selling_price_cents=5800, is_vat_inclusive=True)
        payload = _payload(customer, (product, 3), (inclusive, 1), discount_amount_cents=250)
        sale = sales_service.create_sale(7, payload)

        assert sale.total_amount_cents == sale.subtotal_cents + sale.vat_amount_cents - sale.discount_amount_cents
        assert sale.vat_amount_cents == sum(item.vat_amount_cents for item in sale.items)

    def test_mpesa_sale_waits_for_payment(self, db_session, customer, product):
        sale = sales_service.create_sale(7, _payload(customer, (product, 1), payment_method="mpesa"))
        assert sale.status == "pending"
        assert sale.amount_paid_cents == 0
        assert sale.completed_at is None

    def test_numbers_are_sequential(self, db_session, customer, product):
        first = sales_service.create_sale(7, _payload(customer, (product, 1)))
        second = sales_service.create_sale(7, _payload(customer, (product, 1)))
        assert [first.sale_number, second.sale_number] == [_number(1), _number(2)]

    def test_insufficient_stock_writes_nothing(self, db_session, customer, make_product):
        short = make_product(quantity_in_stock=5)
        short_id = short.id

        with pytest.raises(InsufficientStock) as exc:
            sales_service.create_sale(7, _payload(customer, (short, 10)))
        assert exc.value.details == {
            "product_id": short_id,
            "product_name": short.name,
            "available": 5,
            "required": 10,
        }

        assert _stock(short_id) == 5
        assert db.session.query(Sale).count() == 0
        assert db.session.query(SaleItem).count() == 0

    def test_failure_on_a_later_line_leaves_earlier_lines_untouched(self, db_session, customer, product, make_product):
        product_id = product.id
        short = make_product(quantity_in_stock=1)

        with pytest.raises(InsufficientStock):
            sales_service.create_sale(7, _payload(customer, (product, 2), (short, 2)))

        assert _stock(product_id) == 50
        # the failed attempt did not consume a number
        sale = sales_service.create_sale(7, _payload(customer, (product, 1)))
        assert sale.sale_number == _number(1)

    def test_service_lines_do_not_touch_stock(self, db_session, customer, service_product):
        service_id = service_product.id
        sale = sales_service.create_sale(7, _payload(customer, (service_product, 4)))
        assert sale.total_amount_cents == 4 * 20000 + 4 * 3200
        assert _stock(service_id) == 0
        assert stock_service.get_movements(service_id) == []

    @pytest.mark.parametrize(
        "payload",
        [
            {"customer_id": 1, "payment_method": "cash", "items": []},
            {"customer_id": 1, "payment_method": "cash"},
            {"customer_id": 1, "payment_method": "barter", "items": [{"product_id": 1, "quantity": 1}]},
            {"customer_id": 1, "payment_method": "cash", "items": [{"product_id": 1, "quantity": 0}]},
            {"customer_id": 1, "payment_method": "cash", "items": [{"product_id": 1, "quantity": 1.5}]},
            {"payment_method": "cash", "items": [{"product_id": 1, "quantity": 1}]},
        ],
    )
    def test_rejects_malformed_payloads(self, db_session, payload):
        with pytest.raises(ValidationError):
            sales_service.create_sale(7, payload)

    def test_unknown_product(self, db_session, customer):
        with pytest.raises(NotFound):
            sales_service.create_sale(7, {
                "customer_id": customer.id,
                "payment_method": "cash",
                "items": [{"product_id": 999999, "quantity": 1}],
            })


# =============================================================================
# STATUS
# =============================================================================


class TestSaleStatus:
    def test_cancel_pending_sale_restocks(self, db_session, customer, product, service_product):
        product_id = product.id
        sale = sales_service.create_sale(
            7, _payload(customer, (product, 5), (service_product, 1), payment_method="credit"),
        )
        assert _stock(product_id) == 45

        sale = sales_service.update_sale_status(sale.id, "cancelled", 3)
        assert sale.status == "cancelled"
        assert _stock(product_id) == 50
        assert [m.movement_type for m in stock_service.get_movements(product_id)] == [
            stock_service.MOVEMENT_SALE,
            stock_service.MOVEMENT_SALE_CANCELLED,
        ]

    def test_complete_then_refund(self, db_session, customer, product):
        product_id = product.id
        sale = sales_service.create_sale(7, _payload(customer, (product, 1), payment_method="credit"))

        sale = sales_service.update_sale_status(sale.id, "completed", 3)
        assert sale.status == "completed"
        assert sale.completed_at is not None

        sale = sales_service.update_sale_status(sale.id, "refunded", 3)
        assert sale.status == "refunded"
        assert _stock(product_id) == 49

    @pytest.mark.parametrize("target", ["pending", "cancelled"])
    def test_completed_sale_only_refunds(self, db_session, customer, product, target):
        sale = sales_service.create_sale(7, _payload(customer, (product, 1)))
        with pytest.raises(InvalidTransition):
            sales_service.update_sale_status(sale.id, target, 3)

    def test_cancelled_is_terminal(self, db_session, customer, product):
        sale = sales_service.create_sale(7, _payload(customer, (product, 1), payment_method="mpesa"))
        sales_service.update_sale_status(sale.id, "cancelled", 3)
        with pytest.raises(InvalidTransition):
            sales_service.update_sale_status(sale.id, "completed", 3)

    def test_unknown_status(self, db_session, customer, product):
        sale = sales_service.create_sale(7, _payload(customer, (product, 1)))
        with pytest.raises(ValidationError):
            sales_service.update_sale_status(sale.id, "shipped", 3)

    def test_unknown_sale(self, db_session):
        with pytest.raises(NotFound):
            sales_service.update_sale_status(999999, "cancelled", 3)


class TestPaymentSuccess:
    def test_completes_pending_sale_once(self, db_session, customer, product):
        sale = sales_service.create_sale(7, _payload(customer, (product, 1), payment_method="mpesa"))

        assert sales_service.apply_payment_success(sale, payment_reference="QK1", amount_paid_cents=11600)
        db_session.commit()
        assert not sales_service.apply_payment_success(sale, payment_reference="QK2", amount_paid_cents=11600)
        db_session.commit()

        sale = sales_service.get_sale(sale.id)
        assert sale.status == "completed"
        assert sale.payment_reference == "QK1"
        assert sale.amount_paid_cents == 11600


class TestReads:
    def test_list_filters_and_paginates(self, db_session, customer, product):
        for method in ("cash", "mpesa", "cash"):
            sales_service.create_sale(7, _payload(customer, (product, 1), payment_method=method))

        sales, total = sales_service.list_sales(status="completed")
        assert total == 2
        assert all(s.status == "completed" for s in sales)

        page, total = sales_service.list_sales(limit=2, offset=2)
        assert total == 3
        assert len(page) == 1

    def test_get_missing_sale(self, db_session):
        with pytest.raises(NotFound):
            sales_service.get_sale(999999)
