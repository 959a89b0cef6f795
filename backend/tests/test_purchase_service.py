import pytest

from duka.errors import InvalidTransition, NotFound, ValidationError
from duka.extensions import db
from duka.models import Product, Purchase
from duka.services import purchase_service, stock_service
from duka.time_utils import business_date


def _stock(product_id):
    return db.session.get(Product, product_id).quantity_in_stock


@pytest.fixture
def purchase(db_session, supplier, make_product):
    first = make_product(name="Cooking Oil 1L", quantity_in_stock=0)
    second = make_product(name="Rice 5kg", quantity_in_stock=2)
    return purchase_service.create_purchase(11, {
        "supplier_id": supplier.id,
        "items": [
            {"product_id": first.id, "quantity": 10, "unit_cost_cents": 25000},
            {"product_id": second.id, "quantity": 4},
        ],
        "notes": "Weekly restock",
    })


def _line(purchase, index):
    return sorted(purchase.items, key=lambda item: item.id)[index]


class TestCreatePurchase:
    def test_creates_pending_order_without_stock_change(self, purchase):
        assert purchase.purchase_number == f"PUR-{business_date():%Y%m%d}-0001"
        assert purchase.status == "pending"
        assert purchase.payment_status == "unpaid"
        assert purchase.subtotal_cents == 10 * 25000 + 4 * 7000
        assert purchase.vat_amount_cents == 40000 + 4480
        assert purchase.total_amount_cents == purchase.subtotal_cents + purchase.vat_amount_cents
        assert [_stock(item.product_id) for item in purchase.items] == [0, 2]

    def test_unknown_supplier(self, db_session, product):
        with pytest.raises(NotFound):
            purchase_service.create_purchase(11, {
                "supplier_id": 999999,
                "items": [{"product_id": product.id, "quantity": 1}],
            })

    def test_expected_date_is_parsed(self, db_session, supplier, product):
        purchase = purchase_service.create_purchase(11, {
            "supplier_id": supplier.id,
            "items": [{"product_id": product.id, "quantity": 1}],
            "expected_date": "2026-10-25T08:30:00Z",
        })
        assert purchase.expected_date.isoformat().startswith("2026-10-25T08:30:00")

    @pytest.mark.parametrize("value", [20261025, ["2026-10-25"]])
    def test_non_string_expected_date(self, db_session, supplier, product, value):
        with pytest.raises(ValidationError):
            purchase_service.create_purchase(11, {
                "supplier_id": supplier.id,
                "items": [{"product_id": product.id, "quantity": 1}],
                "expected_date": value,
            })

    def test_bad_expected_date(self, db_session, supplier, product):
        with pytest.raises(ValidationError):
            purchase_service.create_purchase(11, {
                "supplier_id": supplier.id,
                "items": [{"product_id": product.id, "quantity": 1}],
                "expected_date": "next tuesday",
            })


class TestReceiveItems:
    def test_partial_receipt_moves_to_ordered(self, purchase):
        line = _line(purchase, 0)
        product_id = line.product_id

        updated = purchase_service.receive_items(purchase.id, 11, [{"purchase_item_id": line.id, "quantity_received": 4}])

        assert updated.status == "ordered"
        assert _line(updated, 0).quantity_received == 4
        assert _stock(product_id) == 4
        movement = stock_service.get_movements(product_id)[0]
        assert movement.movement_type == stock_service.MOVEMENT_PURCHASE_RECEIPT
        assert movement.quantity_delta == 4

    def test_full_receipt_moves_to_received(self, purchase):
        first, second = _line(purchase, 0), _line(purchase, 1)
        purchase_service.receive_items(purchase.id, 11, [{"purchase_item_id": first.id, "quantity_received": 6}])
        updated = purchase_service.receive_items(purchase.id, 11, [
            {"purchase_item_id": first.id, "quantity_received": 4},
            {"purchase_item_id": second.id, "quantity_received": 4},
        ])

        assert updated.status == "received"
        assert updated.received_at is not None
        assert all(item.quantity_received == item.quantity_ordered for item in updated.items)
        assert _stock(second.product_id) == 6

    def test_over_receipt_is_rejected_before_any_write(self, purchase):
        first, second = _line(purchase, 0), _line(purchase, 1)
        first_product, second_product = first.product_id, second.product_id

        with pytest.raises(ValidationError) as exc:
            purchase_service.receive_items(purchase.id, 11, [
                {"purchase_item_id": first.id, "quantity_received": 5},
                {"purchase_item_id": second.id, "quantity_received": 5},
            ])
        assert exc.value.details["outstanding"] == 4

        fresh = purchase_service.get_purchase(purchase.id)
        assert fresh.status == "pending"
        assert [item.quantity_received for item in fresh.items] == [0, 0]
        assert _stock(first_product) == 0
        assert _stock(second_product) == 2

    def test_item_from_another_purchase(self, purchase, supplier, product):
        other = purchase_service.create_purchase(11, {
            "supplier_id": supplier.id,
            "items": [{"product_id": product.id, "quantity": 1}],
        })
        with pytest.raises(ValidationError):
            purchase_service.receive_items(purchase.id, 11, [
                {"purchase_item_id": _line(other, 0).id, "quantity_received": 1},
            ])

    def test_lines_are_keyed_by_purchase_item_id(self, purchase):
        line = _line(purchase, 0)
        with pytest.raises(ValidationError):
            purchase_service.receive_items(purchase.id, 11, [{"item_id": line.id, "quantity_received": 1}])

        updated = purchase_service.receive_items(purchase.id, 11, [{"purchase_item_id": line.id, "quantity_received": 5}])
        assert _line(updated, 0).quantity_received == 5

    @pytest.mark.parametrize("items", [[], None, [{"purchase_item_id": 1, "quantity_received": 0}]])
    def test_malformed_receipt(self, purchase, items):
        with pytest.raises(ValidationError):
            purchase_service.receive_items(purchase.id, 11, items)

    def test_cancelled_purchase_cannot_receive(self, purchase):
        line_id = _line(purchase, 0).id
        purchase_service.update_purchase_status(purchase.id, "cancelled", 11)
        with pytest.raises(InvalidTransition):
            purchase_service.receive_items(purchase.id, 11, [{"purchase_item_id": line_id, "quantity_received": 1}])

    def test_received_purchase_cannot_receive_again(self, purchase):
        first, second = _line(purchase, 0), _line(purchase, 1)
        purchase_service.receive_items(purchase.id, 11, [
            {"purchase_item_id": first.id, "quantity_received": 10},
            {"purchase_item_id": second.id, "quantity_received": 4},
        ])
        with pytest.raises(InvalidTransition):
            purchase_service.receive_items(purchase.id, 11, [{"purchase_item_id": first.id, "quantity_received": 1}])


class TestPurchaseStatus:
    def test_pending_to_ordered_to_cancelled(self, purchase):
        assert purchase_service.update_purchase_status(purchase.id, "ordered", 11).status == "ordered"
        assert purchase_service.update_purchase_status(purchase.id, "cancelled", 11).status == "cancelled"

    def test_received_requires_every_line(self, purchase):
        purchase_service.update_purchase_status(purchase.id, "ordered", 11)
        with pytest.raises(InvalidTransition):
            purchase_service.update_purchase_status(purchase.id, "received", 11)

    def test_pending_cannot_jump_to_received(self, purchase):
        with pytest.raises(InvalidTransition):
            purchase_service.update_purchase_status(purchase.id, "received", 11)

    def test_cancelled_is_terminal(self, purchase):
        purchase_service.update_purchase_status(purchase.id, "cancelled", 11)
        with pytest.raises(InvalidTransition):
            purchase_service.update_purchase_status(purchase.id, "ordered", 11)


class TestUpdatePurchase:
    def test_updates_allowed_fields(self, purchase):
        updated = purchase_service.update_purchase(purchase.id, {
            "notes": "Deliver before noon",
            "expected_date": "2026-10-20T09:00:00Z",
        })
        assert updated.notes == "Deliver before noon"
        assert updated.expected_date.isoformat().startswith("2026-10-20T09:00:00")

    @pytest.mark.parametrize("field", ["status", "total_amount_cents", "supplier_id", "purchase_number"])
    def test_rejects_other_fields(self, purchase, field):
        with pytest.raises(ValidationError):
            purchase_service.update_purchase(purchase.id, {field: "x"})
        assert db.session.get(Purchase, purchase.id).status == "pending"

    def test_empty_patch(self, purchase):
        with pytest.raises(ValidationError):
            purchase_service.update_purchase(purchase.id, {})


class TestReads:
    def test_list_by_status(self, purchase, supplier, product):
        purchase_service.create_purchase(11, {
            "supplier_id": supplier.id,
            "items": [{"product_id": product.id, "quantity": 1}],
        })
        purchase_service.update_purchase_status(purchase.id, "ordered", 11)

        rows, total = purchase_service.list_purchases(status="ordered")
        assert total == 1
        assert rows[0].id == purchase.id

        rows, total = purchase_service.list_purchases(supplier_id=supplier.id)
        assert total == 2
