# Overview: Purchase order creation, receiving, header edits, and status lifecycle.

"""
Purchase Service

LIFECYCLE:
1. pending:   created, nothing received, stock untouched
2. ordered:   sent to supplier, or partially received
3. received:  every line fully received
4. cancelled: abandoned before full receipt

Stock rises only when lines are received, never when the order is created.
A receipt is all-or-nothing: every line in the request is validated before
any quantity or stock is written.
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import InvalidTransition, NotFound, OrderNumberConflict, ValidationError
from ..models import Purchase, PurchaseItem
from ..validation import (
    MAX_AMOUNT_CENTS,
    MAX_QUANTITY,
    ModelValidationPolicy,
    require_int,
    require_items,
    require_object,
    validate_payload,
)
from duka.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import PURCHASE_PREFIX, next_order_number
from .order_builder import LineRequest, build_purchase_draft
from . import stock_service


STATUS_PENDING = "pending"
STATUS_ORDERED = "ordered"
STATUS_RECEIVED = "received"
STATUS_CANCELLED = "cancelled"

VALID_STATUSES = {STATUS_PENDING, STATUS_ORDERED, STATUS_RECEIVED, STATUS_CANCELLED}

PURCHASE_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ORDERED, STATUS_CANCELLED},
    STATUS_ORDERED: {STATUS_RECEIVED, STATUS_CANCELLED},
    STATUS_RECEIVED: set(),
    STATUS_CANCELLED: set(),
}

PURCHASE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"expected_date", "notes"}),
)


def _header_fields(payload: dict) -> dict:
    """expected_date and notes, coerced the same way update_purchase coerces them."""
    return validate_payload(
        model=Purchase,
        payload={key: payload[key] for key in PURCHASE_UPDATE_POLICY.writable_fields if key in payload},
        policy=PURCHASE_UPDATE_POLICY,
        partial=True,
    )


def create_purchase(user_id: int, payload: dict) -> Purchase:
    """
    Create a purchase order.

    Args:
        user_id: authenticated actor
        payload: {supplier_id, items: [{product_id, quantity, unit_cost_cents?,
                 discount_amount_cents?}], discount_amount_cents?,
                 expected_date?, notes?}
    """
    payload = require_object(payload)
    supplier_id = require_int(payload, "supplier_id", minimum=1)
    lines = [
        LineRequest(
            product_id=require_int(item, "product_id", minimum=1),
            quantity=require_int(item, "quantity", minimum=1, maximum=MAX_QUANTITY),
            unit_amount_cents=require_int(item, "unit_cost_cents", minimum=0, maximum=MAX_AMOUNT_CENTS, default=None),
            discount_amount_cents=require_int(item, "discount_amount_cents", minimum=0, maximum=MAX_AMOUNT_CENTS, default=0),
        )
        for item in require_items(payload)
    ]
    discount = require_int(payload, "discount_amount_cents", minimum=0, maximum=MAX_AMOUNT_CENTS, default=0)
    header = _header_fields(payload)

    def _op():
        begin_write()
        draft = build_purchase_draft(supplier_id, lines, discount)

        purchase = Purchase(
            purchase_number=next_order_number(PURCHASE_PREFIX),
            supplier_id=supplier_id,
            user_id=user_id,
            expected_date=header.get("expected_date"),
            subtotal_cents=draft.subtotal_cents,
            vat_amount_cents=draft.vat_amount_cents,
            discount_amount_cents=draft.discount_amount_cents,
            total_amount_cents=draft.total_amount_cents,
            status=STATUS_PENDING,
            payment_status="unpaid",
            notes=header.get("notes"),
            purchase_date=utcnow(),
        )
        db.session.add(purchase)
        for line in draft.lines:
            db.session.add(PurchaseItem(
                purchase=purchase,
                product_id=line.product_id,
                quantity_ordered=line.quantity,
                quantity_received=0,
                unit_cost_cents=line.unit_amount_cents,
                vat_rate_bps=line.vat_rate_bps,
                vat_amount_cents=line.vat_amount_cents,
                discount_amount_cents=line.discount_amount_cents,
                line_total_cents=line.line_total_cents,
            ))

        try:
            db.session.flush()
        except IntegrityError as exc:
            raise OrderNumberConflict(
                f"Purchase number {purchase.purchase_number} is already taken",
                details={"purchase_number": purchase.purchase_number},
            ) from exc

        db.session.commit()
        return purchase

    return run_with_retry(_op)


def get_purchase(purchase_id: int) -> Purchase:
    purchase = db.session.get(Purchase, purchase_id)
    if not purchase:
        raise NotFound(f"Purchase {purchase_id} not found", details={"purchase_id": purchase_id})
    return purchase


def list_purchases(
    *,
    status: str | None = None,
    supplier_id: int | None = None,
    payment_status: str | None = None,
    start_date=None,
    end_date=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Purchase], int]:
    query = db.session.query(Purchase)
    if status:
        query = query.filter(Purchase.status == status)
    if supplier_id:
        query = query.filter(Purchase.supplier_id == supplier_id)
    if payment_status:
        query = query.filter(Purchase.payment_status == payment_status)
    if start_date:
        query = query.filter(Purchase.purchase_date >= start_date)
    if end_date:
        query = query.filter(Purchase.purchase_date <= end_date)

    total = query.count()
    purchases = (
        query.order_by(Purchase.purchase_date.desc(), Purchase.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return purchases, total


def _lock_purchase(purchase_id: int) -> Purchase:
    purchase = lock_for_update(db.session.query(Purchase).filter_by(id=purchase_id)).first()
    if not purchase:
        raise NotFound(f"Purchase {purchase_id} not found", details={"purchase_id": purchase_id})
    return purchase


def _parse_receipt(items: list) -> dict[int, int]:
    """Collapse [{purchase_item_id, quantity_received}] into {purchase_item_id: total quantity}."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty array")

    quantities: dict[int, int] = {}
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        purchase_item_id = require_int(item, "purchase_item_id", minimum=1)
        quantity = require_int(item, "quantity_received", minimum=1, maximum=MAX_QUANTITY)
        quantities[purchase_item_id] = quantities.get(purchase_item_id, 0) + quantity
    return quantities


def receive_items(purchase_id: int, user_id: int, items: list) -> Purchase:
    """
    Record received quantities against purchase lines and add them to stock.

    Args:
        items: [{purchase_item_id, quantity_received}] where purchase_item_id is a PurchaseItem id

    Status afterwards: received when every line is complete, otherwise
    ordered once anything has been received.

    Raises:
        ValidationError: unknown line, non-positive quantity, or more than
            the outstanding quantity (nothing is written)
        InvalidTransition: purchase is cancelled or already received
    """
    quantities = _parse_receipt(items)

    def _op():
        begin_write()
        purchase = _lock_purchase(purchase_id)
        if purchase.status in (STATUS_CANCELLED, STATUS_RECEIVED):
            raise InvalidTransition(
                "purchase", purchase.status, STATUS_RECEIVED,
                reason="purchase can no longer receive items",
            )

        lines = {line.id: line for line in purchase.items}
        for purchase_item_id, quantity in quantities.items():
            line = lines.get(purchase_item_id)
            if line is None:
                raise ValidationError(
                    f"Item {purchase_item_id} does not belong to purchase {purchase.purchase_number}",
                    details={"purchase_item_id": purchase_item_id, "purchase_id": purchase.id},
                )
            outstanding = line.quantity_ordered - line.quantity_received
            if quantity > outstanding:
                raise ValidationError(
                    f"Cannot receive {quantity} of item {purchase_item_id}; only {outstanding} outstanding",
                    details={"purchase_item_id": purchase_item_id, "outstanding": outstanding, "requested": quantity},
                )

        for purchase_item_id, quantity in quantities.items():
            line = lines[purchase_item_id]
            line.quantity_received += quantity
            stock_service.commit_increment(
                line.product_id,
                quantity,
                movement_type=stock_service.MOVEMENT_PURCHASE_RECEIPT,
                reference_type="purchase",
                reference_id=purchase.id,
                actor_id=user_id,
                note=f"Received on {purchase.purchase_number}",
            )

        if all(line.is_fully_received for line in purchase.items):
            purchase.status = STATUS_RECEIVED
            purchase.received_at = utcnow()
        else:
            purchase.status = STATUS_ORDERED

        db.session.commit()
        return purchase

    return run_with_retry(_op)


def update_purchase_status(purchase_id: int, new_status: str, user_id: int) -> Purchase:
    if new_status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )

    def _op():
        begin_write()
        purchase = _lock_purchase(purchase_id)
        if new_status not in PURCHASE_TRANSITIONS[purchase.status]:
            raise InvalidTransition("purchase", purchase.status, new_status)

        if new_status == STATUS_RECEIVED:
            if not all(line.is_fully_received for line in purchase.items):
                raise InvalidTransition(
                    "purchase", purchase.status, new_status,
                    reason="not every line has been fully received",
                )
            purchase.received_at = utcnow()

        purchase.status = new_status
        db.session.commit()
        return purchase

    return run_with_retry(_op)


def update_purchase(purchase_id: int, payload: dict) -> Purchase:
    """Patch editable header fields. Only expected_date and notes are accepted."""
    patch = validate_payload(
        model=Purchase,
        payload=payload,
        policy=PURCHASE_UPDATE_POLICY,
        partial=True,
    )
    if not patch:
        raise ValidationError("No updatable fields supplied")

    def _op():
        begin_write()
        purchase = _lock_purchase(purchase_id)
        if purchase.status in (STATUS_RECEIVED, STATUS_CANCELLED):
            raise InvalidTransition(
                "purchase", purchase.status, purchase.status,
                reason="closed purchases cannot be edited",
            )
        for key, value in patch.items():
            setattr(purchase, key, value)
        db.session.commit()
        return purchase

    return run_with_retry(_op)
