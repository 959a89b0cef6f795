# Overview: Sale creation, reads, and status lifecycle; the sales side of the transaction coordinator.

"""
Sales Service - atomic sale creation and sale lifecycle

A sale is created in ONE unit of work:
    validate + price cart -> allocate sale number -> insert header and items
    -> decrement stock for physical products -> commit
Any failure rolls all of it back: no header, no items, no stock change and
no consumed sale number.

STATUS MACHINE:
    pending   -> completed | cancelled
    completed -> refunded
    cancelled, refunded: terminal
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import InvalidTransition, NotFound, OrderNumberConflict, ValidationError
from ..models import Sale, SaleItem
from ..validation import (
    MAX_AMOUNT_CENTS,
    MAX_QUANTITY,
    optional_str,
    require_choice,
    require_int,
    require_items,
    require_object,
)
from duka.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import SALE_PREFIX, next_order_number
from .order_builder import LineRequest, SaleDraft, build_sale_draft
from . import stock_service


STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"

VALID_STATUSES = {STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_REFUNDED}

SALE_TRANSITIONS = {
    STATUS_PENDING: {STATUS_COMPLETED, STATUS_CANCELLED},
    STATUS_COMPLETED: {STATUS_REFUNDED},
    STATUS_CANCELLED: set(),
    STATUS_REFUNDED: set(),
}

PAYMENT_METHODS = {"cash", "mpesa", "card", "credit"}

# Paid at the counter: the sale is complete the moment it is committed.
# Everything else waits for settlement (STK push callback, account payment).
SETTLED_AT_CHECKOUT = {"cash", "card"}


@dataclass(frozen=True)
class SaleRequest:
    customer_id: int
    lines: list[LineRequest]
    payment_method: str
    payment_reference: str | None = None
    discount_amount_cents: int = 0
    notes: str | None = None


def parse_sale_request(payload: dict) -> SaleRequest:
    """Validate the shape of a sale request. No database access."""
    payload = require_object(payload)
    lines = [
        LineRequest(
            product_id=require_int(item, "product_id", minimum=1),
            quantity=require_int(item, "quantity", minimum=1, maximum=MAX_QUANTITY),
            unit_amount_cents=require_int(item, "unit_price_cents", minimum=0, maximum=MAX_AMOUNT_CENTS, default=None),
            discount_amount_cents=require_int(item, "discount_amount_cents", minimum=0, maximum=MAX_AMOUNT_CENTS, default=0),
        )
        for item in require_items(payload)
    ]
    return SaleRequest(
        customer_id=require_int(payload, "customer_id", minimum=1),
        lines=lines,
        payment_method=require_choice(payload, "payment_method", PAYMENT_METHODS),
        payment_reference=optional_str(payload, "payment_reference", max_length=128),
        discount_amount_cents=require_int(payload, "discount_amount_cents", minimum=0, maximum=MAX_AMOUNT_CENTS, default=0),
        notes=optional_str(payload, "notes"),
    )


def _insert_sale(draft: SaleDraft, request: SaleRequest, cashier_id: int) -> Sale:
    settled = request.payment_method in SETTLED_AT_CHECKOUT
    now = utcnow()

    sale = Sale(
        sale_number=next_order_number(SALE_PREFIX),
        customer_id=draft.counterparty_id,
        cashier_id=cashier_id,
        subtotal_cents=draft.subtotal_cents,
        vat_amount_cents=draft.vat_amount_cents,
        discount_amount_cents=draft.discount_amount_cents,
        total_amount_cents=draft.total_amount_cents,
        amount_paid_cents=draft.total_amount_cents if settled else 0,
        status=STATUS_COMPLETED if settled else STATUS_PENDING,
        payment_method=request.payment_method,
        payment_reference=request.payment_reference,
        notes=request.notes,
        sale_date=now,
        completed_at=now if settled else None,
    )
    db.session.add(sale)

    for line in draft.lines:
        db.session.add(SaleItem(
            sale=sale,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price_cents=line.unit_amount_cents,
            vat_rate_bps=line.vat_rate_bps,
            is_vat_inclusive=line.is_vat_inclusive,
            vat_amount_cents=line.vat_amount_cents,
            discount_amount_cents=line.discount_amount_cents,
            line_total_cents=line.line_total_cents,
        ))

    try:
        db.session.flush()
    except IntegrityError as exc:
        raise OrderNumberConflict(
            f"Sale number {sale.sale_number} is already taken",
            details={"sale_number": sale.sale_number},
        ) from exc
    return sale


def create_sale(cashier_id: int, payload: dict) -> Sale:
    """
    Create a sale from a cart.

    Args:
        cashier_id: authenticated actor creating the sale
        payload: {customer_id, items: [{product_id, quantity, unit_price_cents?,
                 discount_amount_cents?}], payment_method, payment_reference?,
                 discount_amount_cents?, notes?}

    Raises:
        ValidationError, NotFound, InsufficientStock: nothing was written
    """
    request = parse_sale_request(payload)

    def _op():
        begin_write()
        draft = build_sale_draft(request.customer_id, request.lines, request.discount_amount_cents)
        sale = _insert_sale(draft, request, cashier_id)

        for line in draft.lines:
            if line.is_service:
                continue
            stock_service.commit_decrement(
                line.product_id,
                line.quantity,
                movement_type=stock_service.MOVEMENT_SALE,
                reference_type="sale",
                reference_id=sale.id,
                actor_id=cashier_id,
                note=f"Sale {sale.sale_number}",
            )

        db.session.commit()
        return sale

    return run_with_retry(_op)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def list_sales(
    *,
    status: str | None = None,
    customer_id: int | None = None,
    cashier_id: int | None = None,
    payment_method: str | None = None,
    start_date=None,
    end_date=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    """Paginated sales, newest first. Returns (sales, total matching)."""
    query = db.session.query(Sale)
    if status:
        query = query.filter(Sale.status == status)
    if customer_id:
        query = query.filter(Sale.customer_id == customer_id)
    if cashier_id:
        query = query.filter(Sale.cashier_id == cashier_id)
    if payment_method:
        query = query.filter(Sale.payment_method == payment_method)
    if start_date:
        query = query.filter(Sale.sale_date >= start_date)
    if end_date:
        query = query.filter(Sale.sale_date <= end_date)

    total = query.count()
    sales = query.order_by(Sale.sale_date.desc(), Sale.id.desc()).limit(limit).offset(offset).all()
    return sales, total


def _restock(sale: Sale, actor_id: int) -> None:
    for item in sale.items:
        stock_service.commit_increment(
            item.product_id,
            item.quantity,
            movement_type=stock_service.MOVEMENT_SALE_CANCELLED,
            reference_type="sale",
            reference_id=sale.id,
            actor_id=actor_id,
            note=f"Cancelled sale {sale.sale_number}",
        )


def update_sale_status(sale_id: int, new_status: str, actor_id: int) -> Sale:
    """
    Move a sale along its status machine.

    Cancelling a pending sale returns its physical items to stock in the same
    unit of work. Refunds leave stock alone; returned goods are received
    separately.

    Raises:
        ValidationError: unknown status
        NotFound: sale missing
        InvalidTransition: the move is not in SALE_TRANSITIONS
    """
    if new_status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )

    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})

        if new_status not in SALE_TRANSITIONS[sale.status]:
            raise InvalidTransition("sale", sale.status, new_status)

        if new_status == STATUS_CANCELLED:
            _restock(sale, actor_id)
        elif new_status == STATUS_COMPLETED:
            sale.completed_at = utcnow()

        sale.status = new_status
        db.session.commit()
        return sale

    return run_with_retry(_op)


def apply_payment_success(sale: Sale, *, payment_reference: str, amount_paid_cents: int | None) -> bool:
    """
    Mark a locked sale as paid by a confirmed mobile-money payment.

    Runs inside the caller's unit of work and does not commit. Idempotent:
    returns True only when this call moved the sale to completed. A sale
    that is already completed keeps its first payment reference; cancelled
    or refunded sales are left untouched.
    """
    if sale.status != STATUS_PENDING:
        return False

    sale.status = STATUS_COMPLETED
    sale.payment_reference = payment_reference
    sale.amount_paid_cents = amount_paid_cents if amount_paid_cents is not None else sale.total_amount_cents
    sale.completed_at = utcnow()
    return True
