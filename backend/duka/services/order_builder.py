# Overview: Cart validation and pricing; produces order drafts without writing anything.

"""
Order Builder

Turns a cart into a priced, VAT-computed draft:

    customer/supplier id + [{product_id, quantity, unit price, discount}]
        -> SaleDraft / PurchaseDraft

Nothing here writes to the database. The transaction coordinator
(sales_service / purchase_service) calls the builder inside its unit of
work, after taking the write lock, so the whole cart is validated against
the same snapshot the writes will use. A later line failing validation
therefore never leaves earlier lines applied.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..errors import InsufficientStock, NotFound, ValidationError
from ..models import Customer, Product, Supplier
from .stock_service import check_available
from .tax_service import price_line


@dataclass(frozen=True)
class LineRequest:
    product_id: int
    quantity: int
    unit_amount_cents: int | None = None
    discount_amount_cents: int = 0


@dataclass(frozen=True)
class DraftLine:
    product_id: int
    product_name: str
    is_service: bool
    quantity: int
    unit_amount_cents: int
    vat_rate_bps: int
    is_vat_inclusive: bool
    discount_amount_cents: int
    vat_amount_cents: int
    line_total_cents: int
    net_cents: int


@dataclass(frozen=True)
class OrderDraft:
    counterparty_id: int
    lines: tuple[DraftLine, ...]
    subtotal_cents: int
    vat_amount_cents: int
    discount_amount_cents: int
    total_amount_cents: int

    def is_consistent(self) -> bool:
        return (
            self.total_amount_cents
            == self.subtotal_cents + self.vat_amount_cents - self.discount_amount_cents
            and self.subtotal_cents == sum(line.net_cents for line in self.lines)
            and self.vat_amount_cents == sum(line.vat_amount_cents for line in self.lines)
        )


class SaleDraft(OrderDraft):
    pass


class PurchaseDraft(OrderDraft):
    pass


def _load_active_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or not product.is_active:
        raise NotFound(f"Product with ID {product_id} not found", details={"product_id": product_id})
    return product


def _price(
    line: LineRequest,
    product: Product,
    *,
    default_unit_cents: int,
    vat_rate_bps: int,
    inclusive: bool,
) -> DraftLine:
    unit = line.unit_amount_cents if line.unit_amount_cents is not None else default_unit_cents
    gross = unit * line.quantity
    if line.discount_amount_cents > gross:
        raise ValidationError(
            f"Discount on {product.name} exceeds the line amount",
            details={"product_id": product.id, "discount_amount_cents": line.discount_amount_cents, "line_amount_cents": gross},
        )

    amounts = price_line(
        unit_price_cents=unit,
        quantity=line.quantity,
        discount_amount_cents=line.discount_amount_cents,
        vat_rate_bps=vat_rate_bps,
        inclusive=inclusive,
    )
    return DraftLine(
        product_id=product.id,
        product_name=product.name,
        is_service=product.is_service,
        quantity=line.quantity,
        unit_amount_cents=unit,
        vat_rate_bps=vat_rate_bps,
        is_vat_inclusive=inclusive,
        discount_amount_cents=line.discount_amount_cents,
        vat_amount_cents=amounts.vat_amount_cents,
        line_total_cents=amounts.line_total_cents,
        net_cents=amounts.net_cents,
    )


def _totals(lines: list[DraftLine], discount_amount_cents: int) -> tuple[int, int, int]:
    subtotal = sum(line.net_cents for line in lines)
    vat = sum(line.vat_amount_cents for line in lines)
    if discount_amount_cents > subtotal + vat:
        raise ValidationError(
            "Order discount exceeds the order amount",
            details={"discount_amount_cents": discount_amount_cents, "order_amount_cents": subtotal + vat},
        )
    return subtotal, vat, subtotal + vat - discount_amount_cents


def _require_lines(lines: list[LineRequest]) -> None:
    if not lines:
        raise ValidationError("At least one item is required")


def build_sale_draft(
    customer_id: int,
    lines: list[LineRequest],
    discount_amount_cents: int = 0,
) -> SaleDraft:
    """
    Validate and price a sale cart.

    Stock is checked per product against the total quantity requested across
    all lines for that product, without taking it. The actual decrement
    happens in stock_service.commit_decrement during commit.

    Raises:
        ValidationError: empty cart or discount larger than the amount
        NotFound: customer missing, product missing or inactive
        InsufficientStock: physical product short of the requested quantity
    """
    _require_lines(lines)

    if db.session.get(Customer, customer_id) is None:
        raise NotFound("Customer not found", details={"customer_id": customer_id})

    requested: dict[int, int] = {}
    priced: list[DraftLine] = []
    for line in lines:
        product = _load_active_product(line.product_id)

        requested[product.id] = requested.get(product.id, 0) + line.quantity
        if not check_available(product, requested[product.id]):
            raise InsufficientStock(product, available=product.quantity_in_stock, required=requested[product.id])

        priced.append(_price(
            line,
            product,
            default_unit_cents=product.selling_price_cents,
            vat_rate_bps=product.vat_rate_bps,
            inclusive=product.is_vat_inclusive,
        ))

    subtotal, vat, total = _totals(priced, discount_amount_cents)
    return SaleDraft(
        counterparty_id=customer_id,
        lines=tuple(priced),
        subtotal_cents=subtotal,
        vat_amount_cents=vat,
        discount_amount_cents=discount_amount_cents,
        total_amount_cents=total,
    )


def build_purchase_draft(
    supplier_id: int,
    lines: list[LineRequest],
    discount_amount_cents: int = 0,
) -> PurchaseDraft:
    """
    Validate and price a purchase order. Supplier must be active; VAT is
    always added on top (no inclusive mode for purchases); stock is not checked.
    """
    _require_lines(lines)

    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None or not supplier.is_active:
        raise NotFound("Supplier not found or inactive", details={"supplier_id": supplier_id})

    priced: list[DraftLine] = []
    for line in lines:
        product = _load_active_product(line.product_id)
        priced.append(_price(
            line,
            product,
            default_unit_cents=product.cost_price_cents,
            vat_rate_bps=product.vat_rate_bps,
            inclusive=False,
        ))

    subtotal, vat, total = _totals(priced, discount_amount_cents)
    return PurchaseDraft(
        counterparty_id=supplier_id,
        lines=tuple(priced),
        subtotal_cents=subtotal,
        vat_amount_cents=vat,
        discount_amount_cents=discount_amount_cents,
        total_amount_cents=total,
    )
