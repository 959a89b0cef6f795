# Overview: Service-layer operations for stock on hand; encapsulates business logic and database work.

"""
Stock Ledger

Product.quantity_in_stock is the authoritative quantity on hand. This module
is the only writer of that column.

RULES:
- Service products (is_service=True) are never stock-checked or mutated.
- check_available/reserve are pure reads, used while validating a cart.
- commit_decrement/commit_increment mutate stock and MUST run inside the
  unit of work that writes the order, so a rollback undoes them too.
- Decrements are conditional (UPDATE ... WHERE quantity_in_stock >= qty):
  a concurrent order that got there first makes the update match zero rows
  and the whole order aborts with InsufficientStock. Stock never goes
  negative.
- Every mutation appends a StockMovement row in the same transaction.
"""

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..errors import InsufficientStock, InternalError, NotFound, ValidationError
from ..models import Product, StockMovement
from .concurrency import in_transaction
from duka.time_utils import utcnow

MOVEMENT_SALE = "SALE"
MOVEMENT_SALE_CANCELLED = "SALE_CANCELLED"
MOVEMENT_PURCHASE_RECEIPT = "PURCHASE_RECEIPT"


def _get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product with ID {product_id} not found", details={"product_id": product_id})
    return product


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})


def _require_unit_of_work() -> None:
    if not in_transaction():
        raise InternalError("Stock mutations must run inside an open unit of work")


def check_available(product: Product, quantity: int) -> bool:
    """True when the product can supply quantity right now. Services always can."""
    if product.is_service:
        return True
    return product.quantity_in_stock >= quantity


def reserve(product_id: int, quantity: int) -> Product:
    """
    Check that quantity can be taken from stock, without taking it.

    Raises:
        NotFound: product does not exist
        InsufficientStock: not a service and on-hand quantity is short
    """
    _require_positive(quantity)
    product = _get_product(product_id)
    if not check_available(product, quantity):
        raise InsufficientStock(product, available=product.quantity_in_stock, required=quantity)
    return product


def _append_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity_delta: int,
    reference_type: str | None,
    reference_id: int | None,
    actor_id: int | None,
    note: str | None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        quantity_delta=quantity_delta,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    return movement


def commit_decrement(
    product_id: int,
    quantity: int,
    *,
    movement_type: str = MOVEMENT_SALE,
    reference_type: str | None = None,
    reference_id: int | None = None,
    actor_id: int | None = None,
    note: str | None = None,
) -> StockMovement | None:
    """
    Take quantity out of stock. Returns the movement, or None for services.

    Raises:
        InsufficientStock: the conditional update matched no row, so the
            enclosing transaction must abort.
    """
    _require_unit_of_work()
    _require_positive(quantity)
    product = _get_product(product_id)
    if product.is_service:
        return None

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.quantity_in_stock >= quantity)
        .values(quantity_in_stock=Product.quantity_in_stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.refresh(product)
        raise InsufficientStock(product, available=product.quantity_in_stock, required=quantity)

    db.session.expire(product, ["quantity_in_stock"])
    return _append_movement(
        product_id=product_id,
        movement_type=movement_type,
        quantity_delta=-quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )


def commit_increment(
    product_id: int,
    quantity: int,
    *,
    movement_type: str = MOVEMENT_PURCHASE_RECEIPT,
    reference_type: str | None = None,
    reference_id: int | None = None,
    actor_id: int | None = None,
    note: str | None = None,
) -> StockMovement | None:
    """Put quantity back into stock. Returns the movement, or None for services."""
    _require_unit_of_work()
    _require_positive(quantity)
    product = _get_product(product_id)
    if product.is_service:
        return None

    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(quantity_in_stock=Product.quantity_in_stock + quantity)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(product, ["quantity_in_stock"])
    return _append_movement(
        product_id=product_id,
        movement_type=movement_type,
        quantity_delta=quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )


def get_movements(product_id: int) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id)
        .all()
    )
