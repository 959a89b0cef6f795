# Overview: Service-layer operations for order numbering; encapsulates business logic and database work.

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import OrderNumberConflict, ValidationError
from ..models import DocumentSequence, Sale, Purchase
from duka.time_utils import business_date

SALE_PREFIX = "SAL"
PURCHASE_PREFIX = "PUR"

# prefix -> (model, number column) holding the numbers already issued
NUMBERED_DOCUMENTS = {
    SALE_PREFIX: (Sale, Sale.sale_number),
    PURCHASE_PREFIX: (Purchase, Purchase.purchase_number),
}


def format_order_number(prefix: str, day: date, sequence: int, pad: int = 4) -> str:
    return f"{prefix}-{day:%Y%m%d}-{sequence:0{pad}d}"


def parse_sequence(order_number: str) -> int | None:
    """Trailing numeric suffix of an order number, or None if it has none."""
    suffix = order_number.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else None


def highest_issued_sequence(prefix: str, day: date) -> int:
    """
    Highest sequence already used for (prefix, day), read from the order table.

    Only consulted when the day's counter row does not exist yet, so orders
    written before the counter (imports, restores) are never reissued.
    """
    model, column = NUMBERED_DOCUMENTS.get(prefix, (None, None))
    if model is None:
        return 0

    pattern = f"{prefix}-{day:%Y%m%d}-%"
    numbers = db.session.query(column).filter(column.like(pattern)).all()
    sequences = [parse_sequence(n) for (n,) in numbers]
    return max((s for s in sequences if s is not None), default=0)


def next_order_number(prefix: str, day: date | None = None) -> str:
    """
    Allocate the next order number for (prefix, day) inside the caller's transaction.

    The counter is bumped with a single UPDATE ... SET next_number = next_number + 1,
    which the database serializes per row. The allocation is only visible to
    other transactions once the caller commits; a rollback returns the number.

    Raises:
        OrderNumberConflict: a concurrent transaction created the day's counter
            row first. The caller must roll back and retry the whole unit of work.
    """
    if not prefix:
        raise ValidationError("prefix is required")
    day = day or business_date()

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.prefix == prefix,
            DocumentSequence.business_date == day,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(prefix=prefix, business_date=day)
            .scalar()
        )
        sequence = current - 1
    else:
        sequence = highest_issued_sequence(prefix, day) + 1
        db.session.add(DocumentSequence(prefix=prefix, business_date=day, next_number=sequence + 1))
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise OrderNumberConflict(
                f"Order number sequence {prefix}/{day:%Y%m%d} was created concurrently",
                details={"prefix": prefix, "business_date": day.isoformat()},
            ) from exc

    return format_order_number(prefix, day, sequence)
