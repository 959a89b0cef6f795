# Overview: STK push payment attempts; initiation, callback and poll reconciliation.

"""
M-Pesa Payment Reconciliation

STATE MACHINE (one MpesaTransaction per accepted STK push):
    pending -> success | failed            (callback)
    pending -> success | failed | cancelled (status query)

- A row is written only after the gateway accepts the push.
- The terminal transition is applied exactly once, guarded by
  status == "pending" under the write lock. The callback and a status poll
  can race; whichever commits first wins and the other becomes a no-op.
- Replayed callbacks never change a resolved attempt. The only thing they
  may add is a receipt number that a poll could not supply.
- Gateway calls are never made while holding the write lock.

Result codes: "0" success, anything else failed. A status query that
answers "1032" (cancelled by the customer) resolves to cancelled; the same
code in a callback is recorded as failed with its result_code kept.
"""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ConflictError, GatewayError, NotFound, ValidationError
from ..models import MpesaTransaction, Sale
from ..validation import require_int, require_object, require_str
from duka.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .mpesa_gateway import get_gateway
from .sales_service import STATUS_CANCELLED, STATUS_PENDING, STATUS_REFUNDED, apply_payment_success
from .tax_service import round_cents


TXN_PENDING = "pending"
TXN_SUCCESS = "success"
TXN_FAILED = "failed"
TXN_CANCELLED = "cancelled"

TXN_STATUSES = {TXN_PENDING, TXN_SUCCESS, TXN_FAILED, TXN_CANCELLED}

RESULT_SUCCESS = "0"
RESULT_CANCELLED_BY_USER = "1032"

PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")
MIN_AMOUNT = 1
MAX_AMOUNT = 150_000


def status_for_result(result_code, *, from_callback: bool = False) -> str:
    """Callbacks resolve to success or failed; only a status query reports cancelled."""
    code = str(result_code)
    if code == RESULT_SUCCESS:
        return TXN_SUCCESS
    if code == RESULT_CANCELLED_BY_USER and not from_callback:
        return TXN_CANCELLED
    return TXN_FAILED


def _shillings_to_cents(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return round_cents(Decimal(str(value)) * 100)
    except InvalidOperation:
        return None


# =============================================================================
# INITIATION
# =============================================================================

def initiate_stk_push(actor_id: int, payload: dict) -> MpesaTransaction:
    """
    Send an STK push and record the pending attempt.

    Args:
        payload: {phone_number, amount (whole KES), account_reference,
                 transaction_desc, sale_id?}

    Raises:
        ValidationError: bad phone, amount or text fields
        NotFound / ConflictError: sale missing or not awaiting payment
        GatewayError / TransientGatewayError: push not accepted; nothing saved
    """
    payload = require_object(payload)
    phone_number = require_str(payload, "phone_number")
    if not PHONE_PATTERN.match(phone_number):
        raise ValidationError(
            "phone_number must be in the format 2547XXXXXXXX or 2541XXXXXXXX",
            details={"phone_number": phone_number},
        )
    amount = require_int(payload, "amount", minimum=MIN_AMOUNT, maximum=MAX_AMOUNT)
    account_reference = require_str(payload, "account_reference", max_length=100)
    transaction_desc = require_str(payload, "transaction_desc", max_length=200)
    sale_id = require_int(payload, "sale_id", minimum=1, default=None)

    if sale_id is not None:
        sale = db.session.get(Sale, sale_id)
        if not sale:
            raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        if sale.status != STATUS_PENDING:
            raise ConflictError(
                f"Sale {sale.sale_number} is not awaiting payment",
                details={"sale_id": sale_id, "status": sale.status},
            )

    accepted = get_gateway().initiate(phone_number, amount, account_reference, transaction_desc)

    def _op():
        begin_write()
        txn = MpesaTransaction(
            merchant_request_id=accepted.merchant_request_id,
            checkout_request_id=accepted.checkout_request_id,
            sale_id=sale_id,
            phone_number=phone_number,
            amount_cents=amount * 100,
            account_reference=account_reference,
            transaction_desc=transaction_desc,
            status=TXN_PENDING,
            callback_received=False,
            initiated_by=actor_id,
            created_at=utcnow(),
        )
        db.session.add(txn)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "Duplicate checkout request id from gateway",
                details={"checkout_request_id": accepted.checkout_request_id},
            ) from exc
        db.session.commit()
        return txn

    txn = run_with_retry(_op)
    current_app.logger.info(
        "STK push %s accepted for %s (sale %s)", txn.checkout_request_id, phone_number, sale_id,
    )
    return txn


# =============================================================================
# RESOLUTION
# =============================================================================

def _settle_sale(txn: MpesaTransaction, payment_reference: str, amount_paid_cents: int | None) -> None:
    if txn.sale_id is None:
        return
    sale = lock_for_update(db.session.query(Sale).filter_by(id=txn.sale_id)).first()
    if sale is None:
        return

    if apply_payment_success(sale, payment_reference=payment_reference, amount_paid_cents=amount_paid_cents):
        current_app.logger.info("Sale %s completed by M-Pesa %s", sale.sale_number, payment_reference)
    elif sale.status in (STATUS_CANCELLED, STATUS_REFUNDED):
        current_app.logger.warning(
            "M-Pesa payment %s succeeded for %s sale %s; sale left unchanged",
            payment_reference, sale.status, sale.sale_number,
        )


def _backfill_receipt(txn: MpesaTransaction, receipt: str) -> None:
    """Attach a receipt number to a success that was resolved by polling."""
    if txn.status != TXN_SUCCESS or txn.transaction_id:
        return
    txn.transaction_id = receipt
    if txn.sale and txn.sale.payment_reference == txn.checkout_request_id:
        txn.sale.payment_reference = receipt


def _apply_result(
    txn: MpesaTransaction,
    *,
    result_code,
    result_desc: str | None,
    receipt: str | None = None,
    amount_paid_cents: int | None = None,
    from_callback: bool,
) -> bool:
    """
    Apply a terminal result to a locked attempt. Returns True when this call
    resolved it, False when it was already resolved.
    """
    if from_callback:
        txn.callback_received = True

    if txn.status != TXN_PENDING:
        if receipt:
            _backfill_receipt(txn, receipt)
        return False

    txn.status = status_for_result(result_code, from_callback=from_callback)
    txn.result_code = str(result_code)
    txn.result_desc = result_desc
    txn.resolved_at = utcnow()

    if txn.status == TXN_SUCCESS:
        txn.transaction_id = receipt
        _settle_sale(
            txn,
            payment_reference=receipt or txn.checkout_request_id,
            amount_paid_cents=amount_paid_cents if amount_paid_cents is not None else txn.amount_cents,
        )

    current_app.logger.info(
        "M-Pesa %s resolved as %s (ResultCode %s)", txn.checkout_request_id, txn.status, txn.result_code,
    )
    return True


def _lock_transaction(checkout_request_id: str) -> MpesaTransaction | None:
    return lock_for_update(
        db.session.query(MpesaTransaction).filter_by(checkout_request_id=checkout_request_id)
    ).first()


def parse_callback(payload) -> dict:
    """
    Extract the fields used from a Daraja STK callback:

        {"Body": {"stkCallback": {"MerchantRequestID", "CheckoutRequestID",
            "ResultCode", "ResultDesc",
            "CallbackMetadata": {"Item": [{"Name", "Value"}, ...]}}}}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Callback payload must be an object")
    body = payload.get("Body")
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        raise ValidationError("Missing Body.stkCallback")

    checkout_request_id = callback.get("CheckoutRequestID")
    result_code = callback.get("ResultCode")
    if not checkout_request_id or result_code is None:
        raise ValidationError("Callback is missing CheckoutRequestID or ResultCode")

    metadata = {}
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            metadata[item["Name"]] = item.get("Value")

    receipt = metadata.get("MpesaReceiptNumber")
    return {
        "merchant_request_id": callback.get("MerchantRequestID"),
        "checkout_request_id": str(checkout_request_id),
        "result_code": str(result_code),
        "result_desc": callback.get("ResultDesc"),
        "receipt": str(receipt) if receipt else None,
        "amount_paid_cents": _shillings_to_cents(metadata.get("Amount")),
        "phone_number": metadata.get("PhoneNumber"),
    }


def handle_callback(payload) -> MpesaTransaction | None:
    """
    Process a gateway callback. Returns the attempt, or None when the
    checkout id is unknown (logged, then acknowledged by the route).

    Raises:
        ValidationError: envelope cannot be parsed
    """
    parsed = parse_callback(payload)
    checkout_request_id = parsed["checkout_request_id"]

    def _op():
        begin_write()
        txn = _lock_transaction(checkout_request_id)
        if txn is None:
            db.session.rollback()
            return None

        resolved = _apply_result(
            txn,
            result_code=parsed["result_code"],
            result_desc=parsed["result_desc"],
            receipt=parsed["receipt"] if parsed["result_code"] == RESULT_SUCCESS else None,
            amount_paid_cents=parsed["amount_paid_cents"],
            from_callback=True,
        )
        db.session.commit()
        if not resolved:
            current_app.logger.info("Replayed callback for %s ignored", checkout_request_id)
        return txn

    txn = run_with_retry(_op)
    if txn is None:
        current_app.logger.warning("Callback for unknown checkout request %s", checkout_request_id)
    return txn


def get_transaction(checkout_request_id: str) -> MpesaTransaction:
    txn = db.session.query(MpesaTransaction).filter_by(checkout_request_id=checkout_request_id).first()
    if not txn:
        raise NotFound(
            "Transaction not found",
            details={"checkout_request_id": checkout_request_id},
        )
    return txn


def query_status(checkout_request_id: str) -> MpesaTransaction:
    """
    Current state of an attempt, asking the gateway when it is still pending.

    Raises:
        NotFound: unknown checkout id
        TransientGatewayError / GatewayError: gateway unavailable; attempt unchanged
    """
    txn = get_transaction(checkout_request_id)
    if txn.is_resolved:
        return txn

    result = get_gateway().query(checkout_request_id)
    if result.is_processing:
        return txn

    def _op():
        begin_write()
        locked = _lock_transaction(checkout_request_id)
        _apply_result(
            locked,
            result_code=result.result_code,
            result_desc=result.result_desc,
            from_callback=False,
        )
        db.session.commit()
        return locked

    return run_with_retry(_op)


def reconcile_pending(older_than_seconds: int | None = None) -> dict:
    """
    Poll the gateway for every attempt still pending after older_than_seconds.

    Gateway errors on one attempt are logged and the sweep moves on; the
    attempt stays pending for the next run.
    """
    if older_than_seconds is None:
        older_than_seconds = current_app.config.get("MPESA_RECONCILE_AFTER_SECONDS", 120)
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)

    checkout_ids = [
        row.checkout_request_id
        for row in db.session.query(MpesaTransaction.checkout_request_id)
        .filter(MpesaTransaction.status == TXN_PENDING, MpesaTransaction.created_at <= cutoff)
        .order_by(MpesaTransaction.created_at, MpesaTransaction.id)
        .all()
    ]

    summary = {"checked": len(checkout_ids), "resolved": 0, "pending": 0, "errors": 0}
    for checkout_request_id in checkout_ids:
        try:
            txn = query_status(checkout_request_id)
        except GatewayError as e:
            summary["errors"] += 1
            current_app.logger.warning("Reconcile of %s failed: %s", checkout_request_id, e.message)
            continue
        if txn.is_resolved:
            summary["resolved"] += 1
        else:
            summary["pending"] += 1
    return summary


def list_transactions(
    *,
    status: str | None = None,
    sale_id: int | None = None,
    phone_number: str | None = None,
    start_date=None,
    end_date=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[MpesaTransaction], int]:
    query = db.session.query(MpesaTransaction)
    if status:
        query = query.filter(MpesaTransaction.status == status)
    if sale_id:
        query = query.filter(MpesaTransaction.sale_id == sale_id)
    if phone_number:
        query = query.filter(MpesaTransaction.phone_number == phone_number)
    if start_date:
        query = query.filter(MpesaTransaction.created_at >= start_date)
    if end_date:
        query = query.filter(MpesaTransaction.created_at <= end_date)

    total = query.count()
    rows = (
        query.order_by(MpesaTransaction.created_at.desc(), MpesaTransaction.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return rows, total
