from __future__ import annotations

from ..extensions import db
from duka.time_utils import to_utc_z


class MpesaTransaction(db.Model):
    """
    One STK push payment attempt.

    LIFECYCLE:
    - pending: gateway accepted the push; waiting for callback or query
    - success / failed / cancelled: terminal, written exactly once

    A row exists only once the gateway accepted the request; rejected
    initiations are never persisted. sale_id is nullable because a push may
    be sent before an order exists.
    """
    __tablename__ = "mpesa_transactions"
    __table_args__ = (
        db.Index("ix_mpesa_transactions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_request_id = db.Column(db.String(64), nullable=False)
    checkout_request_id = db.Column(db.String(64), nullable=False, unique=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    phone_number = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    account_reference = db.Column(db.String(100), nullable=False)
    transaction_desc = db.Column(db.String(200), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    result_code = db.Column(db.String(16), nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    callback_received = db.Column(db.Boolean, nullable=False, default=False)
    # M-Pesa receipt number, set only on success
    transaction_id = db.Column(db.String(64), nullable=True, index=True)

    initiated_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sale = db.relationship("Sale", backref=db.backref("mpesa_transactions", lazy=True))

    @property
    def is_resolved(self) -> bool:
        return self.status != "pending"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_request_id": self.merchant_request_id,
            "checkout_request_id": self.checkout_request_id,
            "sale_id": self.sale_id,
            "sale_number": self.sale.sale_number if self.sale else None,
            "phone_number": self.phone_number,
            "amount_cents": self.amount_cents,
            "account_reference": self.account_reference,
            "transaction_desc": self.transaction_desc,
            "status": self.status,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "callback_received": self.callback_received,
            "transaction_id": self.transaction_id,
            "initiated_by": self.initiated_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }
