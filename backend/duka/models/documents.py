from __future__ import annotations

from ..extensions import db
from duka.time_utils import to_utc_z


class DocumentSequence(db.Model):
    """
    Atomic per-(prefix, day) order number counter.

    next_number is only ever advanced with an in-place UPDATE inside the
    order's transaction; it is never read-then-written from Python.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "business_date", name="uq_doc_sequences_prefix_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    business_date = db.Column(db.Date, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prefix": self.prefix,
            "business_date": self.business_date.isoformat() if self.business_date else None,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
