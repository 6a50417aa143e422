from __future__ import annotations

from sqlalchemy.orm import validates

from ..exceptions import ValidationError
from ..extensions import db
from ..time_utils import to_utc_z
from ..validation import format_money


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

OFFER_PENDING = "pending"
OFFER_APPROVED = "approved"
OFFER_REJECTED = "rejected"
OFFER_WITHDRAWN = "withdrawn"
OFFER_EXPIRED = "expired"
OFFER_STATUSES = (OFFER_PENDING, OFFER_APPROVED, OFFER_REJECTED, OFFER_WITHDRAWN, OFFER_EXPIRED)
OFFER_OPEN_STATUSES = (OFFER_PENDING, OFFER_APPROVED)

INVOICE_OPEN = "open"
INVOICE_SETTLED = "settled"
INVOICE_VOID = "void"
INVOICE_STATUSES = (INVOICE_OPEN, INVOICE_SETTLED, INVOICE_VOID)

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED)
PAYMENT_TERMINAL_STATUSES = (PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED)

_OPEN_BID_WHERE = db.text("status IN ('pending', 'approved')")


class Offer(db.Model):
    """
    A buyer's proposal to purchase a property at a stated price.

    LIFECYCLE:
        pending -> approved -> expired
        pending -> rejected | withdrawn

    offer_price, deposit_amount and currency are frozen once the offer
    leaves pending.
    """
    __tablename__ = "offers"
    __table_args__ = (
        db.UniqueConstraint("reference", name="uq_offers_reference"),
        # One live bid per buyer and property
        db.Index(
            "uq_offers_open_bid",
            "buyer_id",
            "property_id",
            unique=True,
            sqlite_where=_OPEN_BID_WHERE,
            postgresql_where=_OPEN_BID_WHERE,
        ),
        db.Index("ix_offers_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(32), nullable=False)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # Listing lives in the external property catalogue
    property_id = db.Column(db.String(64), nullable=False, index=True)

    offer_price = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    deposit_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    payment_method = db.Column(db.String(16), nullable=False)
    estimated_timeline = db.Column(db.String(32), nullable=False)
    additional_notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=OFFER_PENDING, index=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Review audit trail
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(500), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    buyer = db.relationship("User", foreign_keys=[buyer_id])
    invoice = db.relationship("Invoice", back_populates="offer", uselist=False)
    payments = db.relationship("Payment", back_populates="offer", lazy=True, order_by="Payment.created_at")
    __mapper_args__ = {"version_id_col": version_id}

    @validates("offer_price", "deposit_amount", "currency")
    def _guard_frozen_terms(self, key, value):
        if self.id is not None and self.status not in (None, OFFER_PENDING):
            if getattr(self, key) != value:
                raise ValidationError(f"{key} cannot change once the offer is {self.status}")
        return value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "buyer_id": self.buyer_id,
            "property_id": self.property_id,
            "offer_price": format_money(self.offer_price),
            "currency": self.currency,
            "deposit_amount": format_money(self.deposit_amount),
            "payment_method": self.payment_method,
            "estimated_timeline": self.estimated_timeline,
            "additional_notes": self.additional_notes,
            "status": self.status,
            "submitted_at": to_utc_z(self.submitted_at),
            "expires_at": to_utc_z(self.expires_at),
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "rejection_reason": self.rejection_reason,
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class Invoice(db.Model):
    """
    Billing record generated once per approved Offer.

    amount_due is the seeded amount and is never decremented; the remaining
    balance is computed from completed payments on read.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_invoices_number"),
        db.UniqueConstraint("offer_id", name="uq_invoices_offer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    currency = db.Column(db.String(3), nullable=False)
    total = db.Column(db.Numeric(14, 2), nullable=False)
    amount_due = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=INVOICE_OPEN, index=True)

    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    offer = db.relationship("Offer", back_populates="invoice")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, amount_paid=None) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "offer_id": self.offer_id,
            "buyer_id": self.buyer_id,
            "currency": self.currency,
            "total": format_money(self.total),
            "amount_due": format_money(self.amount_due),
            "status": self.status,
            "issued_at": to_utc_z(self.issued_at),
            "due_at": to_utc_z(self.due_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if amount_paid is not None:
            data["amount_paid"] = format_money(amount_paid)
            data["balance_due"] = format_money(max(self.total - amount_paid, 0))
        return data


class Payment(db.Model):
    """
    One submitted tranche toward an approved Offer.

    LIFECYCLE (no edge re-enters pending):
        pending -> completed | failed | cancelled

    Terminal payments are immutable apart from bookkeeping fields. A buyer
    retrying after a rejection submits a new Payment.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_offer_status", "offer_id", "status"),
        db.Index("ix_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)

    transaction_id = db.Column(db.String(128), nullable=True)
    payment_reference = db.Column(db.String(128), nullable=True)
    # Opaque pointer into the external proof store
    proof_reference = db.Column(db.String(512), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Review audit trail (set only together with a status transition)
    admin_reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    admin_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    offer = db.relationship("Offer", back_populates="payments")
    buyer = db.relationship("User", foreign_keys=[buyer_id])
    __mapper_args__ = {"version_id_col": version_id}

    @validates("amount", "currency", "offer_id")
    def _guard_terminal(self, key, value):
        if self.id is not None and self.status in PAYMENT_TERMINAL_STATUSES:
            if getattr(self, key) != value:
                raise ValidationError(f"{key} cannot change on a {self.status} payment")
        return value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "buyer_id": self.buyer_id,
            "amount": format_money(self.amount),
            "currency": self.currency,
            "payment_method": self.payment_method,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "payment_reference": self.payment_reference,
            "proof_reference": self.proof_reference,
            "notes": self.notes,
            "admin_reviewed_by": self.admin_reviewed_by,
            "admin_reviewed_at": to_utc_z(self.admin_reviewed_at),
            "rejection_reason": self.rejection_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
