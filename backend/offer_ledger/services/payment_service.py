# Overview: Service-layer operations for payments; buyer submissions and the admin ledger view.

"""
Payment Ledger

WHY: Buyers pay an approved offer in one or more tranches (deposit, then
installments). Each tranche is recorded as pending with a pointer to its
proof, and counts toward the purchase only once an admin verifies it.

DESIGN PRINCIPLES:
- Many payments per offer; each has its own lifecycle
- Only completed payments count toward amount paid
- Amounts are compared only within the invoice's currency
- No transition ever returns a payment to pending
- A buyer retrying after a rejection submits a new payment
"""

from __future__ import annotations

import csv
import io
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, or_

from ..exceptions import NotFoundError, ValidationError
from ..extensions import db
from ..models import Invoice, Offer, Payment, User
from ..models.ledger import (
    INVOICE_OPEN,
    OFFER_APPROVED,
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETED,
    PAYMENT_PENDING,
    PAYMENT_STATUSES,
)
from ..time_utils import parse_range_bound, to_utc_z, utcnow
from ..validation import CENTS, format_money, optional_text, parse_amount, parse_choice, parse_currency
from . import notification_service
from .auth_service import Principal, require_buyer, require_owner_or_admin
from .concurrency import compare_and_set, lock_for_update, run_with_retry


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_BANK_TRANSFER = "bank_transfer"
METHOD_ECOCASH = "ecocash"
METHOD_CASH = "cash"
METHOD_CARD = "card"

VALID_PAYMENT_METHODS = {
    METHOD_BANK_TRANSFER,
    METHOD_ECOCASH,
    METHOD_CASH,
    METHOD_CARD,
}

MAX_LIST_LIMIT = 500

CSV_COLUMNS = [
    "payment_id",
    "created_at",
    "status",
    "amount",
    "currency",
    "payment_method",
    "offer_reference",
    "invoice_number",
    "property_id",
    "buyer_email",
    "buyer_name",
    "payment_reference",
    "transaction_id",
    "admin_reviewed_at",
    "rejection_reason",
]


# =============================================================================
# SUBMISSION / CANCELLATION
# =============================================================================

def submit(
    principal: Principal,
    offer_id: int,
    amount,
    currency,
    payment_method,
    proof_reference=None,
    payment_reference=None,
    transaction_id=None,
    notes=None,
) -> Payment:
    """
    Record a buyer's payment against their approved offer.

    Bank transfers must carry a proof reference; the transfer reference
    doubles as the transaction id when none is given.

    Returns:
        Payment in pending status

    Raises:
        NotFoundError: offer does not exist
        AuthorizationError: principal is not the offer's buyer
        ValidationError: bad amount/method/currency, offer not approved,
            invoice no longer open
    """
    require_buyer(principal)

    if offer_id is None:
        raise ValidationError("offer_id is required")
    amount = parse_amount(amount, "amount")
    currency = parse_currency(currency)
    method = parse_choice(payment_method, "payment_method", VALID_PAYMENT_METHODS)
    proof_reference = optional_text(proof_reference, "proof_reference", max_length=512)
    payment_reference = optional_text(payment_reference, "payment_reference", max_length=128)
    transaction_id = optional_text(transaction_id, "transaction_id", max_length=128)
    notes = optional_text(notes, "notes", max_length=2000)

    if method == METHOD_BANK_TRANSFER:
        if not proof_reference:
            raise ValidationError("proof_reference is required for bank transfers")
        transaction_id = transaction_id or payment_reference

    def _op():
        # Lock the offer so an expiry sweep cannot slip between check and insert
        offer = lock_for_update(db.session.query(Offer).filter_by(id=offer_id)).first()
        if offer is None:
            raise NotFoundError(f"Offer {offer_id} not found")
        require_buyer(principal, offer.buyer_id)

        if offer.status != OFFER_APPROVED:
            raise ValidationError(f"Cannot pay an offer that is {offer.status}")

        invoice = db.session.query(Invoice).filter_by(offer_id=offer.id).first()
        if invoice is None:
            raise ValidationError(f"No invoice issued for offer {offer.reference}")
        if invoice.status != INVOICE_OPEN:
            raise ValidationError(f"Invoice {invoice.invoice_number} is {invoice.status}")
        if currency != invoice.currency:
            raise ValidationError(
                f"Payment currency {currency} does not match invoice currency {invoice.currency}"
            )

        now = utcnow()
        payment = Payment(
            offer_id=offer.id,
            buyer_id=principal.user_id,
            amount=amount,
            currency=currency,
            payment_method=method,
            status=PAYMENT_PENDING,
            transaction_id=transaction_id,
            payment_reference=payment_reference,
            proof_reference=proof_reference,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        db.session.add(payment)
        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    current_app.logger.info(
        "Payment %s submitted for offer %s (%s %s via %s)",
        payment.id, payment.offer_id, payment.amount, payment.currency, payment.payment_method,
    )

    notification_service.dispatch(
        notification_service.EVENT_PAYMENT_SUBMITTED,
        audience=notification_service.AUDIENCE_ADMINS,
        title="Payment awaiting verification",
        message=f"{payment.currency} {format_money(payment.amount)} submitted via {payment.payment_method}.",
        metadata={"payment_id": payment.id, "offer_id": payment.offer_id},
    )
    return payment


def cancel(principal: Principal, payment_id: int, reason=None) -> Payment:
    """Withdraw a pending payment. Owner or admin; ConflictError once reviewed."""
    payment = get_payment(payment_id)
    require_owner_or_admin(principal, payment.buyer_id)
    reason = optional_text(reason, "reason", max_length=500)

    def _op():
        updated = compare_and_set(
            Payment,
            payment_id,
            expected=PAYMENT_PENDING,
            values={"status": PAYMENT_CANCELLED, "rejection_reason": reason, "updated_at": utcnow()},
            label="Payment",
        )
        db.session.commit()
        return updated

    updated = run_with_retry(_op)
    current_app.logger.info("Payment %s cancelled by user %s", payment_id, principal.user_id)
    return updated


# =============================================================================
# READS
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def list_for_offer(offer_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter(Payment.offer_id == offer_id)
        .order_by(Payment.created_at.asc(), Payment.id.asc())
        .all()
    )


def amount_paid(offer_id: int) -> Decimal:
    """Sum of completed payments for an offer. Canonical source for progress and settlement."""
    total = (
        db.session.query(func.sum(Payment.amount))
        .filter(Payment.offer_id == offer_id, Payment.status == PAYMENT_COMPLETED)
        .scalar()
    )
    if total is None:
        return Decimal("0.00")
    return Decimal(total).quantize(CENTS)


def _range_bound(value, field: str, *, end_of_day: bool = False) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return parse_range_bound(str(value), end_of_day=end_of_day)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date or datetime")


def _parse_limit(limit) -> int | None:
    if limit is None or limit == "":
        return None
    try:
        value = int(limit)
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")
    if value < 1 or value > MAX_LIST_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
    return value


def list_by_filter(status=None, date_from=None, date_to=None, q=None, limit=None) -> list[Payment]:
    """
    Admin ledger query, newest first.

    Args:
        status: one payment status, or None for all
        date_from: inclusive lower bound on created_at
        date_to: inclusive upper bound; a bare date covers the whole day
        q: case-insensitive substring over offer reference, invoice number,
           payment reference, transaction id, property id, buyer name/email
        limit: optional cap (1..500)
    """
    query = (
        db.session.query(Payment)
        .join(Offer, Payment.offer_id == Offer.id)
        .outerjoin(Invoice, Invoice.offer_id == Offer.id)
        .join(User, Payment.buyer_id == User.id)
    )

    if status:
        query = query.filter(Payment.status == parse_choice(status, "status", PAYMENT_STATUSES))

    start = _range_bound(date_from, "date_from")
    end = _range_bound(date_to, "date_to", end_of_day=True)
    if start is not None:
        query = query.filter(Payment.created_at >= start)
    if end is not None:
        query = query.filter(Payment.created_at <= end)

    term = (q or "").strip()
    if term:
        pattern = f"%{term}%"
        query = query.filter(
            or_(
                Offer.reference.ilike(pattern),
                Invoice.invoice_number.ilike(pattern),
                Payment.payment_reference.ilike(pattern),
                Payment.transaction_id.ilike(pattern),
                Offer.property_id.ilike(pattern),
                User.display_name.ilike(pattern),
                User.email.ilike(pattern),
            )
        )

    query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
    limit = _parse_limit(limit)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


# =============================================================================
# PROJECTIONS
# =============================================================================

def to_ledger_row(payment: Payment) -> dict:
    """Payment enriched with the offer, invoice and buyer it belongs to."""
    offer = payment.offer
    invoice = offer.invoice if offer is not None else None
    buyer = payment.buyer

    row = payment.to_dict()
    row["offer"] = {
        "id": offer.id,
        "reference": offer.reference,
        "property_id": offer.property_id,
        "offer_price": format_money(offer.offer_price),
        "currency": offer.currency,
        "status": offer.status,
    } if offer is not None else None
    row["invoice"] = {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "total": format_money(invoice.total),
    } if invoice is not None else None
    row["buyer"] = {
        "id": buyer.id,
        "email": buyer.email,
        "display_name": buyer.display_name,
    } if buyer is not None else None
    return row


def export_csv(payments) -> str:
    """Render ledger rows as CSV text. Reads only what it is given."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
    writer.writeheader()

    for payment in payments:
        offer = payment.offer
        invoice = offer.invoice if offer is not None else None
        buyer = payment.buyer
        writer.writerow({
            "payment_id": payment.id,
            "created_at": to_utc_z(payment.created_at),
            "status": payment.status,
            "amount": format_money(payment.amount),
            "currency": payment.currency,
            "payment_method": payment.payment_method,
            "offer_reference": offer.reference if offer else "",
            "invoice_number": invoice.invoice_number if invoice else "",
            "property_id": offer.property_id if offer else "",
            "buyer_email": buyer.email if buyer else "",
            "buyer_name": (buyer.display_name or "") if buyer else "",
            "payment_reference": payment.payment_reference or "",
            "transaction_id": payment.transaction_id or "",
            "admin_reviewed_at": to_utc_z(payment.admin_reviewed_at) or "",
            "rejection_reason": payment.rejection_reason or "",
        })

    return buffer.getvalue()
