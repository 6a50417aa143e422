# Overview: Service-layer operations for invoices; one billing record per approved offer.

"""
Invoice Generator

WHY: Approving an offer is a commitment to bill the buyer. The invoice is the
record the buyer pays against and the record admins reconcile.

RULES:
- At most one invoice per offer (unique offer_id). Creation is idempotent:
  a second caller gets the existing invoice back.
- total = amount_due = offer_price at issue time.
- amount_due is never decremented; balance_due is computed on read from
  completed payments.
- open -> settled once completed payments reach the total; open -> void when
  the offer expires unpaid.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Invoice, Offer
from ..models.ledger import INVOICE_OPEN, INVOICE_SETTLED, INVOICE_VOID, OFFER_APPROVED
from ..time_utils import add_working_days, utcnow
from .concurrency import compare_and_set, run_with_retry
from .sequence_service import DOC_TYPE_INVOICE, format_document_number, next_number


INVOICE_PREFIX = "INV"
INVOICE_DUE_WORKING_DAYS = 7


def _find_for_offer(offer_id: int) -> Invoice | None:
    return db.session.query(Invoice).filter_by(offer_id=offer_id).first()


def _insert_invoice(offer: Offer) -> Invoice:
    """
    Insert the invoice inside a savepoint.

    A unique violation on offer_id means another transaction issued it first;
    that surfaces as ConflictError so the caller can fetch the winner.
    """
    now = utcnow()
    number = format_document_number(INVOICE_PREFIX, now.year, next_number(DOC_TYPE_INVOICE))

    invoice = Invoice(
        invoice_number=number,
        offer_id=offer.id,
        buyer_id=offer.buyer_id,
        currency=offer.currency,
        total=offer.offer_price,
        amount_due=offer.offer_price,
        status=INVOICE_OPEN,
        issued_at=now,
        due_at=add_working_days(now, INVOICE_DUE_WORKING_DAYS),
        updated_at=now,
    )
    try:
        with db.session.begin_nested():
            db.session.add(invoice)
    except IntegrityError as exc:
        raise ConflictError(
            f"Invoice for offer {offer.id} already exists",
            current_status=INVOICE_OPEN,
        ) from exc
    return invoice


def create_for_approved_offer(offer_id: int, *, commit: bool = True) -> Invoice:
    """
    Issue the invoice for an approved offer, or return the one already issued.

    With commit=False the work joins the caller's transaction (the approval
    path creates the invoice in the same transaction as the status change).

    Raises:
        NotFoundError: offer does not exist
        ValidationError: offer is not approved
    """
    def _op():
        offer = db.session.get(Offer, offer_id)
        if offer is None:
            raise NotFoundError(f"Offer {offer_id} not found")
        if offer.status != OFFER_APPROVED:
            raise ValidationError(f"Cannot invoice an offer that is {offer.status}")

        existing = _find_for_offer(offer.id)
        if existing is not None:
            return existing

        try:
            invoice = _insert_invoice(offer)
        except ConflictError:
            invoice = _find_for_offer(offer.id)
            if invoice is None:
                raise
            return invoice

        current_app.logger.info(
            "Issued invoice %s for offer %s (%s %s)",
            invoice.invoice_number, offer.reference, invoice.total, invoice.currency,
        )
        if commit:
            db.session.commit()
        return invoice

    if not commit:
        return _op()
    return run_with_retry(_op)


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def get_invoice_for_offer(offer_id: int) -> Invoice:
    invoice = _find_for_offer(offer_id)
    if invoice is None:
        raise NotFoundError(f"No invoice issued for offer {offer_id}")
    return invoice


def settle_if_paid(invoice: Invoice) -> Invoice:
    """
    Move an open invoice to settled once completed payments cover the total.

    Joins the caller's transaction. Losing the race to another settler is not
    an error: the invoice is already where it needs to be.
    """
    from .payment_service import amount_paid

    if invoice.status != INVOICE_OPEN:
        return invoice
    if amount_paid(invoice.offer_id) < invoice.total:
        return invoice

    try:
        invoice = compare_and_set(
            Invoice,
            invoice.id,
            expected=INVOICE_OPEN,
            values={"status": INVOICE_SETTLED, "updated_at": utcnow()},
            label="Invoice",
        )
    except ConflictError:
        return db.session.get(Invoice, invoice.id, populate_existing=True)

    current_app.logger.info("Invoice %s settled", invoice.invoice_number)
    return invoice


def void_for_offer(offer_id: int) -> Invoice | None:
    """Void the offer's invoice if it is still open. Joins the caller's transaction."""
    invoice = _find_for_offer(offer_id)
    if invoice is None or invoice.status != INVOICE_OPEN:
        return invoice

    try:
        invoice = compare_and_set(
            Invoice,
            invoice.id,
            expected=INVOICE_OPEN,
            values={"status": INVOICE_VOID, "updated_at": utcnow()},
            label="Invoice",
        )
    except ConflictError:
        return db.session.get(Invoice, invoice.id, populate_existing=True)

    current_app.logger.info("Invoice %s voided", invoice.invoice_number)
    return invoice
