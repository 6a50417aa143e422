# Overview: Service-layer operations for offers; submission, review and expiry lifecycle.

"""
Offer Store

WHY: An offer is the buyer's proposal to buy a listing at a price. Admin
review decides whether it turns into an invoice the buyer pays against.

LIFECYCLE:
    pending -> approved   (admin; issues the invoice in the same transaction)
    pending -> rejected   (admin; reason required)
    pending -> withdrawn  (owning buyer)
    approved -> expired   (sweep; cancels pending payments, voids the invoice)

RULES:
- Every transition is a compare-and-set on the current status. Two admins
  reviewing the same offer: exactly one wins, the other gets ConflictError.
- Price, deposit and currency are fixed once the offer leaves pending.
- One live (pending/approved) offer per buyer and property.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Invoice, Offer, Payment
from ..models.ledger import (
    INVOICE_SETTLED,
    OFFER_APPROVED,
    OFFER_EXPIRED,
    OFFER_OPEN_STATUSES,
    OFFER_PENDING,
    OFFER_REJECTED,
    OFFER_STATUSES,
    OFFER_WITHDRAWN,
    PAYMENT_CANCELLED,
    PAYMENT_PENDING,
)
from ..time_utils import utcnow
from ..validation import (
    CENTS,
    optional_text,
    parse_amount,
    parse_choice,
    parse_currency,
    parse_datetime_field,
    require_text,
)
from . import invoice_service, notification_service
from .auth_service import Principal, require_admin, require_buyer
from .concurrency import compare_and_set, lock_for_update, run_with_retry
from .sequence_service import DOC_TYPE_OFFER, format_document_number, next_number


OFFER_PREFIX = "OFR"

# Buyer's financing of the purchase price
OFFER_METHOD_CASH = "cash"
OFFER_METHOD_INSTALLMENTS = "installments"
VALID_OFFER_METHODS = {OFFER_METHOD_CASH, OFFER_METHOD_INSTALLMENTS}

TIMELINE_PAY_IN_FULL = "ready_to_pay_in_full"
PAY_IN_FULL_EXPIRY_DAYS = 3
MAX_EXPIRY_DAYS = 30
_MONTHS_TIMELINE_RE = re.compile(r"^(\d+)_months?$")

EXPIRY_CANCEL_REASON = "Offer expired"


# =============================================================================
# HELPERS
# =============================================================================

def calculate_expiry(estimated_timeline: str, start: datetime, default_days: int | None = None) -> datetime:
    """
    Derive an offer's expiry from the buyer's stated timeline.

    ready_to_pay_in_full -> 3 days
    <n>_months           -> 7 days per month, capped at 30
    anything else        -> OFFER_DEFAULT_EXPIRY_DAYS
    """
    if default_days is None:
        default_days = current_app.config.get("OFFER_DEFAULT_EXPIRY_DAYS", 7)

    if estimated_timeline == TIMELINE_PAY_IN_FULL:
        days = PAY_IN_FULL_EXPIRY_DAYS
    else:
        match = _MONTHS_TIMELINE_RE.match(estimated_timeline or "")
        if match:
            days = min(7 * int(match.group(1)), MAX_EXPIRY_DAYS)
        else:
            days = default_days
    return start + timedelta(days=days)


def _check_deposit(deposit_amount: Decimal, offer_price: Decimal) -> None:
    if deposit_amount > offer_price:
        raise ValidationError("deposit_amount cannot exceed offer_price")


def _has_open_bid(buyer_id: int, property_id: str, exclude_id: int | None = None) -> bool:
    query = db.session.query(Offer.id).filter(
        Offer.buyer_id == buyer_id,
        Offer.property_id == property_id,
        Offer.status.in_(OFFER_OPEN_STATUSES),
    )
    if exclude_id is not None:
        query = query.filter(Offer.id != exclude_id)
    return query.first() is not None


def _check_expected_status(expected_status: str | None) -> None:
    if expected_status not in (None, OFFER_PENDING):
        raise ValidationError("Only pending offers can be reviewed")


# =============================================================================
# SUBMISSION
# =============================================================================

def submit(
    principal: Principal,
    property_id,
    offer_price,
    currency,
    deposit_amount=None,
    payment_method=OFFER_METHOD_CASH,
    estimated_timeline=TIMELINE_PAY_IN_FULL,
    additional_notes=None,
    expires_at=None,
) -> Offer:
    """
    Record a buyer's offer on a property.

    Raises:
        AuthorizationError: principal is not a buyer
        ValidationError: bad amounts, method, currency, or an existing live
            offer for the same property
    """
    require_buyer(principal)

    property_id = require_text(property_id, "property_id", max_length=64)
    price = parse_amount(offer_price, "offer_price")
    currency = parse_currency(currency)
    deposit = parse_amount(deposit_amount if deposit_amount is not None else 0, "deposit_amount", allow_zero=True)
    _check_deposit(deposit, price)
    method = parse_choice(payment_method, "payment_method", VALID_OFFER_METHODS)
    timeline = require_text(estimated_timeline, "estimated_timeline", max_length=32)
    notes = optional_text(additional_notes, "additional_notes", max_length=2000)
    expires_at = parse_datetime_field(expires_at, "expires_at")

    def _op():
        now = utcnow()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future")

        if _has_open_bid(principal.user_id, property_id):
            raise ValidationError("You already have an active offer on this property")

        reference = format_document_number(OFFER_PREFIX, now.year, next_number(DOC_TYPE_OFFER))
        offer = Offer(
            reference=reference,
            buyer_id=principal.user_id,
            property_id=property_id,
            offer_price=price,
            currency=currency,
            deposit_amount=deposit,
            payment_method=method,
            estimated_timeline=timeline,
            additional_notes=notes,
            status=OFFER_PENDING,
            submitted_at=now,
            expires_at=expires_at or calculate_expiry(timeline, now),
            updated_at=now,
        )
        try:
            with db.session.begin_nested():
                db.session.add(offer)
        except IntegrityError as exc:
            # Partial unique index caught a racing submission
            raise ValidationError("You already have an active offer on this property") from exc

        db.session.commit()
        current_app.logger.info(
            "Offer %s submitted by user %s on property %s (%s %s)",
            offer.reference, principal.user_id, property_id, price, currency,
        )
        return offer

    return run_with_retry(_op)


def amend(
    principal: Principal,
    offer_id: int,
    offer_price=None,
    deposit_amount=None,
    estimated_timeline=None,
) -> Offer:
    """
    Change a pending offer's terms. Only the owning buyer may amend, and only
    while the offer is still pending.

    Raises:
        ConflictError: offer has already left pending
    """
    offer = get_offer(offer_id)
    require_buyer(principal, offer.buyer_id)

    if offer.status != OFFER_PENDING:
        raise ConflictError(f"Offer {offer_id} is already {offer.status}", current_status=offer.status)

    if offer_price is None and deposit_amount is None and estimated_timeline is None:
        raise ValidationError("Nothing to amend")

    price = parse_amount(offer_price, "offer_price") if offer_price is not None else offer.offer_price
    deposit = (
        parse_amount(deposit_amount, "deposit_amount", allow_zero=True)
        if deposit_amount is not None
        else offer.deposit_amount
    )
    _check_deposit(deposit, price)

    now = utcnow()
    values = {"offer_price": price, "deposit_amount": deposit, "updated_at": now}
    if estimated_timeline is not None:
        timeline = require_text(estimated_timeline, "estimated_timeline", max_length=32)
        values["estimated_timeline"] = timeline
        values["expires_at"] = calculate_expiry(timeline, now)

    def _op():
        updated = compare_and_set(Offer, offer_id, expected=OFFER_PENDING, values=values, label="Offer")
        db.session.commit()
        return updated

    updated = run_with_retry(_op)
    current_app.logger.info("Offer %s amended by user %s", updated.reference, principal.user_id)
    return updated


# =============================================================================
# REVIEW
# =============================================================================

def approve(principal: Principal, offer_id: int, expected_status: str | None = OFFER_PENDING) -> Offer:
    """
    Approve a pending offer and issue its invoice atomically.

    The status change, reviewer stamp and invoice insert commit together.
    A reviewer who lost the race gets ConflictError with the status the
    offer moved to.

    A pending offer whose expiry has already passed cannot be approved;
    the buyer has to submit a fresh offer.
    """
    require_admin(principal)
    _check_expected_status(expected_status)

    def _op():
        now = utcnow()
        current = db.session.get(Offer, offer_id)
        if (
            current is not None
            and current.status == OFFER_PENDING
            and current.expires_at is not None
            and current.expires_at <= now
        ):
            raise ValidationError(f"Offer {current.reference} has expired")

        offer = compare_and_set(
            Offer,
            offer_id,
            expected=OFFER_PENDING,
            values={
                "status": OFFER_APPROVED,
                "reviewed_by": principal.user_id,
                "reviewed_at": now,
                "updated_at": now,
            },
            label="Offer",
        )
        invoice_service.create_for_approved_offer(offer.id, commit=False)
        db.session.commit()
        return offer

    offer = run_with_retry(_op)
    current_app.logger.info("Offer %s approved by user %s", offer.reference, principal.user_id)

    notification_service.dispatch(
        notification_service.EVENT_OFFER_APPROVED,
        recipient_id=offer.buyer_id,
        title="Offer approved",
        message=f"Your offer {offer.reference} on property {offer.property_id} has been approved.",
        metadata={"offer_id": offer.id, "reference": offer.reference},
    )
    return offer


def reject(principal: Principal, offer_id: int, reason, expected_status: str | None = OFFER_PENDING) -> Offer:
    require_admin(principal)
    _check_expected_status(expected_status)
    reason = require_text(reason, "reason", max_length=500)

    def _op():
        now = utcnow()
        offer = compare_and_set(
            Offer,
            offer_id,
            expected=OFFER_PENDING,
            values={
                "status": OFFER_REJECTED,
                "reviewed_by": principal.user_id,
                "reviewed_at": now,
                "rejection_reason": reason,
                "updated_at": now,
            },
            label="Offer",
        )
        db.session.commit()
        return offer

    offer = run_with_retry(_op)
    current_app.logger.info("Offer %s rejected by user %s", offer.reference, principal.user_id)

    notification_service.dispatch(
        notification_service.EVENT_OFFER_REJECTED,
        recipient_id=offer.buyer_id,
        title="Offer rejected",
        message=f"Your offer {offer.reference} was not accepted: {reason}",
        metadata={"offer_id": offer.id, "reference": offer.reference},
    )
    return offer


def withdraw(principal: Principal, offer_id: int) -> Offer:
    offer = get_offer(offer_id)
    require_buyer(principal, offer.buyer_id)

    def _op():
        updated = compare_and_set(
            Offer,
            offer_id,
            expected=OFFER_PENDING,
            values={"status": OFFER_WITHDRAWN, "updated_at": utcnow()},
            label="Offer",
        )
        db.session.commit()
        return updated

    updated = run_with_retry(_op)
    current_app.logger.info("Offer %s withdrawn by user %s", updated.reference, principal.user_id)
    return updated


# =============================================================================
# EXPIRY SWEEP
# =============================================================================

def _expire_one(offer_id: int, now: datetime) -> Offer:
    def _op():
        offer = compare_and_set(
            Offer,
            offer_id,
            expected=OFFER_APPROVED,
            values={"status": OFFER_EXPIRED, "updated_at": now},
            label="Offer",
        )
        invoice = (
            lock_for_update(db.session.query(Invoice).filter_by(offer_id=offer_id))
            .populate_existing()
            .first()
        )
        if invoice is not None and invoice.status == INVOICE_SETTLED:
            # Final payment was verified after this offer was picked up
            raise ConflictError(f"Offer {offer_id} is fully paid", current_status=OFFER_APPROVED)

        db.session.execute(
            update(Payment)
            .where(Payment.offer_id == offer_id, Payment.status == PAYMENT_PENDING)
            .values(
                status=PAYMENT_CANCELLED,
                rejection_reason=EXPIRY_CANCEL_REASON,
                updated_at=now,
                version_id=Payment.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        invoice_service.void_for_offer(offer_id)
        db.session.commit()
        return offer

    return run_with_retry(_op)


def expire_due(now: datetime | None = None) -> list[int]:
    """
    Expire approved offers past their expiry that were never fully paid.

    Safe to run from several workers at once: each offer moves under its own
    compare-and-set and offers another sweeper got to first are skipped.

    Returns the ids of the offers this call expired.
    """
    now = now or utcnow()

    candidate_ids = [
        row.id
        for row in db.session.query(Offer.id)
        .outerjoin(Invoice, Invoice.offer_id == Offer.id)
        .filter(
            Offer.status == OFFER_APPROVED,
            Offer.expires_at.isnot(None),
            Offer.expires_at <= now,
            (Invoice.id.is_(None)) | (Invoice.status != INVOICE_SETTLED),
        )
        .order_by(Offer.id)
        .all()
    ]

    expired = []
    for offer_id in candidate_ids:
        try:
            offer = _expire_one(offer_id, now)
        except ConflictError as exc:
            current_app.logger.info("Offer %s skipped by expiry sweep: %s", offer_id, exc)
            continue
        expired.append(offer.id)
        current_app.logger.info("Offer %s expired", offer.reference)

    return expired


# =============================================================================
# READS
# =============================================================================

def get_offer(offer_id: int) -> Offer:
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise NotFoundError(f"Offer {offer_id} not found")
    return offer


def list_offers(status=None, buyer_id: int | None = None, property_id=None) -> list[Offer]:
    query = db.session.query(Offer)
    if status:
        query = query.filter(Offer.status == parse_choice(status, "status", OFFER_STATUSES))
    if buyer_id is not None:
        query = query.filter(Offer.buyer_id == buyer_id)
    if property_id:
        query = query.filter(Offer.property_id == str(property_id))
    return query.order_by(Offer.submitted_at.desc(), Offer.id.desc()).all()


def get_offer_stats() -> dict:
    """Offer counts per status for the admin dashboard."""
    rows = db.session.query(Offer.status, func.count(Offer.id)).group_by(Offer.status).all()
    stats = {status: 0 for status in OFFER_STATUSES}
    for status, count in rows:
        stats[status] = count
    stats["total"] = sum(count for _, count in rows)
    return stats


def property_offer_summary(property_id) -> dict:
    """
    Public bidding picture for a listing: how many live offers it has and
    where they sit. Amounts are grouped per currency and never mixed.
    """
    property_id = require_text(property_id, "property_id", max_length=64)
    offers = (
        db.session.query(Offer.currency, Offer.offer_price)
        .filter(Offer.property_id == property_id, Offer.status.in_(OFFER_OPEN_STATUSES))
        .all()
    )

    by_currency: dict[str, list[Decimal]] = {}
    for currency, price in offers:
        by_currency.setdefault(currency, []).append(Decimal(price))

    summary = {}
    for currency, prices in sorted(by_currency.items()):
        summary[currency] = {
            "count": len(prices),
            "highest": str(max(prices).quantize(CENTS)),
            "lowest": str(min(prices).quantize(CENTS)),
            "average": str((sum(prices) / len(prices)).quantize(CENTS)),
        }

    return {
        "property_id": property_id,
        "total_offers": len(offers),
        "by_currency": summary,
    }
