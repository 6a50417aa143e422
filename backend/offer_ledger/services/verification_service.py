# Overview: Service-layer operations for admin payment verification.

"""
Verification Workflow

WHY: A submitted payment is only a claim until an admin checks the proof.
Verifying it makes it count toward the purchase; rejecting it records why.

RULES:
- pending -> completed | failed, nothing else.
- Status, reviewer, review time (and reason on reject) change in ONE UPDATE
  guarded by status = pending. Two admins racing: one wins, the other gets
  ConflictError carrying the status the payment ended in.
- Verification settles the invoice in the same transaction once the
  completed total reaches it.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Invoice, Payment
from ..models.ledger import PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING
from ..time_utils import utcnow
from ..validation import format_money, require_text
from . import invoice_service, notification_service
from .auth_service import Principal, require_admin
from .concurrency import compare_and_set, run_with_retry


def verify(principal: Principal, payment_id: int) -> Payment:
    """
    Mark a pending payment completed.

    Raises:
        AuthorizationError: principal is not an admin
        NotFoundError: no such payment
        ConflictError: payment already reviewed or cancelled
    """
    require_admin(principal)

    def _op():
        now = utcnow()
        payment = compare_and_set(
            Payment,
            payment_id,
            expected=PAYMENT_PENDING,
            values={
                "status": PAYMENT_COMPLETED,
                "admin_reviewed_by": principal.user_id,
                "admin_reviewed_at": now,
                "updated_at": now,
            },
            label="Payment",
        )

        invoice = db.session.query(Invoice).filter_by(offer_id=payment.offer_id).first()
        if invoice is not None:
            invoice_service.settle_if_paid(invoice)

        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    current_app.logger.info("Payment %s verified by user %s", payment.id, principal.user_id)

    notification_service.dispatch(
        notification_service.EVENT_PAYMENT_VERIFIED,
        recipient_id=payment.buyer_id,
        title="Payment verified",
        message=f"Your payment of {payment.currency} {format_money(payment.amount)} has been verified.",
        metadata={"payment_id": payment.id, "offer_id": payment.offer_id},
    )
    return payment


def reject(principal: Principal, payment_id: int, reason) -> Payment:
    """
    Mark a pending payment failed with the admin's reason.

    Raises:
        ValidationError: blank reason
        ConflictError: payment already reviewed or cancelled
    """
    require_admin(principal)
    reason = require_text(reason, "reason", max_length=500)

    def _op():
        now = utcnow()
        payment = compare_and_set(
            Payment,
            payment_id,
            expected=PAYMENT_PENDING,
            values={
                "status": PAYMENT_FAILED,
                "admin_reviewed_by": principal.user_id,
                "admin_reviewed_at": now,
                "rejection_reason": reason,
                "updated_at": now,
            },
            label="Payment",
        )
        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    current_app.logger.info("Payment %s rejected by user %s", payment.id, principal.user_id)

    notification_service.dispatch(
        notification_service.EVENT_PAYMENT_REJECTED,
        recipient_id=payment.buyer_id,
        title="Payment rejected",
        message=f"Your payment of {payment.currency} {format_money(payment.amount)} was rejected: {reason}",
        metadata={"payment_id": payment.id, "offer_id": payment.offer_id},
    )
    return payment
