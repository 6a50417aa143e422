# Overview: Read-model for buyer payment progress and admin payment stats.

"""
Buyer Progress Aggregator

Computed on every read from completed payments; nothing here is persisted,
so progress can never drift from the payment ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Offer, Payment
from ..models.ledger import OFFER_APPROVED, PAYMENT_CANCELLED, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING
from ..time_utils import month_start, next_month_start, to_utc_z, utcnow
from ..validation import CENTS, format_money
from .offer_service import get_offer


RATIO_PLACES = Decimal("0.0001")
ONE = Decimal("1")


@dataclass(frozen=True)
class BuyerProgress:
    offer_id: int
    currency: str
    offer_price: Decimal
    total_paid: Decimal
    payment_count: int
    last_payment_at: datetime | None
    ratio: Decimal
    threshold: Decimal

    @property
    def percent(self) -> Decimal:
        """Display value, clamped at 100%. ratio keeps any over-payment."""
        return min(self.ratio, ONE)

    @property
    def near_completion(self) -> bool:
        return self.ratio >= self.threshold

    def to_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "currency": self.currency,
            "offer_price": format_money(self.offer_price),
            "total_paid": format_money(self.total_paid),
            "payment_count": self.payment_count,
            "last_payment_at": to_utc_z(self.last_payment_at),
            "ratio": str(self.ratio.quantize(RATIO_PLACES)),
            "percent": str(self.percent.quantize(RATIO_PLACES)),
            "near_completion": self.near_completion,
        }


def near_completion_threshold() -> Decimal:
    return Decimal(str(current_app.config.get("NEAR_COMPLETION_THRESHOLD", "0.8")))


def _completed_totals(offer_id: int | None = None):
    """(offer_id, total, count, last created_at) per offer over completed payments."""
    query = db.session.query(
        Payment.offer_id,
        func.sum(Payment.amount),
        func.count(Payment.id),
        func.max(Payment.created_at),
    ).filter(Payment.status == PAYMENT_COMPLETED)
    if offer_id is not None:
        query = query.filter(Payment.offer_id == offer_id)
    return query.group_by(Payment.offer_id).all()


def _ratio(total_paid: Decimal, offer_price: Decimal) -> Decimal:
    if not offer_price:
        return Decimal("0")
    return Decimal(total_paid) / Decimal(offer_price)


def progress(offer_id: int, threshold=None) -> BuyerProgress:
    offer = get_offer(offer_id)
    threshold = Decimal(str(threshold)) if threshold is not None else near_completion_threshold()

    rows = _completed_totals(offer.id)
    if rows:
        _, total, count, last_at = rows[0]
        total_paid = Decimal(total).quantize(CENTS)
    else:
        total_paid, count, last_at = Decimal("0.00"), 0, None

    return BuyerProgress(
        offer_id=offer.id,
        currency=offer.currency,
        offer_price=offer.offer_price,
        total_paid=total_paid,
        payment_count=count,
        last_payment_at=last_at,
        ratio=_ratio(total_paid, offer.offer_price),
        threshold=threshold,
    )


def _sum_by_currency(*criteria) -> dict[str, str]:
    rows = (
        db.session.query(Payment.currency, func.sum(Payment.amount))
        .filter(Payment.status == PAYMENT_COMPLETED, *criteria)
        .group_by(Payment.currency)
        .order_by(Payment.currency)
        .all()
    )
    return {currency: format_money(total) for currency, total in rows}


def payment_stats(now: datetime | None = None) -> dict:
    """
    Admin dashboard aggregates.

    failed_count includes cancelled payments. completed_this_month uses the
    review time, since that is when a payment became completed. Amounts are
    reported per currency.
    buyers_near_completion only looks at offers that are still approved.
    """
    now = now or utcnow()
    threshold = near_completion_threshold()

    pending_count = db.session.query(func.count(Payment.id)).filter(Payment.status == PAYMENT_PENDING).scalar()
    failed_count = (
        db.session.query(func.count(Payment.id))
        .filter(Payment.status.in_((PAYMENT_FAILED, PAYMENT_CANCELLED)))
        .scalar()
    )

    completed_at = func.coalesce(Payment.admin_reviewed_at, Payment.updated_at)
    completed_this_month = _sum_by_currency(
        completed_at >= month_start(now),
        completed_at < next_month_start(now),
    )
    total_completed = _sum_by_currency()

    totals = {row[0]: Decimal(row[1]) for row in _completed_totals()}
    near_buyers = set()
    if totals:
        offers = (
            db.session.query(Offer.id, Offer.buyer_id, Offer.offer_price)
            .filter(Offer.id.in_(list(totals)), Offer.status == OFFER_APPROVED)
            .all()
        )
        for offer_id, buyer_id, offer_price in offers:
            if _ratio(totals[offer_id], offer_price) >= threshold:
                near_buyers.add(buyer_id)

    return {
        "pending_count": pending_count or 0,
        "failed_count": failed_count or 0,
        "completed_this_month": completed_this_month,
        "total_completed": total_completed,
        "buyers_near_completion": len(near_buyers),
    }
