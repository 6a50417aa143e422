"""
Offer store tests.

Verifies:
- Submission validation and one live offer per buyer/property
- Expiry derived from the buyer's timeline
- Review transitions are compare-and-set (second reviewer gets a conflict)
- Price terms freeze once the offer leaves pending
- Expiry sweep cancels pending payments and voids the open invoice
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from offer_ledger.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from offer_ledger.extensions import db
from offer_ledger.models import Invoice, Offer, Payment
from offer_ledger.services import invoice_service, offer_service, payment_service, verification_service
from offer_ledger.time_utils import utcnow


# =============================================================================
# SUBMISSION
# =============================================================================


class TestSubmit:

    def test_creates_pending_offer_with_reference(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)

        assert offer.status == "pending"
        assert offer.reference == f"OFR-{utcnow().year}-000001"
        assert offer.offer_price == Decimal("250000.00")
        assert offer.currency == "USD"
        assert offer.buyer_id == buyer_principal.user_id

    def test_references_are_sequential(self, make_offer, buyer_principal):
        first = make_offer(buyer_principal, property_id="prop-a")
        second = make_offer(buyer_principal, property_id="prop-b")
        assert first.reference.endswith("000001")
        assert second.reference.endswith("000002")

    @pytest.mark.parametrize("price", ["0", "-5", "abc", "1e5", "10.001", True])
    def test_rejects_bad_price(self, make_offer, buyer_principal, price):
        with pytest.raises(ValidationError):
            make_offer(buyer_principal, offer_price=price)

    def test_rejects_deposit_above_price(self, make_offer, buyer_principal):
        with pytest.raises(ValidationError, match="deposit_amount"):
            make_offer(buyer_principal, offer_price="1000", deposit_amount="1000.01")

    def test_rejects_bad_currency(self, make_offer, buyer_principal):
        with pytest.raises(ValidationError, match="currency"):
            make_offer(buyer_principal, currency="US")

    def test_rejects_unknown_payment_method(self, make_offer, buyer_principal):
        with pytest.raises(ValidationError, match="payment_method"):
            make_offer(buyer_principal, payment_method="barter")

    def test_admin_cannot_submit(self, make_offer, admin_principal):
        with pytest.raises(AuthorizationError):
            make_offer(admin_principal)

    def test_second_live_offer_on_same_property_rejected(self, make_offer, buyer_principal):
        make_offer(buyer_principal)
        with pytest.raises(ValidationError, match="active offer"):
            make_offer(buyer_principal, offer_price="260000")

        assert db.session.query(Offer).count() == 1

    def test_other_buyer_may_bid_on_same_property(self, make_offer, buyer_principal, other_buyer_principal):
        make_offer(buyer_principal)
        offer = make_offer(other_buyer_principal)
        assert offer.status == "pending"

    def test_unique_index_blocks_racing_bid(self, monkeypatch, make_offer, buyer_principal):
        make_offer(buyer_principal)
        # Both submissions passed the application check before either committed
        monkeypatch.setattr(offer_service, "_has_open_bid", lambda *args, **kwargs: False)

        with pytest.raises(ValidationError, match="active offer"):
            make_offer(buyer_principal, offer_price=Decimal("260000.00"))

        assert db.session.query(Offer).count() == 1

    def test_can_bid_again_after_rejection(self, make_offer, buyer_principal, admin_principal):
        first = make_offer(buyer_principal)
        offer_service.reject(admin_principal, first.id, "price too low")

        second = make_offer(buyer_principal, offer_price="270000")
        assert second.status == "pending"


class TestExpiryCalculation:

    @pytest.mark.parametrize(
        "timeline,days",
        [
            ("ready_to_pay_in_full", 3),
            ("1_month", 7),
            ("3_months", 21),
            ("6_months", 30),
            ("12_months", 30),
            ("flexible", 7),
        ],
    )
    def test_timeline_to_days(self, app, timeline, days):
        start = datetime(2026, 3, 2, 9, 0)
        assert offer_service.calculate_expiry(timeline, start) == start + timedelta(days=days)

    def test_submit_derives_expiry(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal, estimated_timeline="ready_to_pay_in_full")
        assert offer.expires_at - offer.submitted_at == timedelta(days=3)

    def test_explicit_expiry_must_be_future(self, make_offer, buyer_principal):
        with pytest.raises(ValidationError, match="expires_at"):
            make_offer(buyer_principal, expires_at="2001-01-01T00:00:00Z")

    def test_aware_expiry_stored_as_utc(self, make_offer, buyer_principal):
        harare = timezone(timedelta(hours=2))
        offer = make_offer(buyer_principal, expires_at=datetime(2030, 1, 1, 12, 0, tzinfo=harare))

        assert offer.expires_at == datetime(2030, 1, 1, 10, 0)


# =============================================================================
# REVIEW
# =============================================================================


class TestReview:

    def test_approve_records_reviewer_and_issues_invoice(self, make_offer, buyer_principal, admin_principal):
        offer = make_offer(buyer_principal)

        approved = offer_service.approve(admin_principal, offer.id)

        assert approved.status == "approved"
        assert approved.reviewed_by == admin_principal.user_id
        assert approved.reviewed_at is not None
        invoice = invoice_service.get_invoice_for_offer(offer.id)
        assert invoice.total == Decimal("250000.00")
        assert invoice.status == "open"

    def test_second_approval_conflicts(self, make_offer, buyer_principal, admin_principal, second_admin_principal):
        offer = make_offer(buyer_principal)
        offer_service.approve(admin_principal, offer.id)

        with pytest.raises(ConflictError) as exc:
            offer_service.approve(second_admin_principal, offer.id)

        assert exc.value.current_status == "approved"
        assert db.session.query(Invoice).filter_by(offer_id=offer.id).count() == 1
        assert db.session.get(Offer, offer.id).reviewed_by == admin_principal.user_id

    def test_reject_after_approve_conflicts(self, approved_offer, admin_principal):
        with pytest.raises(ConflictError):
            offer_service.reject(admin_principal, approved_offer.id, "changed my mind")

    def test_reject_requires_reason(self, make_offer, buyer_principal, admin_principal):
        offer = make_offer(buyer_principal)
        with pytest.raises(ValidationError, match="reason"):
            offer_service.reject(admin_principal, offer.id, "   ")
        assert db.session.get(Offer, offer.id).status == "pending"

    def test_reject_never_invoices(self, make_offer, buyer_principal, admin_principal):
        offer = make_offer(buyer_principal)
        rejected = offer_service.reject(admin_principal, offer.id, "price too low")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "price too low"
        assert db.session.query(Invoice).count() == 0
        assert payment_service.list_for_offer(offer.id) == []

    def test_expired_pending_offer_cannot_be_approved(self, make_offer, buyer_principal, admin_principal):
        offer = make_offer(buyer_principal)
        offer.expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()

        with pytest.raises(ValidationError, match="has expired"):
            offer_service.approve(admin_principal, offer.id)

        assert db.session.get(Offer, offer.id).status == "pending"
        assert db.session.query(Invoice).filter_by(offer_id=offer.id).count() == 0

    def test_buyer_cannot_approve(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)
        with pytest.raises(AuthorizationError):
            offer_service.approve(buyer_principal, offer.id)

    def test_unexpected_expected_status_rejected(self, make_offer, buyer_principal, admin_principal):
        offer = make_offer(buyer_principal)
        with pytest.raises(ValidationError):
            offer_service.approve(admin_principal, offer.id, expected_status="approved")

    def test_approve_missing_offer(self, admin_principal):
        with pytest.raises(NotFoundError):
            offer_service.approve(admin_principal, 999)

    def test_review_notifies_buyer(self, notifier, make_offer, buyer_principal, admin_principal):
        offer = make_offer(buyer_principal)
        offer_service.approve(admin_principal, offer.id)

        assert notifier.events() == ["offer.approved"]
        assert notifier.sent[0]["recipient_id"] == buyer_principal.user_id


class TestWithdrawAndAmend:

    def test_owner_withdraws_pending(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)
        assert offer_service.withdraw(buyer_principal, offer.id).status == "withdrawn"

    def test_other_buyer_cannot_withdraw(self, make_offer, buyer_principal, other_buyer_principal):
        offer = make_offer(buyer_principal)
        with pytest.raises(AuthorizationError):
            offer_service.withdraw(other_buyer_principal, offer.id)

    def test_cannot_withdraw_approved(self, approved_offer, buyer_principal):
        with pytest.raises(ConflictError):
            offer_service.withdraw(buyer_principal, approved_offer.id)

    def test_amend_pending(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)
        amended = offer_service.amend(buyer_principal, offer.id, offer_price="240000", deposit_amount="20000")
        assert amended.offer_price == Decimal("240000.00")
        assert amended.deposit_amount == Decimal("20000.00")
        assert amended.status == "pending"
        assert amended.version_id == 2

    def test_amend_after_approval_conflicts(self, approved_offer, buyer_principal):
        with pytest.raises(ConflictError):
            offer_service.amend(buyer_principal, approved_offer.id, offer_price="1")
        assert db.session.get(Offer, approved_offer.id).offer_price == Decimal("250000.00")

    def test_orm_guard_blocks_price_change_after_approval(self, approved_offer):
        offer = db.session.get(Offer, approved_offer.id)
        with pytest.raises(ValidationError):
            offer.offer_price = Decimal("1.00")


# =============================================================================
# EXPIRY SWEEP
# =============================================================================


class TestExpireDue:

    def test_expires_unpaid_offer_and_cleans_up(self, approved_offer, buyer_principal):
        payment = payment_service.submit(
            buyer_principal, approved_offer.id, "1000", "USD", "cash",
        )
        later = approved_offer.expires_at + timedelta(seconds=1)

        expired = offer_service.expire_due(now=later)

        assert expired == [approved_offer.id]
        assert db.session.get(Offer, approved_offer.id).status == "expired"
        cancelled = db.session.get(Payment, payment.id)
        assert cancelled.status == "cancelled"
        assert cancelled.rejection_reason == "Offer expired"
        assert invoice_service.get_invoice_for_offer(approved_offer.id).status == "void"

    def test_sweep_is_idempotent(self, approved_offer):
        later = approved_offer.expires_at + timedelta(days=1)
        assert offer_service.expire_due(now=later) == [approved_offer.id]
        assert offer_service.expire_due(now=later) == []

    def test_not_yet_due_untouched(self, approved_offer):
        assert offer_service.expire_due(now=approved_offer.expires_at - timedelta(minutes=1)) == []
        assert db.session.get(Offer, approved_offer.id).status == "approved"

    def test_settled_offer_never_expires(self, approved_offer, buyer_principal, admin_principal):
        payment = payment_service.submit(buyer_principal, approved_offer.id, "250000", "USD", "cash")
        verification_service.verify(admin_principal, payment.id)

        later = approved_offer.expires_at + timedelta(days=1)
        assert offer_service.expire_due(now=later) == []
        assert db.session.get(Offer, approved_offer.id).status == "approved"

    def test_offer_paid_off_during_sweep_is_skipped(self, monkeypatch, approved_offer, buyer_principal, admin_principal):
        final = payment_service.submit(buyer_principal, approved_offer.id, "250000", "USD", "cash")
        later = approved_offer.expires_at + timedelta(days=1)
        real_expire_one = offer_service._expire_one

        # Admin verifies the final payment after the sweep picked its candidates
        def verify_then_expire(offer_id, now):
            verification_service.verify(admin_principal, final.id)
            return real_expire_one(offer_id, now)

        monkeypatch.setattr(offer_service, "_expire_one", verify_then_expire)

        assert offer_service.expire_due(now=later) == []
        assert db.session.get(Offer, approved_offer.id).status == "approved"
        assert db.session.get(Payment, final.id).status == "completed"
        assert invoice_service.get_invoice_for_offer(approved_offer.id).status == "settled"

    def test_pending_offers_not_swept(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)
        assert offer_service.expire_due(now=offer.expires_at + timedelta(days=1)) == []


# =============================================================================
# READS
# =============================================================================


class TestReads:

    def test_get_missing_offer(self, app):
        with pytest.raises(NotFoundError):
            offer_service.get_offer(404)

    def test_list_filters(self, make_offer, buyer_principal, other_buyer_principal, admin_principal):
        mine = make_offer(buyer_principal)
        theirs = make_offer(other_buyer_principal, property_id="prop-bulawayo-7")
        offer_service.approve(admin_principal, theirs.id)

        assert [o.id for o in offer_service.list_offers(buyer_id=buyer_principal.user_id)] == [mine.id]
        assert [o.id for o in offer_service.list_offers(status="approved")] == [theirs.id]
        assert [o.id for o in offer_service.list_offers(property_id="prop-bulawayo-7")] == [theirs.id]

    def test_list_rejects_unknown_status(self, app):
        with pytest.raises(ValidationError):
            offer_service.list_offers(status="lost")

    def test_stats_counts_per_status(self, make_offer, buyer_principal, other_buyer_principal, admin_principal):
        make_offer(buyer_principal)
        second = make_offer(other_buyer_principal)
        offer_service.reject(admin_principal, second.id, "too low")

        stats = offer_service.get_offer_stats()
        assert stats["total"] == 2
        assert stats["pending"] == 1
        assert stats["rejected"] == 1
        assert stats["approved"] == 0

    def test_property_summary(self, make_offer, buyer_principal, other_buyer_principal):
        make_offer(buyer_principal, offer_price="200000")
        make_offer(other_buyer_principal, offer_price="300000")

        summary = offer_service.property_offer_summary("prop-harare-001")

        assert summary["total_offers"] == 2
        assert summary["by_currency"]["USD"] == {
            "count": 2,
            "highest": "300000.00",
            "lowest": "200000.00",
            "average": "250000.00",
        }

    def test_property_summary_ignores_closed_offers(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)
        offer_service.withdraw(buyer_principal, offer.id)

        summary = offer_service.property_offer_summary("prop-harare-001")
        assert summary["total_offers"] == 0
        assert summary["by_currency"] == {}
