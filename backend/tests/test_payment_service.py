"""
Payment ledger tests.

Verifies:
- Submission guards (approved offer, owner, currency, open invoice)
- Cancellation is a compare-and-set from pending
- Only completed payments count toward amount paid
- Admin ledger filtering and CSV projection
"""

import csv
import io
from datetime import timedelta
from decimal import Decimal

import pytest

from offer_ledger.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from offer_ledger.extensions import db
from offer_ledger.models import Payment
from offer_ledger.services import offer_service, payment_service, verification_service
from offer_ledger.time_utils import utcnow


def _submit(principal, offer_id, amount="50000", **kwargs):
    fields = {"currency": "USD", "payment_method": "cash"}
    fields.update(kwargs)
    return payment_service.submit(principal, offer_id, amount, **fields)


# =============================================================================
# SUBMISSION
# =============================================================================


class TestSubmit:

    def test_creates_pending_payment(self, approved_offer, buyer_principal):
        payment = _submit(buyer_principal, approved_offer.id, notes="first tranche")

        assert payment.status == "pending"
        assert payment.amount == Decimal("50000.00")
        assert payment.admin_reviewed_by is None
        assert payment.notes == "first tranche"

    def test_bank_transfer_requires_proof(self, approved_offer, buyer_principal):
        with pytest.raises(ValidationError, match="proof_reference"):
            _submit(buyer_principal, approved_offer.id, payment_method="bank_transfer")

    def test_bank_transfer_reference_doubles_as_transaction_id(self, approved_offer, buyer_principal):
        payment = _submit(
            buyer_principal,
            approved_offer.id,
            payment_method="bank_transfer",
            proof_reference="proof-of-payment/slip-001.pdf",
            payment_reference="TRF-889",
        )
        assert payment.transaction_id == "TRF-889"
        assert payment.payment_reference == "TRF-889"

    def test_currency_must_match_invoice(self, approved_offer, buyer_principal):
        with pytest.raises(ValidationError, match="currency"):
            _submit(buyer_principal, approved_offer.id, currency="ZWG")

    @pytest.mark.parametrize("amount", ["0", "-10", "ten"])
    def test_rejects_bad_amount(self, approved_offer, buyer_principal, amount):
        with pytest.raises(ValidationError):
            _submit(buyer_principal, approved_offer.id, amount=amount)

    def test_rejects_unknown_method(self, approved_offer, buyer_principal):
        with pytest.raises(ValidationError, match="payment_method"):
            _submit(buyer_principal, approved_offer.id, payment_method="cheque")

    def test_pending_offer_cannot_be_paid(self, make_offer, buyer_principal):
        offer = make_offer(buyer_principal)
        with pytest.raises(ValidationError, match="pending"):
            _submit(buyer_principal, offer.id)

    def test_only_owner_may_pay(self, approved_offer, other_buyer_principal):
        with pytest.raises(AuthorizationError):
            _submit(other_buyer_principal, approved_offer.id)
        assert db.session.query(Payment).count() == 0

    def test_missing_offer(self, buyer_principal):
        with pytest.raises(NotFoundError):
            _submit(buyer_principal, 777)

    def test_settled_invoice_takes_no_more_payments(self, approved_offer, buyer_principal, admin_principal):
        full = _submit(buyer_principal, approved_offer.id, amount="250000")
        verification_service.verify(admin_principal, full.id)

        with pytest.raises(ValidationError, match="settled"):
            _submit(buyer_principal, approved_offer.id, amount="1")

    def test_notifies_admins(self, notifier, approved_offer, buyer_principal):
        _submit(buyer_principal, approved_offer.id)

        assert "payment.submitted" in notifier.events()
        sent = [p for p in notifier.sent if p["event"] == "payment.submitted"][0]
        assert sent["audience"] == "admins"


# =============================================================================
# CANCELLATION
# =============================================================================


class TestCancel:

    def test_owner_cancels_pending(self, approved_offer, buyer_principal):
        payment = _submit(buyer_principal, approved_offer.id)
        cancelled = payment_service.cancel(buyer_principal, payment.id, "wrong amount")
        assert cancelled.status == "cancelled"
        assert cancelled.rejection_reason == "wrong amount"

    def test_other_buyer_cannot_cancel(self, approved_offer, buyer_principal, other_buyer_principal):
        payment = _submit(buyer_principal, approved_offer.id)
        with pytest.raises(AuthorizationError):
            payment_service.cancel(other_buyer_principal, payment.id)

    def test_cannot_cancel_completed(self, approved_offer, buyer_principal, admin_principal):
        payment = _submit(buyer_principal, approved_offer.id)
        verification_service.verify(admin_principal, payment.id)

        with pytest.raises(ConflictError) as exc:
            payment_service.cancel(buyer_principal, payment.id)
        assert exc.value.current_status == "completed"


# =============================================================================
# AMOUNT PAID
# =============================================================================


class TestAmountPaid:

    def test_counts_only_completed(self, approved_offer, buyer_principal, admin_principal):
        verified = _submit(buyer_principal, approved_offer.id, amount="150000")
        rejected = _submit(buyer_principal, approved_offer.id, amount="20000")
        _submit(buyer_principal, approved_offer.id, amount="30000")
        verification_service.verify(admin_principal, verified.id)
        verification_service.reject(admin_principal, rejected.id, "illegible proof")

        assert payment_service.amount_paid(approved_offer.id) == Decimal("150000.00")

    def test_zero_when_nothing_completed(self, approved_offer):
        assert payment_service.amount_paid(approved_offer.id) == Decimal("0.00")


# =============================================================================
# LEDGER LISTING
# =============================================================================


@pytest.fixture
def ledger(approved_offer, buyer_principal, admin_principal, make_offer, other_buyer_principal):
    """Three payments across two offers with mixed statuses."""
    second_offer = make_offer(
        other_buyer_principal, property_id="prop-mutare-22", offer_price="90000", deposit_amount="0",
    )
    offer_service.approve(admin_principal, second_offer.id)

    first = _submit(buyer_principal, approved_offer.id, amount="150000", payment_reference="TRF-100")
    second = _submit(buyer_principal, approved_offer.id, amount="20000")
    third = _submit(other_buyer_principal, second_offer.id, amount="90000", transaction_id="EC-555")
    verification_service.verify(admin_principal, first.id)
    verification_service.reject(admin_principal, second.id, "illegible proof")
    return {"first": first.id, "second": second.id, "third": third.id, "second_offer": second_offer.id}


class TestListByFilter:

    def test_newest_first(self, ledger):
        ids = [p.id for p in payment_service.list_by_filter()]
        assert ids == [ledger["third"], ledger["second"], ledger["first"]]

    def test_status_filter(self, ledger):
        assert [p.id for p in payment_service.list_by_filter(status="completed")] == [ledger["first"]]
        assert [p.id for p in payment_service.list_by_filter(status="failed")] == [ledger["second"]]

    def test_unknown_status(self, ledger):
        with pytest.raises(ValidationError):
            payment_service.list_by_filter(status="refunded")

    def test_free_text_matches_buyer_name_case_insensitively(self, ledger):
        ids = {p.id for p in payment_service.list_by_filter(q="rudo")}
        assert ids == {ledger["third"]}

    def test_free_text_matches_references(self, ledger):
        assert [p.id for p in payment_service.list_by_filter(q="trf-100")] == [ledger["first"]]
        assert [p.id for p in payment_service.list_by_filter(q="EC-555")] == [ledger["third"]]
        assert {p.id for p in payment_service.list_by_filter(q="mutare")} == {ledger["third"]}

    def test_free_text_matches_invoice_number(self, ledger):
        invoice_number = f"INV-{utcnow().year}-000002"
        assert [p.id for p in payment_service.list_by_filter(q=invoice_number)] == [ledger["third"]]

    def test_date_only_upper_bound_includes_whole_day(self, ledger):
        today = utcnow().date().isoformat()
        assert len(payment_service.list_by_filter(date_from=today, date_to=today)) == 3

    def test_date_range_excludes(self, ledger):
        tomorrow = (utcnow() + timedelta(days=1)).date().isoformat()
        assert payment_service.list_by_filter(date_from=tomorrow) == []

    def test_bad_date(self, ledger):
        with pytest.raises(ValidationError):
            payment_service.list_by_filter(date_to="not-a-date")

    def test_limit(self, ledger):
        assert len(payment_service.list_by_filter(limit=2)) == 2
        with pytest.raises(ValidationError):
            payment_service.list_by_filter(limit=0)

    def test_ledger_row_enrichment(self, ledger):
        payment = payment_service.get_payment(ledger["first"])
        row = payment_service.to_ledger_row(payment)

        assert row["status"] == "completed"
        assert row["offer"]["property_id"] == "prop-harare-001"
        assert row["invoice"]["invoice_number"].startswith("INV-")
        assert row["buyer"]["email"] == "buyer@ledger.test"


class TestExportCsv:

    def test_csv_projection(self, ledger):
        payments = payment_service.list_by_filter(status="completed")
        rows = list(csv.DictReader(io.StringIO(payment_service.export_csv(payments))))

        assert len(rows) == 1
        assert rows[0]["payment_id"] == str(ledger["first"])
        assert rows[0]["amount"] == "150000.00"
        assert rows[0]["status"] == "completed"
        assert rows[0]["buyer_email"] == "buyer@ledger.test"
        assert rows[0]["payment_reference"] == "TRF-100"

    def test_empty_export_has_header(self, app):
        text = payment_service.export_csv([])
        assert text.splitlines() == [",".join(payment_service.CSV_COLUMNS)]
