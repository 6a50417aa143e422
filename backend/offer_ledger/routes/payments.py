# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/offer_ledger/routes/payments.py
"""
Payment API Routes

WHY: Buyers submit payments with proof against approved offers; admins
review them, search the ledger, export it and view proofs.

SECURITY:
- Buyers submit and cancel their own payments only
- Verify/reject, ledger listing, export, stats and proof access are admin-only
- Proof access never changes ledger state
"""

from flask import Blueprint, Response, request, jsonify, g, current_app

from ..exceptions import ConflictError, LedgerError, ValidationError
from ..models.auth import ROLE_ADMIN, ROLE_BUYER
from ..services import payment_service, progress_service, proof_service, verification_service
from ..services.auth_service import require_owner_or_admin
from ..decorators import require_auth, require_role
from ..time_utils import utcnow


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

REVIEW_ACTIONS = {"verify", "reject"}


def _error(e: LedgerError):
    return jsonify(e.to_dict()), e.status_code


def _filter_args() -> dict:
    """Ledger filters from the query string; dateFrom/dateTo accepted as aliases."""
    return {
        "status": request.args.get("status"),
        "date_from": request.args.get("from") or request.args.get("dateFrom"),
        "date_to": request.args.get("to") or request.args.get("dateTo"),
        "q": request.args.get("q"),
        "limit": request.args.get("limit"),
    }


def _proof_ref() -> str | None:
    return request.args.get("ref") or request.args.get("url")


# =============================================================================
# SUBMISSION
# =============================================================================

@payments_bp.post("")
@require_auth
@require_role(ROLE_BUYER)
def submit_payment_route():
    """
    Submit a payment against an approved offer.

    Request body:
    {
        "offer_id": 12,
        "amount": "50000.00",
        "currency": "USD",
        "payment_method": "bank_transfer",
        "proof_reference": "proof-of-payment/slip.pdf",
        "payment_reference": "TRF-889",   (optional)
        "transaction_id": "...",          (optional)
        "notes": "..."                    (optional)
    }

    Returns:
        201: Payment recorded (pending verification)
        400: Invalid input, offer not approved, currency mismatch
        403: Not the offer's buyer
        404: Offer not found
    """
    try:
        data = request.get_json(silent=True) or {}

        payment = payment_service.submit(
            g.principal,
            offer_id=data.get("offer_id"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            payment_method=data.get("payment_method"),
            proof_reference=data.get("proof_reference"),
            payment_reference=data.get("payment_reference"),
            transaction_id=data.get("transaction_id"),
            notes=data.get("notes"),
        )
        return jsonify({"payment": payment.to_dict()}), 201

    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to submit payment")
        return jsonify({"error": "Failed to submit payment"}), 500


# =============================================================================
# ADMIN LEDGER
# =============================================================================

@payments_bp.get("")
@require_auth
@require_role(ROLE_ADMIN)
def list_payments_route():
    """
    Admin ledger listing, newest first.

    Query params: status, from, to (date-only "to" includes the whole day),
    q (offer ref, invoice number, payment ref, transaction id, property,
    buyer name/email), limit.
    """
    try:
        payments = payment_service.list_by_filter(**_filter_args())
        rows = [payment_service.to_ledger_row(p) for p in payments]
        return jsonify({"payments": rows, "count": len(rows)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Failed to list payments"}), 500


@payments_bp.get("/export.csv")
@require_auth
@require_role(ROLE_ADMIN)
def export_payments_route():
    try:
        payments = payment_service.list_by_filter(**_filter_args())
        body = payment_service.export_csv(payments)
        filename = f"payments-{utcnow():%Y%m%d}.csv"
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to export payments")
        return jsonify({"error": "Failed to export payments"}), 500


@payments_bp.get("/stats")
@require_auth
@require_role(ROLE_ADMIN)
def payment_stats_route():
    try:
        return jsonify(progress_service.payment_stats()), 200
    except Exception:
        current_app.logger.exception("Failed to compute payment stats")
        return jsonify({"error": "Failed to compute payment stats"}), 500


# =============================================================================
# PROOF ACCESS
# =============================================================================

@payments_bp.get("/signed-proof-url")
@require_auth
def signed_proof_url_route():
    """
    Short-lived URL for viewing a proof file in the private bucket.

    Query params: ref (stored proof reference or public URL); url is
    accepted as an alias.

    Returns:
        200: {"url": "..."}
        400: Missing or unparseable reference
        403: Not an admin
        502: Storage unavailable
    """
    try:
        url = proof_service.get_signed_proof_url(g.principal, _proof_ref())
        return jsonify({"url": url}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to sign proof URL")
        return jsonify({"error": "Failed to sign proof URL"}), 500


@payments_bp.get("/download-proof")
@require_auth
def download_proof_route():
    try:
        filename, content_type, content = proof_service.download_proof(g.principal, _proof_ref())
        return Response(
            content,
            mimetype=content_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to download proof")
        return jsonify({"error": "Failed to download proof"}), 500


# =============================================================================
# SINGLE PAYMENT
# =============================================================================

@payments_bp.get("/<int:payment_id>")
@require_auth
def get_payment_route(payment_id: int):
    try:
        payment = payment_service.get_payment(payment_id)
        require_owner_or_admin(g.principal, payment.buyer_id)
        return jsonify({"payment": payment.to_dict()}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to load payment %s", payment_id)
        return jsonify({"error": "Failed to load payment"}), 500


@payments_bp.patch("/<int:payment_id>")
@require_auth
def update_payment_route(payment_id: int):
    """
    Review or cancel a payment.

    Request body:
    {
        "action": "verify" | "reject" | "cancel",
        "reason": "illegible proof"   (required for reject)
    }

    Returns:
        200: Updated payment
        409: Payment no longer pending ("already reviewed by someone else")
    """
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()

    try:
        if action == "verify":
            payment = verification_service.verify(g.principal, payment_id)
        elif action == "reject":
            payment = verification_service.reject(g.principal, payment_id, data.get("reason"))
        elif action == "cancel":
            payment = payment_service.cancel(g.principal, payment_id, data.get("reason"))
        else:
            raise ValidationError("action must be one of: cancel, reject, verify")

        return jsonify({"payment": payment.to_dict()}), 200

    except ConflictError as e:
        body = e.to_dict()
        if action in REVIEW_ACTIONS:
            body["error"] = "Payment already reviewed by someone else"
            body["detail"] = e.message
        return jsonify(body), e.status_code
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to %s payment %s", action or "update", payment_id)
        return jsonify({"error": "Failed to update payment"}), 500
