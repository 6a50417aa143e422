# Overview: Flask API routes for offer operations; parses input and returns JSON responses.

# backend/offer_ledger/routes/offers.py
"""
Offer API Routes

DESIGN:
- Buyers submit, amend and withdraw their own offers
- Admins approve (issuing the invoice) or reject with a reason
- Per-offer reads (invoice, payments, progress) for the owner or an admin
- Public bidding summary per property for any signed-in user

CONCURRENCY:
- Review actions are compare-and-set; a reviewer who lost the race gets
  409 with the status the offer moved to
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..exceptions import ConflictError, LedgerError, ValidationError
from ..models.auth import ROLE_ADMIN, ROLE_BUYER
from ..services import invoice_service, offer_service, payment_service, progress_service
from ..services.auth_service import require_owner_or_admin
from ..decorators import require_auth, require_role


offers_bp = Blueprint("offers", __name__, url_prefix="/api/offers")
properties_bp = Blueprint("properties", __name__, url_prefix="/api/properties")

REVIEW_ACTIONS = {"approve", "reject"}


def _error(e: LedgerError):
    return jsonify(e.to_dict()), e.status_code


def _review_conflict(e: ConflictError):
    body = e.to_dict()
    body["error"] = "Offer already reviewed by someone else"
    body["detail"] = e.message
    return jsonify(body), e.status_code


def _load_owned_offer(offer_id: int):
    offer = offer_service.get_offer(offer_id)
    require_owner_or_admin(g.principal, offer.buyer_id)
    return offer


# =============================================================================
# SUBMISSION / LISTING
# =============================================================================

@offers_bp.post("")
@require_auth
@require_role(ROLE_BUYER)
def submit_offer_route():
    """
    Submit an offer on a property.

    Request body:
    {
        "property_id": "prop-123",
        "offer_price": "250000.00",
        "currency": "USD",
        "deposit_amount": "25000.00",
        "payment_method": "installments",
        "estimated_timeline": "6_months",
        "additional_notes": "...",   (optional)
        "expires_at": "2026-11-01T00:00:00Z"   (optional)
    }

    Returns:
        201: Offer created (pending)
        400: Invalid input or an active offer already exists
    """
    try:
        data = request.get_json(silent=True) or {}

        offer = offer_service.submit(
            g.principal,
            property_id=data.get("property_id"),
            offer_price=data.get("offer_price"),
            currency=data.get("currency"),
            deposit_amount=data.get("deposit_amount"),
            payment_method=data.get("payment_method", offer_service.OFFER_METHOD_CASH),
            estimated_timeline=data.get("estimated_timeline", offer_service.TIMELINE_PAY_IN_FULL),
            additional_notes=data.get("additional_notes"),
            expires_at=data.get("expires_at"),
        )
        return jsonify({"offer": offer.to_dict()}), 201

    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to submit offer")
        return jsonify({"error": "Failed to submit offer"}), 500


@offers_bp.get("")
@require_auth
def list_offers_route():
    """
    List offers, newest first.

    Query params: status, buyer_id, property_id.
    Buyers only ever see their own offers.
    """
    try:
        buyer_id = request.args.get("buyer_id", type=int)
        if g.principal.role != ROLE_ADMIN:
            buyer_id = g.principal.user_id

        offers = offer_service.list_offers(
            status=request.args.get("status"),
            buyer_id=buyer_id,
            property_id=request.args.get("property_id"),
        )
        return jsonify({"offers": [o.to_dict() for o in offers], "count": len(offers)}), 200

    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list offers")
        return jsonify({"error": "Failed to list offers"}), 500


@offers_bp.get("/stats")
@require_auth
@require_role(ROLE_ADMIN)
def offer_stats_route():
    try:
        return jsonify(offer_service.get_offer_stats()), 200
    except Exception:
        current_app.logger.exception("Failed to compute offer stats")
        return jsonify({"error": "Failed to compute offer stats"}), 500


# =============================================================================
# SINGLE OFFER
# =============================================================================

@offers_bp.get("/<int:offer_id>")
@require_auth
def get_offer_route(offer_id: int):
    try:
        offer = _load_owned_offer(offer_id)
        return jsonify({"offer": offer.to_dict()}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to load offer %s", offer_id)
        return jsonify({"error": "Failed to load offer"}), 500


@offers_bp.patch("/<int:offer_id>")
@require_auth
def update_offer_route(offer_id: int):
    """
    Transition an offer.

    Request body:
    {
        "action": "approve" | "reject" | "withdraw" | "amend",
        "reason": "price too low",          (reject)
        "expected_status": "pending",       (approve/reject, optional)
        "offer_price": "...", "deposit_amount": "...",
        "estimated_timeline": "..."         (amend)
    }

    Returns:
        200: Updated offer (approve also returns the invoice)
        400: Invalid action or input
        403: Not allowed for this principal
        404: Offer not found
        409: Offer is no longer pending
    """
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()

    try:
        if action == "approve":
            offer = offer_service.approve(
                g.principal, offer_id, expected_status=data.get("expected_status", "pending")
            )
            invoice = invoice_service.get_invoice_for_offer(offer.id)
            return jsonify({"offer": offer.to_dict(), "invoice": invoice.to_dict()}), 200

        if action == "reject":
            offer = offer_service.reject(
                g.principal, offer_id, data.get("reason"),
                expected_status=data.get("expected_status", "pending"),
            )
        elif action == "withdraw":
            offer = offer_service.withdraw(g.principal, offer_id)
        elif action == "amend":
            offer = offer_service.amend(
                g.principal,
                offer_id,
                offer_price=data.get("offer_price"),
                deposit_amount=data.get("deposit_amount"),
                estimated_timeline=data.get("estimated_timeline"),
            )
        else:
            raise ValidationError("action must be one of: amend, approve, reject, withdraw")

        return jsonify({"offer": offer.to_dict()}), 200

    except ConflictError as e:
        if action in REVIEW_ACTIONS:
            return _review_conflict(e)
        return _error(e)
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to %s offer %s", action or "update", offer_id)
        return jsonify({"error": "Failed to update offer"}), 500


@offers_bp.get("/<int:offer_id>/invoice")
@require_auth
def get_offer_invoice_route(offer_id: int):
    try:
        offer = _load_owned_offer(offer_id)
        invoice = invoice_service.get_invoice_for_offer(offer.id)
        paid = payment_service.amount_paid(offer.id)
        return jsonify({"invoice": invoice.to_dict(amount_paid=paid)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to load invoice for offer %s", offer_id)
        return jsonify({"error": "Failed to load invoice"}), 500


@offers_bp.get("/<int:offer_id>/payments")
@require_auth
def list_offer_payments_route(offer_id: int):
    try:
        offer = _load_owned_offer(offer_id)
        payments = payment_service.list_for_offer(offer.id)
        return jsonify({"payments": [p.to_dict() for p in payments], "count": len(payments)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list payments for offer %s", offer_id)
        return jsonify({"error": "Failed to list payments"}), 500


@offers_bp.get("/<int:offer_id>/progress")
@require_auth
def offer_progress_route(offer_id: int):
    try:
        offer = _load_owned_offer(offer_id)
        return jsonify({"progress": progress_service.progress(offer.id).to_dict()}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to compute progress for offer %s", offer_id)
        return jsonify({"error": "Failed to compute progress"}), 500


# =============================================================================
# PROPERTY SUMMARY
# =============================================================================

@properties_bp.get("/<property_id>/offers/summary")
@require_auth
def property_offer_summary_route(property_id: str):
    try:
        return jsonify(offer_service.property_offer_summary(property_id)), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to summarise offers for property %s", property_id)
        return jsonify({"error": "Failed to summarise offers"}), 500
