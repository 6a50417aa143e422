# Overview: Best-effort notification dispatch for ledger transitions.

"""
Notification Dispatch

WHY: Buyers hear about offer reviews and payment verification; admins hear
about new proofs awaiting review. Delivery belongs to an external service.

RULES:
- Dispatch happens only after the triggering transaction has committed.
- Delivery runs on a small thread pool (inline when NOTIFY_ASYNC is off).
- Failures surface as ExternalServiceError inside delivery, are logged, and
  never reach the caller of the transition.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import httpx
from flask import Flask, current_app

from ..exceptions import ExternalServiceError
from ..time_utils import to_utc_z, utcnow


EVENT_OFFER_APPROVED = "offer.approved"
EVENT_OFFER_REJECTED = "offer.rejected"
EVENT_PAYMENT_SUBMITTED = "payment.submitted"
EVENT_PAYMENT_VERIFIED = "payment.verified"
EVENT_PAYMENT_REJECTED = "payment.rejected"

AUDIENCE_USER = "user"
AUDIENCE_ADMINS = "admins"

_EXTENSION_KEY = "offer_ledger.notifications"


class LogNotifier:
    """Delivery stand-in used when no webhook is configured."""

    def __init__(self, logger):
        self.logger = logger

    def send(self, payload: dict) -> None:
        self.logger.info(
            "notification %s -> %s %s: %s",
            payload["event"],
            payload["audience"],
            payload.get("recipient_id"),
            payload["title"],
        )


class WebhookNotifier:
    """POSTs each notification as JSON to the delivery service."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, payload: dict) -> None:
        try:
            response = self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Notification delivery failed: {exc}") from exc


class NotificationDispatcher:
    def __init__(self, app: Flask, notifier, *, run_async: bool, max_workers: int):
        self.app = app
        self.notifier = notifier
        self.run_async = run_async
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify") if run_async else None

    def submit(self, payload: dict) -> None:
        if self.executor is None:
            self._deliver(payload)
            return
        try:
            self.executor.submit(self._deliver, payload)
        except RuntimeError:
            # Executor already shut down
            self.app.logger.warning("Notification %s dropped: dispatcher shut down", payload["event"])

    def _deliver(self, payload: dict) -> None:
        try:
            self.notifier.send(payload)
        except ExternalServiceError as exc:
            self.app.logger.warning("Notification %s not delivered: %s", payload["event"], exc)
        except Exception:
            self.app.logger.exception("Notification %s crashed during delivery", payload["event"])

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)


def init_app(app: Flask, notifier=None) -> NotificationDispatcher:
    """Attach a dispatcher to the app; notifier defaults from config."""
    if notifier is None:
        url = app.config.get("NOTIFY_WEBHOOK_URL")
        if url:
            notifier = WebhookNotifier(url, timeout=app.config.get("NOTIFY_TIMEOUT", 5.0))
        else:
            notifier = LogNotifier(app.logger)

    dispatcher = NotificationDispatcher(
        app,
        notifier,
        run_async=app.config.get("NOTIFY_ASYNC", True),
        max_workers=app.config.get("NOTIFY_MAX_WORKERS", 4),
    )
    app.extensions[_EXTENSION_KEY] = dispatcher
    return dispatcher


def get_dispatcher() -> NotificationDispatcher | None:
    return current_app.extensions.get(_EXTENSION_KEY)


def dispatch(
    event: str,
    *,
    title: str,
    message: str,
    recipient_id: int | None = None,
    audience: str = AUDIENCE_USER,
    metadata: dict | None = None,
) -> None:
    """Fire-and-forget a notification. Never raises."""
    dispatcher = get_dispatcher()
    if dispatcher is None:
        current_app.logger.debug("No notification dispatcher configured; dropping %s", event)
        return

    payload = {
        "event": event,
        "audience": audience,
        "recipient_id": recipient_id,
        "title": title,
        "message": message,
        "metadata": metadata or {},
        "created_at": to_utc_z(utcnow()),
    }
    dispatcher.submit(payload)
