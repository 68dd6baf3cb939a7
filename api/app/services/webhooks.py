"""Webhook event processing.

The HTTP endpoint only verifies, validates and enqueues; everything here runs
in a Celery worker. Each event re-fetches the single affected record and feeds
it through the same reconciler the bulk sync uses, so a webhook racing a bulk
sync converges to the same local state. Events are processed independently:
one failure is logged with the event identity and its siblings carry on. The
scheduled syncs and the deletion sweep are the backstop for missed events.
"""

import base64
import hashlib
import hmac
import logging
from collections import Counter
from dataclasses import dataclass

import redis
from pydantic import ValidationError

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import MalformedPayload, Unauthorized
from app.core.redis import RedisEventDeduplicator, get_sync_redis
from app.schemas.webhook import WebhookEvent, WebhookPayload
from app.services.entity_kinds import INVOICE, WEBHOOK_CATEGORIES, get_kind
from app.services.reconciler import Reconciler
from app.services.remote_client import RemoteClient, build_client
from app.services.store import LedgerStore
from app.worker import celery_app

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-ledger-signature"

APPLIED = "applied"
SKIPPED = "skipped"
DUPLICATE = "duplicate"
FAILED = "failed"

PAYMENT_CATEGORY = "PAYMENT"
PAYMENTS_RESOURCE = "Payments"


# ─── Verification ─────────────────────────────────────────────────────────────

def compute_signature(raw: bytes, key: str) -> str:
    digest = hmac.new(key.encode(), raw, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(raw: bytes, signature: str | None, key: str | None = None) -> None:
    """Raise Unauthorized unless ``signature`` is the keyed hash of the raw body."""
    if key is None:
        key = settings.ledger_webhook_key
    if not key:
        raise Unauthorized("Webhook signing key is not configured")
    if not signature:
        raise Unauthorized("Missing webhook signature")
    if not hmac.compare_digest(compute_signature(raw, key), signature.strip()):
        raise Unauthorized("Webhook signature mismatch")


def parse_payload(raw: bytes) -> WebhookPayload:
    try:
        return WebhookPayload.model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedPayload(f"Invalid webhook payload ({exc.error_count()} errors)") from exc


# ─── Processing ───────────────────────────────────────────────────────────────

@dataclass
class EventOutcome:
    identity: str
    outcome: str
    detail: str | None = None


class WebhookProcessor:
    def __init__(
        self,
        client: RemoteClient,
        store: LedgerStore,
        dedup: RedisEventDeduplicator | None = None,
    ):
        self.client = client
        self.store = store
        self.dedup = dedup
        self.reconciler = Reconciler(store)

    def process(self, events: list[WebhookEvent]) -> list[EventOutcome]:
        return [self.process_event(event) for event in events]

    def _first_seen(self, identity: str) -> bool:
        if self.dedup is None:
            return True
        try:
            return self.dedup.first_seen(identity)
        except redis.RedisError as exc:
            # Reprocessing is harmless; dropping the event is not
            logger.warning("Webhook dedup unavailable for %s: %s", identity, exc)
            return True

    def _forget(self, identity: str) -> None:
        if self.dedup is None:
            return
        try:
            self.dedup.forget(identity)
        except redis.RedisError as exc:
            logger.warning("Could not clear dedup key for %s: %s", identity, exc)

    def process_event(self, event: WebhookEvent) -> EventOutcome:
        identity = event.identity
        category = event.event_category
        if category != PAYMENT_CATEGORY and category not in WEBHOOK_CATEGORIES:
            logger.info("Ignoring webhook event %s: category %s not mirrored", identity, category)
            return EventOutcome(identity, SKIPPED, f"category {category} not mirrored")

        if not self._first_seen(identity):
            logger.info("Duplicate webhook event %s", identity)
            return EventOutcome(identity, DUPLICATE)

        try:
            detail = self._apply(event)
        except Exception as exc:
            self.store.rollback()
            # Let a redelivery of the same event try again
            self._forget(identity)
            logger.exception("Webhook event %s failed", identity)
            return EventOutcome(identity, FAILED, f"{type(exc).__name__}: {exc}")

        logger.info("Webhook event %s applied: %s", identity, detail)
        return EventOutcome(identity, APPLIED, detail)

    def _apply(self, event: WebhookEvent) -> str:
        if event.event_category == PAYMENT_CATEGORY:
            return self._refresh_payment(event.resource_id)

        kind = get_kind(WEBHOOK_CATEGORIES[event.event_category])
        if event.event_type == "DELETE":
            removed = self.store.mark_removed(kind, event.resource_id)
            self.store.commit()
            return "removed" if removed else "already removed"
        return self._refresh(kind, event.resource_id)

    def _refresh(self, kind, remote_id: str) -> str:
        entity = self.client.get_one(kind, remote_id)
        if entity is None:
            removed = self.store.mark_removed(kind, remote_id)
            self.store.commit()
            return "gone remotely, removed" if removed else "gone remotely"
        result = self.reconciler.reconcile(kind, [entity])
        if result.created:
            return "created"
        return "updated" if result.updated else "unchanged"

    def _refresh_payment(self, payment_id: str) -> str:
        """A payment changes its invoice's amounts and status; refresh that invoice."""
        payment = self.client.get_resource(PAYMENTS_RESOURCE, payment_id)
        if payment is None:
            # the linked invoice is unknown; its amounts catch up on the next bulk sync
            logger.warning("Payment %s not found remotely; its invoice was not refreshed", payment_id)
            return "payment not found"
        invoice_id = (payment.get("Invoice") or {}).get("InvoiceID")
        if not invoice_id:
            return "payment has no invoice"
        return f"invoice {invoice_id} {self._refresh(get_kind(INVOICE), invoice_id)}"


# ─── Celery task ──────────────────────────────────────────────────────────────

@celery_app.task(name="app.services.webhooks.process_webhook_events")
def process_webhook_events(payload: dict) -> dict:
    """Process a verified webhook batch. Returns a count per outcome."""
    batch = WebhookPayload.model_validate(payload)
    with SessionLocal() as session, build_client() as client:
        processor = WebhookProcessor(
            client, LedgerStore(session), RedisEventDeduplicator(get_sync_redis())
        )
        outcomes = processor.process(batch.events)

    counts = Counter(o.outcome for o in outcomes)
    logger.info("Processed %d webhook events: %s", len(outcomes), dict(counts))
    return dict(counts)
