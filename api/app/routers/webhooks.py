import logging

from fastapi import APIRouter, Request

from app.core.config import settings
from app.services.webhooks import (
    SIGNATURE_HEADER,
    parse_payload,
    process_webhook_events,
    verify_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/ledger")
async def receive_ledger_webhook(request: Request):
    """
    Verify and enqueue a webhook batch from the remote ledger.

    The remote gives up on slow receivers, so nothing is processed inline:
    events are handed to a worker and the request is acknowledged at once.
    An empty body is the remote's intent-to-receive check.
    """
    raw = await request.body()
    if not raw:
        return {"status": "ok"}

    verify_signature(raw, request.headers.get(SIGNATURE_HEADER), settings.ledger_webhook_key)
    payload = parse_payload(raw)

    if payload.events:
        process_webhook_events.delay(payload.model_dump(mode="json", by_alias=True))
    logger.info(
        "Accepted webhook batch: %d events (sequence %s-%s)",
        len(payload.events), payload.first_event_sequence, payload.last_event_sequence,
    )
    return {"status": "ok", "events": len(payload.events)}
