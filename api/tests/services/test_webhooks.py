import json
import logging

import pytest

from app.core.exceptions import MalformedPayload, Unauthorized
from app.models.ledger import REMOVED
from app.schemas.webhook import WebhookEvent
from app.services.entity_kinds import get_kind
from app.services.reconciler import Reconciler
from app.services.webhooks import (
    APPLIED, DUPLICATE, FAILED, SKIPPED, WebhookProcessor, compute_signature,
    parse_payload, verify_signature,
)
from fakes import bank_transaction, invoice

KEY = "webhook-signing-key"
INVOICE = get_kind("invoice")
BANK_TRANSACTION = get_kind("bank_transaction")


def _event(category: str, resource_id: str, event_type: str = "UPDATE", sequence: int | None = None) -> WebhookEvent:
    return WebhookEvent.model_validate({
        "eventCategory": category,
        "eventType": event_type,
        "resourceId": resource_id,
        "tenantId": "tenant-1",
        "eventDateUtc": "2026-10-19T08:00:00",
        "eventSequence": sequence,
    })


@pytest.fixture
def processor(client, store, dedup) -> WebhookProcessor:
    return WebhookProcessor(client, store, dedup)


# ── Verification ─────────────────────────────────────────────────────────────

class TestSignature:
    def test_valid_signature(self):
        body = b'{"events": []}'
        verify_signature(body, compute_signature(body, KEY), KEY)

    def test_tampered_body_is_rejected(self):
        signature = compute_signature(b'{"events": []}', KEY)
        with pytest.raises(Unauthorized):
            verify_signature(b'{"events": [1]}', signature, KEY)

    def test_missing_signature_is_rejected(self):
        with pytest.raises(Unauthorized):
            verify_signature(b"{}", None, KEY)

    def test_unconfigured_key_rejects_everything(self):
        with pytest.raises(Unauthorized):
            verify_signature(b"{}", compute_signature(b"{}", ""), "")


class TestParsePayload:
    def test_parses_remote_field_names(self):
        payload = parse_payload(json.dumps({
            "events": [{
                "eventCategory": "invoice",
                "eventType": "update",
                "resourceId": "inv-1",
                "eventSequence": 4,
            }],
            "firstEventSequence": 4,
            "lastEventSequence": 4,
        }).encode())
        event = payload.events[0]
        assert (event.event_category, event.event_type, event.resource_id) == ("INVOICE", "UPDATE", "inv-1")
        assert payload.first_event_sequence == 4

    @pytest.mark.parametrize("body", [
        b"not json",
        b'{"events": [{"eventCategory": "INVOICE"}]}',
        b'{"events": [{"eventCategory": "INVOICE", "eventType": "MERGE", "resourceId": "x"}]}',
    ])
    def test_invalid_bodies_are_malformed(self, body):
        with pytest.raises(MalformedPayload):
            parse_payload(body)


# ── Processing ───────────────────────────────────────────────────────────────

class TestProcessor:
    def test_update_refetches_and_reconciles(self, processor, remote, store):
        remote.add("Invoices", invoice("inv-1", total="80.00"))

        [outcome] = processor.process([_event("INVOICE", "inv-1")])

        assert outcome.outcome == APPLIED
        assert outcome.detail == "created"
        assert store.get_record(INVOICE, "inv-1").status == "AUTHORISED"
        assert len(remote.calls("/Invoices/inv-1")) == 1

    def test_one_failing_event_does_not_stop_its_siblings(self, processor, remote, store, dedup):
        remote.add("Invoices", invoice("inv-1"), invoice("inv-3"))
        remote.failing_ids.add("inv-2")
        events = [_event("INVOICE", "inv-1"), _event("INVOICE", "inv-2"), _event("INVOICE", "inv-3")]

        outcomes = processor.process(events)

        assert [o.outcome for o in outcomes] == [APPLIED, FAILED, APPLIED]
        assert "RemoteUnavailable" in outcomes[1].detail
        assert store.get_record(INVOICE, "inv-1") is not None
        assert store.get_record(INVOICE, "inv-3") is not None
        # a redelivery of the failed event gets another chance
        assert dedup.forgotten == [events[1].identity]

    def test_delete_marks_removed_without_refetch(self, processor, remote, store):
        Reconciler(store).reconcile(INVOICE, [invoice("inv-9")])

        [outcome] = processor.process([_event("INVOICE", "inv-9", event_type="DELETE")])

        assert outcome.outcome == APPLIED
        assert store.get_record(INVOICE, "inv-9").status == REMOVED
        assert remote.requests == []

    def test_record_gone_on_refetch_is_removed(self, processor, store):
        Reconciler(store).reconcile(BANK_TRANSACTION, [bank_transaction("tx-5")])

        [outcome] = processor.process([_event("BANKTRANSACTION", "tx-5")])

        assert outcome.outcome == APPLIED
        assert store.get_record(BANK_TRANSACTION, "tx-5").status == REMOVED

    def test_redelivered_event_is_a_duplicate(self, processor, remote):
        remote.add("Invoices", invoice("inv-1"))
        event = _event("INVOICE", "inv-1", sequence=11)

        first = processor.process([event])
        second = processor.process([event])

        assert first[0].outcome == APPLIED
        assert second[0].outcome == DUPLICATE
        assert len(remote.calls("/Invoices/inv-1")) == 1

    def test_unmirrored_categories_are_skipped(self, processor, remote):
        [outcome] = processor.process([_event("CONTACT", "contact-1")])
        assert outcome.outcome == SKIPPED
        assert remote.requests == []

    def test_payment_refreshes_its_invoice(self, processor, remote, store):
        Reconciler(store).reconcile(INVOICE, [invoice("inv-4", total="50.00")])
        remote.add("Invoices", invoice("inv-4", total="50.00", status="PAID", amount_paid="50.00", updated=3))
        remote.add("Payments", {"PaymentID": "pay-1", "Amount": 50, "Invoice": {"InvoiceID": "inv-4"}})

        [outcome] = processor.process([_event("PAYMENT", "pay-1", event_type="CREATE")])

        assert outcome.outcome == APPLIED
        assert outcome.detail == "invoice inv-4 updated"
        record = store.get_record(INVOICE, "inv-4")
        assert record.status == "PAID"
        assert record.amount_due == 0

    def test_deleted_payment_is_reported(self, processor, remote, caplog):
        caplog.set_level(logging.WARNING, logger="app.services.webhooks")

        [outcome] = processor.process([_event("PAYMENT", "pay-gone", event_type="DELETE")])

        assert outcome.outcome == APPLIED
        assert outcome.detail == "payment not found"
        assert "pay-gone" in caplog.text
        assert [r.path.rsplit("/", 1)[-1] for r in remote.requests] == ["pay-gone"]

    def test_works_without_dedup(self, client, store, remote):
        remote.add("Invoices", invoice("inv-1"))
        processor = WebhookProcessor(client, store)
        event = _event("INVOICE", "inv-1")
        assert [o.outcome for o in processor.process([event, event])] == [APPLIED, APPLIED]
