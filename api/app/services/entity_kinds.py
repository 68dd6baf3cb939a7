"""Entity kinds mirrored from the remote ledger.

Each kind knows the remote resource it lists, how to pull the essential
attributes (remote id, status, last-modified) out of a remote payload, how to
map the payload onto its local table, and how its listing behaves with
respect to voided/deleted records.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from app.models.ledger import BankAccount, BankTransaction, Invoice, LedgerAccount

ACCOUNT = "account"
BANK_ACCOUNT = "bank_account"
BANK_TRANSACTION = "bank_transaction"
INVOICE = "invoice"


# ─── Remote value parsing ─────────────────────────────────────────────────────

# Microsoft JSON dates as sent by the remote API: /Date(1573755038314+0000)/
_MS_DATE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def parse_remote_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 or ``/Date(ms)/`` timestamp into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    m = _MS_DATE.match(text)
    if m:
        return datetime.fromtimestamp(int(m.group(1)) / 1000, tz=timezone.utc)
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_remote_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    return parse_remote_datetime(value).date()


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def _upper(value: Any) -> str | None:
    return str(value).upper() if value not in (None, "") else None


def _nested(entity: dict, parent: str, field: str) -> Any:
    return (entity.get(parent) or {}).get(field)


# ─── Field mappers ────────────────────────────────────────────────────────────

def _ledger_account_fields(e: dict) -> dict:
    return {
        "code": e.get("Code"),
        "name": e.get("Name") or "",
        "type": _upper(e.get("Type")),
        "account_class": _upper(e.get("Class")),
        "tax_type": e.get("TaxType"),
        "description": e.get("Description"),
        "currency_code": e.get("CurrencyCode"),
    }


def _bank_account_fields(e: dict) -> dict:
    return {
        "code": e.get("Code"),
        "name": e.get("Name") or "",
        "account_number": e.get("BankAccountNumber"),
        "bank_account_type": _upper(e.get("BankAccountType")),
        "currency_code": e.get("CurrencyCode"),
    }


def _bank_transaction_fields(e: dict) -> dict:
    line_items = e.get("LineItems") or []
    return {
        "bank_account_remote_id": _nested(e, "BankAccount", "AccountID"),
        "type": _upper(e.get("Type")),
        "date": parse_remote_date(e.get("DateString") or e.get("Date")),
        "reference": e.get("Reference"),
        "contact_name": _nested(e, "Contact", "Name"),
        "description": (line_items[0].get("Description") if line_items else None),
        "currency_code": e.get("CurrencyCode"),
        "total": _decimal(e.get("Total")),
        "is_reconciled": bool(e.get("IsReconciled", False)),
        "line_items": line_items,
    }


def _invoice_fields(e: dict) -> dict:
    return {
        "invoice_number": e.get("InvoiceNumber"),
        "type": _upper(e.get("Type")),
        "contact_remote_id": _nested(e, "Contact", "ContactID"),
        "contact_name": _nested(e, "Contact", "Name"),
        "date": parse_remote_date(e.get("DateString") or e.get("Date")),
        "due_date": parse_remote_date(e.get("DueDateString") or e.get("DueDate")),
        "reference": e.get("Reference"),
        "currency_code": e.get("CurrencyCode"),
        "total": _decimal(e.get("Total")),
        "amount_due": _decimal(e.get("AmountDue")),
        "amount_paid": _decimal(e.get("AmountPaid")),
        "line_items": e.get("LineItems") or [],
    }


# ─── Registry ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParentLink:
    """Resolves a remote parent id held in ``remote_field`` to a local FK."""
    remote_field: str
    local_field: str
    parent_kind: str


@dataclass(frozen=True)
class EntityKind:
    name: str
    model: type
    resource: str                      # remote listing path and response key
    id_field: str
    to_fields: Callable[[dict], dict]
    default_status: str = "ACTIVE"
    base_filter: str | None = None     # always-on remote where-expression
    date_column: str | None = None     # local column a sweep scope applies to
    remote_date_field: str | None = None
    # True when the listing returns voided/deleted records with their status,
    # so status comparison detects them before the absence sweep does.
    listing_reports_removed: bool = False
    parent: ParentLink | None = None

    def remote_id(self, entity: dict) -> str | None:
        value = entity.get(self.id_field)
        return str(value) if value else None

    def status(self, entity: dict) -> str:
        return _upper(entity.get("Status")) or self.default_status

    def last_modified(self, entity: dict) -> datetime | None:
        return parse_remote_datetime(entity.get("UpdatedDateUTC"))

    def scope_filter(self, since: date | None) -> str | None:
        """Remote where-expression for records dated on/after ``since``."""
        clauses = []
        if self.base_filter:
            clauses.append(self.base_filter)
        if since is not None and self.remote_date_field:
            clauses.append(
                f"{self.remote_date_field} >= DateTime({since.year}, {since.month:02d}, {since.day:02d})"
            )
        return " AND ".join(clauses) or None


ENTITY_KINDS: dict[str, EntityKind] = {
    ACCOUNT: EntityKind(
        name=ACCOUNT,
        model=LedgerAccount,
        resource="Accounts",
        id_field="AccountID",
        to_fields=_ledger_account_fields,
        # ARCHIVED accounts are listed; deleted ones are not
        listing_reports_removed=False,
    ),
    BANK_ACCOUNT: EntityKind(
        name=BANK_ACCOUNT,
        model=BankAccount,
        resource="Accounts",
        id_field="AccountID",
        to_fields=_bank_account_fields,
        base_filter='Type=="BANK"',
    ),
    BANK_TRANSACTION: EntityKind(
        name=BANK_TRANSACTION,
        model=BankTransaction,
        resource="BankTransactions",
        id_field="BankTransactionID",
        to_fields=_bank_transaction_fields,
        default_status="AUTHORISED",
        date_column="date",
        remote_date_field="Date",
        # Deleted bank transactions silently drop out of the listing
        listing_reports_removed=False,
        parent=ParentLink("bank_account_remote_id", "bank_account_id", BANK_ACCOUNT),
    ),
    INVOICE: EntityKind(
        name=INVOICE,
        model=Invoice,
        resource="Invoices",
        id_field="InvoiceID",
        to_fields=_invoice_fields,
        default_status="DRAFT",
        date_column="date",
        remote_date_field="Date",
        listing_reports_removed=True,
    ),
}

# Parents before the records that reference them
SYNC_ORDER: tuple[str, ...] = (ACCOUNT, BANK_ACCOUNT, BANK_TRANSACTION, INVOICE)

# Webhook eventCategory → entity kind
WEBHOOK_CATEGORIES: dict[str, str] = {
    "ACCOUNT": ACCOUNT,
    "BANKACCOUNT": BANK_ACCOUNT,
    "BANKTRANSACTION": BANK_TRANSACTION,
    "INVOICE": INVOICE,
}


def get_kind(name: str) -> EntityKind:
    try:
        return ENTITY_KINDS[name]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {name}") from None


def ordered_kinds(names: list[str] | tuple[str, ...] | None = None) -> list[EntityKind]:
    """Return the requested kinds (all when None) in dependency order."""
    if names is None:
        return [ENTITY_KINDS[n] for n in SYNC_ORDER]
    for n in names:
        get_kind(n)
    return [ENTITY_KINDS[n] for n in SYNC_ORDER if n in names]
