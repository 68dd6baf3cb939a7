from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

EVENT_TYPES = ("CREATE", "UPDATE", "DELETE")


class WebhookEvent(BaseModel):
    """One change notification. Field names follow the remote payload (camelCase)."""
    model_config = ConfigDict(populate_by_name=True)

    event_category: str = Field(alias="eventCategory")     # INVOICE | BANKTRANSACTION | ...
    event_type: str = Field(alias="eventType")             # CREATE | UPDATE | DELETE
    resource_id: str = Field(alias="resourceId", min_length=1)
    tenant_id: str | None = Field(default=None, alias="tenantId")
    event_date_utc: datetime | None = Field(default=None, alias="eventDateUtc")
    event_sequence: int | None = Field(default=None, alias="eventSequence")
    resource_url: str | None = Field(default=None, alias="resourceUrl")

    @field_validator("event_category")
    @classmethod
    def _upper_category(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("event_type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in EVENT_TYPES:
            raise ValueError(f"eventType must be one of {', '.join(EVENT_TYPES)}")
        return v

    @property
    def identity(self) -> str:
        """Dedup key: the same delivery retried by the remote maps to the same identity."""
        marker = (
            str(self.event_sequence) if self.event_sequence is not None
            else self.event_date_utc.isoformat() if self.event_date_utc
            else ""
        )
        return ":".join(
            (self.tenant_id or "", self.event_category, self.resource_id, self.event_type, marker)
        )


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events: list[WebhookEvent] = []
    first_event_sequence: int | None = Field(default=None, alias="firstEventSequence")
    last_event_sequence: int | None = Field(default=None, alias="lastEventSequence")
