"""Meta webhook payloads decoded into a tagged union of events.

One delivery may carry several messages (or only delivery receipts), so the
parse functions return a list. Shapes that do not validate become
``UnrecognizedEvent`` instead of failing the request.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.services.orchestrator import InboundEvent

INSTAGRAM_ADDRESS_PREFIX = "ig:"


class MetaModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# WhatsApp Cloud API


class WhatsAppText(MetaModel):
    body: str = ""


class WhatsAppMedia(MetaModel):
    caption: Optional[str] = None


class WhatsAppMessage(MetaModel):
    id: str
    from_: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None
    image: Optional[WhatsAppMedia] = None
    video: Optional[WhatsAppMedia] = None
    document: Optional[WhatsAppMedia] = None

    @property
    def body(self) -> str:
        if self.text is not None:
            return self.text.body
        for media in (self.image, self.video, self.document):
            if media is not None and media.caption:
                return media.caption
        return ""


class WhatsAppProfile(MetaModel):
    name: Optional[str] = None


class WhatsAppContact(MetaModel):
    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppValue(MetaModel):
    messaging_product: Optional[str] = None
    contacts: list[WhatsAppContact] = Field(default_factory=list)
    messages: list[WhatsAppMessage] = Field(default_factory=list)
    statuses: list[dict[str, Any]] = Field(default_factory=list)


class WhatsAppChange(MetaModel):
    field: Optional[str] = None
    value: WhatsAppValue


class WhatsAppEntry(MetaModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppPayload(MetaModel):
    object: Optional[str] = None
    entry: list[WhatsAppEntry] = Field(default_factory=list)


# Instagram Messaging


class InstagramParty(MetaModel):
    id: str


class InstagramMessage(MetaModel):
    mid: str
    text: Optional[str] = None
    is_echo: bool = False


class InstagramMessaging(MetaModel):
    sender: InstagramParty
    recipient: Optional[InstagramParty] = None
    timestamp: Optional[int] = None
    message: Optional[InstagramMessage] = None


class InstagramEntry(MetaModel):
    id: Optional[str] = None
    messaging: list[InstagramMessaging] = Field(default_factory=list)


class InstagramPayload(MetaModel):
    object: Optional[str] = None
    entry: list[InstagramEntry] = Field(default_factory=list)


# Decoded events


class WhatsAppTextEvent(MetaModel):
    kind: Literal["whatsapp_text"] = "whatsapp_text"
    provider_message_id: str
    sender: str
    text: str = ""
    message_type: str = "text"
    wa_id: Optional[str] = None
    profile_name: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_inbound_event(self) -> InboundEvent:
        return InboundEvent(
            provider="whatsapp",
            provider_message_id=self.provider_message_id,
            sender=self.sender,
            text=self.text,
            sender_name=self.profile_name,
            wa_id=self.wa_id,
            timestamp=self.timestamp,
            metadata={"message_type": self.message_type},
        )


class InstagramTextEvent(MetaModel):
    kind: Literal["instagram_text"] = "instagram_text"
    provider_message_id: str
    sender_id: str
    text: str = ""
    timestamp: Optional[datetime] = None

    def to_inbound_event(self) -> InboundEvent:
        return InboundEvent(
            provider="instagram",
            provider_message_id=self.provider_message_id,
            sender=f"{INSTAGRAM_ADDRESS_PREFIX}{self.sender_id}",
            text=self.text,
            instagram_id=self.sender_id,
            timestamp=self.timestamp,
        )


class StatusOnlyEvent(MetaModel):
    kind: Literal["status"] = "status"
    provider: str
    count: int = 0


class UnrecognizedEvent(MetaModel):
    kind: Literal["unrecognized"] = "unrecognized"
    provider: str
    reason: str


WebhookEvent = Union[WhatsAppTextEvent, InstagramTextEvent, StatusOnlyEvent, UnrecognizedEvent]


def _from_epoch(value: Optional[Union[str, int]], millis: bool = False) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        seconds = int(value) / (1000 if millis else 1)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_whatsapp_payload(payload: Any) -> list[WebhookEvent]:
    try:
        parsed = WhatsAppPayload.model_validate(payload)
    except ValidationError as e:
        return [UnrecognizedEvent(provider="whatsapp", reason=f"invalid payload: {e.error_count()} errors")]

    events: list[WebhookEvent] = []
    statuses = 0
    for entry in parsed.entry:
        for change in entry.changes:
            value = change.value
            statuses += len(value.statuses)
            contact = value.contacts[0] if value.contacts else None
            for message in value.messages:
                events.append(
                    WhatsAppTextEvent(
                        provider_message_id=message.id,
                        sender=message.from_,
                        text=message.body,
                        message_type=message.type,
                        wa_id=(contact.wa_id if contact else None) or message.from_,
                        profile_name=contact.profile.name if contact and contact.profile else None,
                        timestamp=_from_epoch(message.timestamp),
                    )
                )
    if events:
        return events
    if statuses:
        return [StatusOnlyEvent(provider="whatsapp", count=statuses)]
    return [UnrecognizedEvent(provider="whatsapp", reason="no messages or statuses")]


def parse_instagram_payload(payload: Any) -> list[WebhookEvent]:
    try:
        parsed = InstagramPayload.model_validate(payload)
    except ValidationError as e:
        return [UnrecognizedEvent(provider="instagram", reason=f"invalid payload: {e.error_count()} errors")]

    events: list[WebhookEvent] = []
    receipts = 0
    for entry in parsed.entry:
        for messaging in entry.messaging:
            message = messaging.message
            # echoes are our own outbound messages
            if message is None or message.is_echo:
                receipts += 1
                continue
            events.append(
                InstagramTextEvent(
                    provider_message_id=message.mid,
                    sender_id=messaging.sender.id,
                    text=message.text or "",
                    timestamp=_from_epoch(messaging.timestamp, millis=True),
                )
            )
    if events:
        return events
    if receipts:
        return [StatusOnlyEvent(provider="instagram", count=receipts)]
    return [UnrecognizedEvent(provider="instagram", reason="no messages")]


PARSERS = {
    "whatsapp": parse_whatsapp_payload,
    "instagram": parse_instagram_payload,
}


class WebhookEventResult(BaseModel):
    kind: str
    provider_message_id: Optional[str] = None
    outcome: str
    duplicate: bool = False
    conversation_id: Optional[int] = None
    job_id: Optional[int] = None


class WebhookResponse(BaseModel):
    ok: bool
    results: list[WebhookEventResult] = Field(default_factory=list)


class OutboundRunResponse(BaseModel):
    ok: bool
    claimed: int = 0
    sent: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
