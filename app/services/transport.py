"""Outbound transmission over the Meta Graph API (WhatsApp Cloud, Instagram)."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from app.config import settings
from app.errors import TransmissionError, TransportNotConfiguredError, UnsupportedChannelError
from app.logging_config import get_logger
from app.services.alert_service import alert_critical

logger = get_logger("transport")

INSTAGRAM_ADDRESS_PREFIX = "ig:"


class Transport(ABC):
    """Delivers text to one address; returns the provider message id.

    Retryable and terminal failures both raise :class:`TransmissionError`;
    retries are the job worker's concern.
    """

    channel: str = ""

    @abstractmethod
    def send_text(self, to: str, text: str) -> str:
        pass


class GraphTransport(Transport):
    def __init__(self, access_token: Optional[str], sender_id: Optional[str], timeout: float = 30.0):
        self.access_token = access_token
        self.sender_id = sender_id
        self.timeout = timeout

    def _endpoint(self) -> str:
        return f"{settings.meta_graph_url.rstrip('/')}/{self.sender_id}/messages"

    @abstractmethod
    def _payload(self, to: str, text: str) -> dict:
        pass

    @abstractmethod
    def _message_id(self, data: dict) -> Optional[str]:
        pass

    def send_text(self, to: str, text: str) -> str:
        if not self.access_token or not self.sender_id:
            logger.error(f"{self.channel} transport is not configured")
            alert_critical(f"{self.channel} send failed", {"to": to, "error": "missing_credentials"})
            raise TransportNotConfiguredError(f"{self.channel} credentials are not configured")
        if not to or not text:
            raise TransmissionError("Recipient and text are required")

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self._endpoint(),
                    json=self._payload(to, text),
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Error sending {self.channel} message: {e}", extra={"context": {"to": to}})
            raise TransmissionError(f"{self.channel} request failed: {e}") from e

        logger.info(
            f"{self.channel} response: status={response.status_code}",
            extra={"context": {"to": to, "body": response.text[:200]}},
        )
        if response.status_code >= 400:
            raise TransmissionError(
                f"{self.channel} API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            message_id = self._message_id(response.json())
        except ValueError:
            message_id = None
        if not message_id:
            raise TransmissionError(f"{self.channel} response has no message id", status_code=response.status_code)
        return message_id


class WhatsAppTransport(GraphTransport):
    channel = "whatsapp"

    def _payload(self, to: str, text: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }

    def _message_id(self, data: dict) -> Optional[str]:
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None


class InstagramTransport(GraphTransport):
    channel = "instagram"

    def _payload(self, to: str, text: str) -> dict:
        recipient = to[len(INSTAGRAM_ADDRESS_PREFIX) :] if to.startswith(INSTAGRAM_ADDRESS_PREFIX) else to
        return {"recipient": {"id": recipient}, "message": {"text": text}}

    def _message_id(self, data: dict) -> Optional[str]:
        return data.get("message_id")


def get_transport(channel: str) -> Transport:
    if channel == "whatsapp":
        return WhatsAppTransport(settings.whatsapp_access_token, settings.whatsapp_phone_number_id)
    if channel == "instagram":
        return InstagramTransport(settings.instagram_access_token, settings.instagram_page_id)
    raise UnsupportedChannelError(channel)
