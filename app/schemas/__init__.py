from app.schemas.webhook import OutboundRunResponse, WebhookEvent, WebhookEventResult, WebhookResponse

__all__ = ["WebhookEvent", "WebhookEventResult", "WebhookResponse", "OutboundRunResponse"]
