"""Exception types raised across the inbound/outbound pipeline.

Expected outcomes (duplicate delivery, constraint races, failed extraction,
draft failures) are returned as values, not raised. Only the failures below
travel as exceptions.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class PhoneNormalizationError(PipelineError, ValueError):
    """Raw address could not be converted to E.164. Callers keep the raw value."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Cannot normalize phone number: {raw!r}")


class TransmissionError(PipelineError):
    """Delivery to the messaging platform failed (retryable and terminal alike)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransportNotConfiguredError(TransmissionError):
    """Credentials for the channel are missing."""


class UnsupportedChannelError(PipelineError):
    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Unsupported channel: {channel}")


class RecordNotFoundError(PipelineError):
    def __init__(self, entity: str, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ContentGenerationError(PipelineError):
    """The reply-content collaborator failed (HTTP error, bad status, empty body)."""
