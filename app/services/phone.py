"""Phone number normalization for inbound addresses."""

from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException

from app.errors import PhoneNormalizationError
from app.logging_config import get_logger

logger = get_logger("phone")

DEFAULT_REGION = "AE"


def normalize_phone(raw: str, default_region: str = DEFAULT_REGION) -> str:
    """Convert a raw address to E.164.

    WhatsApp delivers digits without the leading ``+`` ("971501234567"), so a
    digits-only value of international length is parsed as ``+<digits>`` first;
    anything else is parsed against ``default_region``.

    Raises:
        PhoneNormalizationError: the value is not a valid phone number.
    """
    if not raw or not raw.strip():
        raise PhoneNormalizationError(raw or "")

    cleaned = "".join(ch for ch in raw.strip() if ch.isdigit() or ch == "+")
    candidates = []
    if cleaned.startswith("+"):
        candidates.append((cleaned, None))
    else:
        if cleaned.startswith("00"):
            candidates.append(("+" + cleaned[2:], None))
        if len(cleaned) >= 11:
            candidates.append(("+" + cleaned, None))
        candidates.append((cleaned, default_region))

    for number, region in candidates:
        try:
            parsed = phonenumbers.parse(number, region)
        except NumberParseException:
            continue
        if phonenumbers.is_valid_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)

    raise PhoneNormalizationError(raw)


def try_normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Best-effort variant: logs and returns None instead of raising."""
    if not raw or raw.startswith("ig:") or "@" in raw:
        return None
    try:
        return normalize_phone(raw)
    except PhoneNormalizationError as exc:
        logger.warning("Phone normalization failed, keeping raw value", extra={"context": {"raw": exc.raw}})
        return None
