"""E.164 phone number normalization."""
from __future__ import annotations

import re

from ..core.errors import InvalidDestinationError

_ALLOWED = re.compile(r"^[\d\s().+\-]+$")


def normalize_phone(raw: str | None, default_country_code: str = "1") -> str:
    """Return ``raw`` as ``+<digits>``; bare 10-digit numbers get the default country code."""

    value = (raw or "").strip()
    if not value or not _ALLOWED.match(value):
        raise InvalidDestinationError(f"Invalid phone number: {raw!r}")

    digits = re.sub(r"\D", "", value)
    if value.startswith("+"):
        pass
    elif digits.startswith("00"):
        digits = digits[2:]
    elif len(digits) == 10:
        digits = f"{default_country_code}{digits}"

    if not 8 <= len(digits) <= 15:
        raise InvalidDestinationError(f"Invalid phone number: {raw!r}")
    return f"+{digits}"
