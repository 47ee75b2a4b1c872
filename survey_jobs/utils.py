"""Phone number helpers."""

import hashlib
import re

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_e164(phone: str) -> bool:
    """True if ``phone`` looks like +<country><number>, up to 15 digits."""
    return bool(phone) and E164_PATTERN.match(phone) is not None


def hash_phone_number(phone: str) -> str:
    """SHA-256 hex digest used to look phones up without indexing plaintext."""
    return hashlib.sha256(phone.encode("utf-8")).hexdigest()


def mask_phone_number(phone: str) -> str:
    """Render a phone number safe for logs: +55*******9999."""
    if not phone or len(phone) < 8:
        return "****"
    return phone[:3] + "*" * (len(phone) - 7) + phone[-4:]
