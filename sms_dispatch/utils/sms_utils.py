"""Recipient and message validation, plus the redaction helpers used in delivery logs."""

import re

from sms_dispatch.errors import ValidationError

# E.164: leading +, no leading zero, at most 15 digits
PHONE_NUMBER_REGEX = re.compile(r"^\+[1-9]\d{1,14}$")
PREVIEW_LENGTH = 100


def normalize_recipient(recipient: str | None) -> str:
    """Trim and validate a phone number, returning the canonical form."""
    value = (recipient or "").strip()
    if not value:
        raise ValidationError("Recipient phone number is required", field="to")
    if not PHONE_NUMBER_REGEX.match(value):
        raise ValidationError("Invalid phone number format", field="to")
    return value


def normalize_message(message: str | None) -> str:
    value = (message or "").strip()
    if not value:
        raise ValidationError("Message cannot be empty", field="message")
    return value


def mask_recipient(recipient: str) -> str:
    """
    Hide all but the country prefix and last four digits.

    "+254711223344" -> "+2*******3344"
    """
    if len(recipient) <= 6:
        return "*" * len(recipient)
    return recipient[:2] + "*" * (len(recipient) - 6) + recipient[-4:]


def message_preview(message: str, length: int = PREVIEW_LENGTH) -> str:
    if len(message) <= length:
        return message
    return message[:length] + "..."
