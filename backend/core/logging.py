"""Centralized logging configuration with PII redaction.

Debtor master data carries IBANs, e-mail addresses and phone numbers; every
logger handed out by :func:`get_logger` masks them before a record leaves
the process.
"""

import logging
import re


class PIIRedactionFilter(logging.Filter):
    """Filter to redact PII from log messages."""

    def __init__(self):
        super().__init__()
        # IBAN pattern: 2 letters + 2 digits + up to 30 alphanumeric characters
        self.iban_pattern = re.compile(r'\b([A-Z]{2}\d{2}[A-Z0-9]{11,30})\b')
        self.email_pattern = re.compile(r'(\b[\w.+-]+@[\w-]+\.[\w.-]+\b)')
        # Phone pattern: optional +, digits, spaces, dashes, slashes
        self.phone_pattern = re.compile(r'(\+\d[\d \-/]{6,}\d)')

    def redact(self, text: str) -> str:
        text = self.iban_pattern.sub(self._mask_iban, text)
        text = self.email_pattern.sub(self._mask_email, text)
        return self.phone_pattern.sub(self._mask_phone, text)

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact PII from log record message, args and string extras."""
        if record.msg and isinstance(record.msg, str):
            record.msg = self.redact(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self.redact(arg) if isinstance(arg, str) else arg for arg in record.args
            )

        for key in ("name_hint", "counterparty", "display_name", "email"):
            value = record.__dict__.get(key)
            if isinstance(value, str):
                record.__dict__[key] = self.redact(value)

        return True

    def _mask_iban(self, match) -> str:
        """Mask IBAN: show country code, mask the rest."""
        iban = match.group(1)
        return iban[:2] + "*" * (len(iban) - 2)

    def _mask_email(self, match) -> str:
        """Mask email: show first char of user, keep domain."""
        email = match.group(1)
        user, domain = email.split("@", 1)
        masked_user = "*" if len(user) <= 1 else user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        """Mask phone: show first 3 chars, mask the rest."""
        phone = match.group(1)
        return phone[:3] + "*" * (len(phone) - 3)


def setup_logging_with_pii_redaction() -> None:
    """Attach the PII redaction filter to root handlers and package loggers."""
    pii_filter = PIIRedactionFilter()

    for handler in logging.getLogger().handlers:
        handler.addFilter(pii_filter)

    for logger_name in ("backend", "agents", "receivables", "bhb"):
        logging.getLogger(logger_name).addFilter(pii_filter)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with PII redaction applied."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, PIIRedactionFilter) for f in logger.filters):
        logger.addFilter(PIIRedactionFilter())
    return logger
