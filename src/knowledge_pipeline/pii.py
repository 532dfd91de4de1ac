"""PII redaction applied to message text before it is sent for generation."""

import re
from typing import Protocol

# Role mailboxes are business contacts, not personal data
BUSINESS_MAILBOXES = {
    "support", "help", "sales", "billing", "info", "contact", "admin",
    "noreply", "no-reply", "security", "privacy", "team", "hello",
}

EMAIL_PATTERN = re.compile(r"\b([A-Za-z0-9._%+-]+)@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
CARD_PATTERN = re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b")
SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
PHONE_PATTERN = re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
TOKEN_PATTERN = re.compile(r"\b(?:xox[abpr]-[\w-]{10,}|sk-[\w-]{20,}|gh[pousr]_\w{20,})\b")


class PIIRedactor(Protocol):
    def redact(self, text: str) -> str: ...


class RegexPIIRedactor:
    """Replaces personal e-mails, card numbers, SSNs, phone numbers and API tokens."""

    def redact(self, text: str) -> str:
        if not text:
            return text
        text = TOKEN_PATTERN.sub("[TOKEN]", text)
        text = EMAIL_PATTERN.sub(self._replace_email, text)
        text = CARD_PATTERN.sub("[CREDIT_CARD]", text)
        text = SSN_PATTERN.sub("[SSN]", text)
        text = PHONE_PATTERN.sub("[PHONE]", text)
        return text

    @staticmethod
    def _replace_email(match: re.Match) -> str:
        if match.group(1).lower() in BUSINESS_MAILBOXES:
            return match.group(0)
        return "[EMAIL]"


class NoopRedactor:
    def redact(self, text: str) -> str:
        return text
