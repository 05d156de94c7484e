import re
import logging
from typing import Pattern, List, Tuple


class PIIRedactionFilter(logging.Filter):
    """
    Logging filter that redacts personal data from assistant log messages.

    Merchant contacts and mall staff sometimes paste phone numbers, e-mail
    addresses or ID numbers into the chat box. The utterance is logged at
    several pipeline stages, so every record passes through this filter and
    the sensitive spans are replaced with placeholders like [PHONE_REDACTED].
    """

    # Order matters: longer numeric patterns must run before shorter ones
    PII_PATTERNS: List[Tuple[Pattern, str]] = [
        # OpenAI-style secret keys
        (
            re.compile(r'\bsk-[A-Za-z0-9_-]{16,}\b'),
            '[API_KEY_REDACTED]'
        ),

        # Bearer tokens in Authorization headers
        (
            re.compile(r'\bBearer\s+[A-Za-z0-9._-]{20,}', re.IGNORECASE),
            'Bearer [TOKEN_REDACTED]'
        ),

        # E-mail addresses
        (
            re.compile(r'[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}'),
            '[EMAIL_REDACTED]'
        ),

        # Resident ID numbers (18 chars, last may be X)
        (
            re.compile(r'(?<!\d)\d{17}[\dXx](?!\d)'),
            '[ID_REDACTED]'
        ),

        # Bank card numbers, 16-19 digits with optional separators
        (
            re.compile(r'(?<!\d)(?:\d{4}[-\s]?){3}\d{4,7}(?!\d)'),
            '[CARD_REDACTED]'
        ),

        # Mainland mobile numbers, optional +86 prefix
        (
            re.compile(r'(?<!\d)(?:\+?86[-\s]?)?1[3-9]\d{9}(?!\d)'),
            '[PHONE_REDACTED]'
        ),

        # Landlines such as 021-12345678
        (
            re.compile(r'(?<!\d)0\d{2,3}-\d{7,8}(?!\d)'),
            '[PHONE_REDACTED]'
        ),
    ]

    def __init__(self, name: str = ""):
        super().__init__(name)
        self._redaction_count = 0

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Redact PII from the record's rendered message.

        The record is modified in place and always allowed through.
        """
        original_msg = record.getMessage()
        redacted_msg = redact_pii(original_msg)

        # Replace msg and drop args so the handler does not re-format
        if redacted_msg != original_msg:
            self._redaction_count += 1
            record.msg = redacted_msg
            record.args = ()

        return True

    def get_redaction_count(self) -> int:
        """Number of records that had something redacted."""
        return self._redaction_count

    def reset_count(self) -> None:
        self._redaction_count = 0


def redact_pii(text: str) -> str:
    """
    Redact PII from any text.

    Used by the filter above and directly before utterances are stored in
    conversation history.

    Example:
        >>> redact_pii("联系人 13800138000，邮箱 li@example.com")
        '联系人 [PHONE_REDACTED]，邮箱 [EMAIL_REDACTED]'
    """
    if not text:
        return text

    redacted = text
    for pattern, replacement in PIIRedactionFilter.PII_PATTERNS:
        redacted = pattern.sub(replacement, redacted)

    return redacted
