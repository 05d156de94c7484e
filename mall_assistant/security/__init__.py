"""Security helpers (PII redaction for logs and stored utterances)."""

from .pii_redactor import PIIRedactionFilter, redact_pii

__all__ = ["PIIRedactionFilter", "redact_pii"]
