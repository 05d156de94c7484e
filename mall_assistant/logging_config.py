"""
Process-wide logging setup for the mall assistant.

User utterances are logged by several pipeline stages, so the single console
handler installed here carries the PII redaction filter unless it is turned
off explicitly.
"""

import logging
import sys
from typing import Optional

from mall_assistant.security.pii_redactor import PIIRedactionFilter

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    enable_pii_redaction: bool = True
) -> logging.Logger:
    """
    Install one stdout handler on the root logger.

    Safe to call repeatedly: earlier handlers are replaced, not stacked.
    The API module calls this on import.

    Args:
        log_level: Level name; unknown names fall back to INFO
        log_format: Format string, DEFAULT_FORMAT when omitted
        enable_pii_redaction: Attach PIIRedactionFilter to the handler

    Returns:
        The root logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(log_format or DEFAULT_FORMAT, datefmt=DATE_FORMAT))
    if enable_pii_redaction:
        handler.addFilter(PIIRedactionFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    logging.getLogger("mall_assistant").setLevel(level)

    if enable_pii_redaction:
        root.info("🔒 PII redaction active on console output")
    return root


def get_logger(name: str = "mall_assistant") -> logging.Logger:
    """Named logger; it inherits the root handler (and its PII filter)."""
    return logging.getLogger(name)
