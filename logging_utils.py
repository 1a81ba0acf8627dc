import logging
import re

from config import get_settings

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
SECRET_RE = re.compile(
    r"((?:token|secret|key|password|authorization)[=:\s]+['\"]?)([a-zA-Z0-9_\-.]{20,})",
    re.IGNORECASE,
)


def scrub_pii(message: str) -> str:
    message = EMAIL_RE.sub("[EMAIL_REDACTED]", message)
    return SECRET_RE.sub(r"\1[REDACTED]", message)


class PiiScrubFilter(logging.Filter):
    """Masks email addresses and secrets before a record reaches any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        record.msg = scrub_pii(message)
        record.args = None
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not get_settings().is_production:
        return
    root = logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(f, PiiScrubFilter) for f in handler.filters):
            handler.addFilter(PiiScrubFilter())
