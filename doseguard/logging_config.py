import logging
import re
from contextvars import ContextVar

from pythonjsonlogger import jsonlogger

from .config import Settings

# Set per request by the API middleware; empty for sweeper and script work
current_request_id: ContextVar[str] = ContextVar("current_request_id", default="")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s"


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = current_request_id.get() or "-"
        return True


class PIIRedactingFilter(logging.Filter):
    """Mask emails and phone numbers; free-text dose notes can carry either."""

    _email_re = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")
    _phone_re = re.compile(r"\+?\b\d[\d\s().-]{8,}\d\b")

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except Exception:
            return True
        msg = self._email_re.sub("[REDACTED_EMAIL]", msg)
        msg = self._phone_re.sub("[REDACTED_PHONE]", msg)
        record.msg = msg
        record.args = ()
        return True


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    handler = logging.StreamHandler()

    if settings.LOG_JSON:
        formatter = jsonlogger.JsonFormatter(fmt=LOG_FORMAT)
    else:
        formatter = logging.Formatter(fmt=LOG_FORMAT)

    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(PIIRedactingFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("faker").setLevel(logging.WARNING)
