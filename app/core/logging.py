import logging

from app.core.config import settings
from app.core.request_context import request_id_ctx_var

LOG_FORMAT = "%(asctime)s %(levelname)s request_id=%(request_id)s %(name)s %(message)s"

# Loggers that install their own handlers; route them through the root handler instead.
PROPAGATED_LOGGERS = ("uvicorn", "uvicorn.error", "celery", "celery.task")


class RequestIdFilter(logging.Filter):
    """Stamps the current request id (or Celery task id) on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get()
        return True


def setup_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if any(isinstance(existing, RequestIdFilter) for handler in root_logger.handlers for existing in handler.filters):
        return

    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    root_logger.setLevel((level or settings.log_level).upper())
    root_logger.addHandler(handler)

    for name in PROPAGATED_LOGGERS:
        named = logging.getLogger(name)
        named.handlers.clear()
        named.propagate = True
