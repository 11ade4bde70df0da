"""
Logging Setup
=============
Stdlib logging with the request id of the scan attached to every record
emitted while that scan runs.
"""

import logging

from harborscan.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """Default request_id for records not emitted through ScanLogAdapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        return True


class ScanLogAdapter(logging.LoggerAdapter):
    """Logger adapter that includes request_id in all log messages."""

    def process(self, msg, kwargs):
        request_id = self.extra.get("request_id", "NO_SCAN")
        kwargs.setdefault("extra", {})["request_id"] = request_id
        return msg, kwargs


def scan_logger(logger: logging.Logger, request_id: str) -> ScanLogAdapter:
    return ScanLogAdapter(logger, {"request_id": request_id})


def configure_logging(config: Settings) -> None:
    """Install the root handler once, at application startup."""
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    if not config.db_echo_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
