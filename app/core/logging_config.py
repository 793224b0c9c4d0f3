"""
Structured logging for the messaging API and its workers.

Every record carries timestamp, level, service, logger and request_id.
JSON output is the production default; plain text is used in tests and local
development (LOG_JSON=false).

Usage:
    logger = logging.getLogger(__name__)
    logger.info("Message stored", extra={"message_id": message.id})
"""
import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Dict, Any
from pythonjsonlogger import jsonlogger

# Set by RequestIDMiddleware for the duration of one HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="no-request")

NOISY_LOGGERS = ("urllib3", "multipart", "sqlalchemy.engine")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps the service name onto every record."""

    def __init__(self, service_name: str = "messaging", *args, **kwargs):
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['service'] = self.service_name
        log_record['logger'] = record.name
        log_record['request_id'] = getattr(record, 'request_id', request_id_var.get())

        if record.exc_info and 'exc_info' not in log_record:
            log_record['exception'] = self.formatException(record.exc_info)


class LogContextFilter(logging.Filter):
    """
    Copy the current request id onto each record.

    ContextVars are copied into Starlette threadpool workers, so sync
    endpoints log the id of the request they serve.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'request_id'):
            record.request_id = request_id_var.get()
        return True


def configure_logging(service_name: str = "messaging", level: str = "INFO", enable_json: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        service_name: Value of the "service" field (e.g. "messaging-api")
        level: Root log level name
        enable_json: JSON lines when True, human-readable text otherwise
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(LogContextFilter())
    if enable_json:
        handler.setFormatter(CustomJsonFormatter(
            service_name=service_name,
            fmt='%(timestamp)s %(level)s %(service)s %(request_id)s %(message)s'
        ))
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
