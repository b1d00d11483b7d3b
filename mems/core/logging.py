"""
Structured logging for Mems.

structlog renders every event; stdlib loggers (uvicorn, sqlalchemy) are
routed through the same renderer, and loguru carries the console sink and
the rotated error file in production.

Request, user and mem identifiers live in context variables and are
attached to every event emitted while they are set.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from loguru import logger as loguru_logger
from structlog.types import FilteringBoundLogger

from .config import settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
mem_id_ctx: ContextVar[str | None] = ContextVar("mem_id", default=None)
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

CONTEXT_VARS = {
    "request_id": request_id_ctx,
    "user_id": user_id_ctx,
    "mem_id": mem_id_ctx,
    "correlation_id": correlation_id_ctx,
}

# Presigned URLs carry credentials in the query string.
SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "access_key", "upload_url", "download_url")

NOISY_LOGGERS = ("urllib3", "httpx", "asyncio", "PIL", "sqlalchemy.engine", "multipart")

_STD_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


def current_context() -> dict:
    """Context identifiers that are currently set."""
    return {key: var.get() for key, var in CONTEXT_VARS.items() if var.get()}


def _is_sensitive(key) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def _redact(value):
    if isinstance(value, dict):
        return {k: "[REDACTED]" if _is_sensitive(k) else _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def enrich_event(logger, method_name, event_dict):
    """Attach service identity, timestamp and request context."""
    event_dict.update(current_context())
    event_dict.setdefault("service", settings.app.app_name)
    event_dict.setdefault("environment", settings.app.environment)
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_sensitive(logger, method_name, event_dict):
    return _redact(event_dict)


def _renderer():
    if settings.app.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


class StdlibBridgeFormatter(logging.Formatter):
    """Render stdlib log records as structlog events."""

    def __init__(self):
        super().__init__()
        self.render = _renderer()

    def format(self, record: logging.LogRecord) -> str:
        event = {
            "event": record.getMessage(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
        }
        event.update(current_context())
        event.update(
            (key, value) for key, value in vars(record).items()
            if key not in _STD_RECORD_ATTRS and key not in event
        )
        if record.exc_info:
            event["exception"] = self.formatException(record.exc_info)
        return self.render(None, record.levelname.lower(), _redact(event))


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            enrich_event,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_sensitive,
            _renderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_stdlib() -> None:
    level = getattr(logging, settings.app.log_level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StdlibBridgeFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # uvicorn installs its own access handler; let records reach the root one
    access = logging.getLogger("uvicorn.access")
    access.handlers = []
    access.propagate = True

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_loguru() -> None:
    loguru_logger.remove()
    sink_options = {"level": settings.app.log_level, "backtrace": True, "diagnose": False}

    if settings.app.log_format == "json":
        loguru_logger.add(sys.stdout, serialize=True, **sink_options)
    else:
        loguru_logger.add(
            sys.stdout,
            format="<green>{time:HH:mm:ss.SSS}</green> <level>{level: <8}</level> {name}:{line} {message}",
            colorize=True,
            **sink_options,
        )

    if settings.app.is_production:
        loguru_logger.add(
            "logs/mems-error.log",
            level="ERROR",
            rotation="10 MB",
            retention="14 days",
            compression="gz",
            serialize=True,
            backtrace=True,
            diagnose=False,
        )


def setup_logging():
    """Initialize structlog, stdlib and loguru sinks."""
    configure_structlog()
    configure_stdlib()
    configure_loguru()


class LoggingContext:
    """Set context identifiers for the duration of a block."""

    def __init__(self, **values):
        self.values = {key: value for key, value in values.items() if value}
        self._tokens = []

    def __enter__(self):
        self._tokens = [CONTEXT_VARS[key].set(str(value)) for key, value in self.values.items()]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            token = self._tokens.pop()
            token.var.reset(token)


def with_logging_context(
    request_id: str = None,
    user_id: str = None,
    mem_id: str = None,
    correlation_id: str = None,
) -> LoggingContext:
    return LoggingContext(request_id=request_id, user_id=user_id, mem_id=mem_id, correlation_id=correlation_id)


class AuditLogger:
    """Audit trail for mem membership and media lifecycle."""

    def __init__(self):
        self.logger = structlog.get_logger("audit")

    def _record(self, event: str, action: str, level: str = "info", **fields):
        getattr(self.logger, level)(event, action=action, **fields)

    def log_mem_created(self, mem_id: str, user_id: str, join_code: str, **kwargs):
        self._record("mem_created", "create_mem", mem_id=mem_id, user_id=user_id, join_code=join_code, **kwargs)

    def log_mem_joined(self, mem_id: str, user_id: str, already_member: bool, **kwargs):
        self._record(
            "mem_joined", "join_mem", mem_id=mem_id, user_id=user_id, already_member=already_member, **kwargs
        )

    def log_media_committed(self, media_id: str, mem_id: str, user_id: str, content_type: str, file_size: int, **kwargs):
        self._record(
            "media_committed",
            "commit_upload",
            media_id=media_id,
            mem_id=mem_id,
            user_id=user_id,
            content_type=content_type,
            file_size=file_size,
            **kwargs,
        )

    def log_media_rejected(self, mem_id: str, user_id: str, storage_key: str, reason: str, **kwargs):
        self._record(
            "media_rejected",
            "commit_upload",
            level="warning",
            mem_id=mem_id,
            user_id=user_id,
            storage_key=storage_key,
            reason=reason,
            **kwargs,
        )

    def log_media_deleted(self, media_id: str, mem_id: str, user_id: str, **kwargs):
        self._record("media_deleted", "delete_media", media_id=media_id, mem_id=mem_id, user_id=user_id, **kwargs)


class PerformanceLogger:
    """Timing events for compression runs and storage calls."""

    def __init__(self):
        self.logger = structlog.get_logger("performance")

    def log_compression(
        self,
        media_kind: str,
        strategy: str,
        input_size: int,
        output_size: int,
        execution_time: float,
        **kwargs,
    ):
        self.logger.info(
            "compression_finished",
            media_kind=media_kind,
            strategy=strategy,
            input_size=input_size,
            output_size=output_size,
            ratio=round(output_size / input_size, 4) if input_size else None,
            seconds=round(execution_time, 3),
            **kwargs,
        )

    def log_storage_call(self, operation: str, response_time: float, success: bool, **kwargs):
        self.logger.info(
            "storage_call", operation=operation, seconds=round(response_time, 3), success=success, **kwargs
        )


audit_logger = AuditLogger()
performance_logger = PerformanceLogger()


def get_logger(name: str = None) -> FilteringBoundLogger:
    return structlog.get_logger(name)


def create_request_id() -> str:
    return uuid.uuid4().hex
