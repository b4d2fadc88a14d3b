from __future__ import annotations

import contextvars
import json
import logging
import logging.config
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from prometheus_client import REGISTRY, Counter

from .core.config import Settings
from .services.secrets_scrubber import SecretScrubber, get_secret_scrubber

_DEFAULT_CONTEXT = "-"
_REQUEST_ID = contextvars.ContextVar("request_id", default=_DEFAULT_CONTEXT)
_TENANT_ID = contextvars.ContextVar("tenant_id", default=_DEFAULT_CONTEXT)
_TRACE_ID = contextvars.ContextVar("trace_id", default=_DEFAULT_CONTEXT)
_JOB_ID = contextvars.ContextVar("job_id", default=_DEFAULT_CONTEXT)

# LogRecord attributes that are not user supplied ``extra`` fields.
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "request_id",
    "tenant_id",
    "trace_id",
    "job_id",
    "error_code",
}


def _register_error_counter() -> Counter:
    try:
        return Counter(
            "log_errors_total",
            "Total log statements at error level or above",
            ["module", "level"],
            registry=REGISTRY,
        )
    except ValueError:
        existing = getattr(REGISTRY, "_names_to_collectors", {}).get("log_errors_total")
        if existing:
            return existing  # type: ignore[return-value]
        raise


LOG_ERROR_COUNTER = _register_error_counter()


def bind_request_context(request_id: Optional[str] = None) -> None:
    if request_id:
        _REQUEST_ID.set(request_id)


def bind_tenant_context(tenant_id: Optional[str]) -> None:
    if tenant_id:
        _TENANT_ID.set(tenant_id)


def bind_trace_context(trace_id: Optional[str]) -> None:
    if trace_id:
        _TRACE_ID.set(trace_id)


def bind_job_context(job_id: Optional[str]) -> None:
    if job_id:
        _JOB_ID.set(job_id)


def clear_context() -> None:
    _REQUEST_ID.set(_DEFAULT_CONTEXT)
    _TENANT_ID.set(_DEFAULT_CONTEXT)
    _TRACE_ID.set(_DEFAULT_CONTEXT)
    _JOB_ID.set(_DEFAULT_CONTEXT)


def current_context() -> Dict[str, str]:
    return {
        "request_id": _REQUEST_ID.get(),
        "tenant_id": _TENANT_ID.get(),
        "trace_id": _TRACE_ID.get(),
        "job_id": _JOB_ID.get(),
    }


class ContextFilter(logging.Filter):
    """Inject contextvars into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = _REQUEST_ID.get()
        record.tenant_id = getattr(record, "tenant_id", None) or _TENANT_ID.get()
        record.trace_id = getattr(record, "trace_id", None) or _TRACE_ID.get()
        record.job_id = getattr(record, "job_id", None) or _JOB_ID.get()
        record.error_code = getattr(record, "error_code", "")
        return True


class PIIRedactingFilter(logging.Filter):
    """Filter that redacts credentials and PII with the same patterns used on event payloads."""

    def __init__(self, name: str = "", scrubber: Optional[SecretScrubber] = None):
        super().__init__(name)
        self.scrubber = scrubber or get_secret_scrubber()

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.msg = self._scrub(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self._scrub(arg) for arg in record.args)
        elif isinstance(record.args, dict):
            record.args = self._scrub(record.args)
        return True

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, (str, dict, list)):
            return self.scrubber.scrub(value).value
        return value


class PrometheusErrorHandler(logging.Handler):
    """A logging handler that increments a Prometheus counter on errors."""

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            LOG_ERROR_COUNTER.labels(module=record.name, level=record.levelname).inc()
        except Exception:  # pragma: no cover - never raise from logging
            pass


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line, ``extra`` fields included."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        return serialize_log_record(record)


def setup_logging(settings: Settings) -> None:
    """Load logging.yaml and configure handlers per environment."""

    config_path = settings.log_config_path or Path(__file__).with_name("logging.yaml")
    if not config_path.exists():
        raise FileNotFoundError(f"Logging configuration not found at {config_path}")

    with config_path.open("r", encoding="utf-8") as fp:
        config: Dict[str, Any] = yaml.safe_load(fp)

    env = settings.environment.lower()
    file_handler = config.get("handlers", {}).get("file")
    use_file = env != "development" and settings.enable_file_logging and settings.enable_json_logs
    if file_handler and use_file:
        log_dir = settings.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler["filename"] = str(log_dir / "observa.log")
    elif file_handler:
        # dictConfig opens every declared handler; drop it when unused.
        config["handlers"].pop("file")

    app_handlers: list[str]
    if env == "development" or not settings.enable_json_logs:
        app_handlers = ["console", "error_metrics"]
        config["root"]["handlers"] = ["console"]
    else:
        app_handlers = ["json", "error_metrics"]
        if use_file:
            app_handlers.append("file")
        config["root"]["handlers"] = ["json"]

    config.setdefault("loggers", {})
    config["loggers"]["observa"] = {
        "handlers": app_handlers,
        "level": settings.log_level.upper(),
        "propagate": False,
    }

    for handler_name in ("console", "json"):
        handler = config.get("handlers", {}).get(handler_name)
        if handler:
            handler["level"] = settings.log_level.upper()

    logging.config.dictConfig(config)


def serialize_log_record(record: logging.LogRecord) -> str:
    payload: Dict[str, Any] = {
        "timestamp": record.created,
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "context": current_context(),
    }
    extra = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
    if extra:
        payload["extra"] = extra
    if getattr(record, "error_code", ""):
        payload["error_code"] = record.error_code
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(payload, ensure_ascii=False, default=str)


__all__ = [
    "bind_request_context",
    "bind_tenant_context",
    "bind_trace_context",
    "bind_job_context",
    "clear_context",
    "ContextFilter",
    "JsonFormatter",
    "PIIRedactingFilter",
    "PrometheusErrorHandler",
    "setup_logging",
    "serialize_log_record",
    "current_context",
]
