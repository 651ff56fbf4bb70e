"""Structured JSON logging for the marketing engine.

Every record is emitted as one JSON document tagged with the engine
component that produced it (``automation``, ``loyalty``, ``segments`` ...)
and the active trace. Patient e-mail addresses and phone numbers are masked
before they leave the process; campaign and message payloads routinely carry
them.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from typing import Any, Mapping

from loguru import logger
from opentelemetry import trace

from dentalos_marketing.core.settings import Settings

_PACKAGE = "dentalos_marketing"
_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_QUIET_LIBRARIES = ("sqlalchemy.engine", "httpx", "apscheduler.executors", "celery.worker.strategy")

_EMAIL = re.compile(r"\b([\w.+-])[\w.+-]*@([\w-]+\.[\w.-]+)\b")
_PHONE = re.compile(r"\+\d{1,3}(?:[ -]?\d{2,4}){2,5}")


def mask_contact_details(text: str) -> str:
    """Keep the first character of an e-mail user and the last two digits of a +E.164 number."""

    text = _EMAIL.sub(lambda match: f"{match.group(1)}***@{match.group(2)}", text)
    return _PHONE.sub(lambda match: "***" + match.group(0)[-2:], text)


def _component(record_name: str | None) -> str:
    parts = (record_name or "").split(".")
    if parts[0] != _PACKAGE:
        return parts[0] or "unknown"
    if len(parts) > 2 and parts[1] == "services":
        return parts[2]
    return parts[1] if len(parts) > 1 else "core"


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return mask_contact_details(value)
    if isinstance(value, Mapping):
        return {key: _scrub(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


class InterceptHandler(logging.Handler):
    """Forward stdlib records (SQLAlchemy, httpx, Celery, APScheduler) into Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so Loguru reports the original caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        extra = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_FIELDS}
        logger.bind(**extra).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage().replace("{", "{{").replace("}", "}}")
        )


def build_log_payload(record: Mapping[str, Any], metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a Loguru record into the JSON document shipped to the log pipeline."""

    payload: dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": mask_contact_details(record["message"]),
        "component": _component(record["name"]),
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = format(span_context.trace_id, "032x")
        payload["span_id"] = format(span_context.span_id, "016x")

    for key, value in record["extra"].items():
        payload.setdefault(key, _scrub(value))
    if record["exception"] is not None:
        payload["exception"] = mask_contact_details(repr(record["exception"].value))
    return payload


def configure_logging(config: Settings, *, version: str) -> None:
    """Send Loguru and stdlib logging to stdout as JSON at ``config.log_level``."""

    metadata = {"service": config.service_name, "environment": config.environment, "version": version}

    def sink(message: Any) -> None:
        sys.stdout.write(json.dumps(build_log_payload(message.record, metadata), default=str) + "\n")

    logger.remove()
    logger.add(sink, level=config.log_level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["InterceptHandler", "build_log_payload", "configure_logging", "mask_contact_details"]
