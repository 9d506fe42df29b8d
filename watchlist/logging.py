from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# keys whose values are credentials; matched as substrings of the log key
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")
# a client-supplied request id is echoed into logs and responses, so keep it bounded
_MAX_REQUEST_ID_LENGTH = 128

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's X-Request-ID when it is usable, otherwise mint one.

    Also drops any identity bound by a previous request on this context.
    """
    candidate = (correlation_id or "").strip()
    if not candidate or len(candidate) > _MAX_REQUEST_ID_LENGTH or not candidate.isprintable():
        candidate = str(uuid.uuid4())
    request_id_var.set(candidate)
    structlog.contextvars.clear_contextvars()
    return candidate


def bind_identity(user_id: int, source: str, *, recovered: bool = False) -> None:
    """Tag the rest of this request's log events with who it resolved to."""
    structlog.contextvars.bind_contextvars(
        user_id=user_id, auth_source=source, auth_recovered=recovered
    )


def _inject_request_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _mask_credentials(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _CREDENTIAL_KEYS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``dev_mode`` or ``json_output=False`` switches to
    the coloured console renderer. Only the output format changes.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_request_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
