from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Bound by the X-Request-ID middleware in tokengate.app for the life of a request
_request_id: ContextVar[Optional[str]] = ContextVar("tokengate_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID4) to the current request and return it."""
    cid = correlation_id or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _bind_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = request_id
    return event_dict


# Key fragments whose values are bearer material and are never logged, even in part
_SECRET_KEY_FRAGMENTS = ("token", "secret", "password", "authorization", "dsn")
_EMAIL_KEY_FRAGMENT = "email"
_MASK = "***"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _MASK
    return f"{local[:1]}{_MASK}@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask token, secret and email fields before any renderer sees them.

    Token-shaped keys (``access_token``, ``refresh_token``, ``jwt_secret``)
    lose their whole value; email addresses keep the first character and the
    domain so support can still correlate a report. Event names such as
    ``token_rejected`` are not keys and pass through.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lowered = key.lower()
        if any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS):
            if isinstance(value, str):
                event_dict[key] = _MASK
        elif _EMAIL_KEY_FRAGMENT in lowered and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    processors: list[Any] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _scrub_credentials,
    ]
    if json_output and not dev_mode:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_REDACTIONS = [
    # compact JWS: three base64url segments, the first starting with '{"'
    re.compile(r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"(?i)bearer\s+\S+"),
    re.compile(r"(?i)postgres(?:ql)?://[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)/(?:home|srv|var|etc|tmp|root)/\S+"),
]

_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip tokens, DSNs, credentials, SQL and filesystem paths from ``error``."""
    if not error or not isinstance(error, str):
        return "unknown error"
    result = error
    for pattern in _REDACTIONS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
