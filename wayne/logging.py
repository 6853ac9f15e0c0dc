from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

import structlog

if TYPE_CHECKING:
    from wayne.config import Settings

# Field names whose values never reach the sink in clear.
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "access_key")


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials and email addresses bound on a log event.

    Emails keep their first character and domain; credential-like fields are
    replaced outright.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lower_key = key.lower()
        if "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = "[redacted]"
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Called once at import with defaults and again by ``get_settings()`` with
    the values from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # module-level loggers must pick up the settings applied after import
        cache_logger_on_first_use=False,
    )


def configure_from_settings(settings: "Settings") -> None:
    configure_logging(
        settings.log_level,
        json_output=settings.log_json,
        development_mode=settings.log_dev_mode,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = ["configure_from_settings", "configure_logging", "get_logger"]
