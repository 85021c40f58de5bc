"""
Structured Logging

structlog configuration shared by the API process and tests. Credential
material is masked before rendering.
"""

import logging
import sys

import structlog

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = ("authorization", "private_key", "secret", "password", "token")


def redact_credentials(logger, method_name, event_dict):
    """Mask values whose key looks like a credential."""
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            event_dict[key] = REDACTED
        elif lowered == "headers" and isinstance(event_dict[key], dict):
            event_dict[key] = {
                name: (REDACTED if any(m in name.lower() for m in SENSITIVE_KEYS) else value)
                for name, value in event_dict[key].items()
            }
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure stdlib logging and structlog processors."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            redact_credentials,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
