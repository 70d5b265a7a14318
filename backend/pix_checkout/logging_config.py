"""
structlog setup for the checkout service.

Payment code logs key/value events (`pix_charge_created`, `webhook_ignored`, ...).
Three things are added to every event here:

* `service`, `environment` and `version` from the settings in use;
* the current `request_id`, plus any `payment_id` / `order_id` bound with
  `bound_payment_context` for the duration of an operation;
* redaction: the Mercado Pago access token and the webhook secret never reach
  the output, whether passed as a field or embedded in an error string.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from .settings import Settings, settings
from .utils import request_id_ctx

REDACTED = "[redacted]"

# Event keys whose values are credentials regardless of content
SECRET_KEYS = frozenset(
    {"access_token", "authorization", "secret", "webhook_secret", "signature"}
)


def add_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = request_id_ctx.get("")
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


class AppContext:
    """Stamp every event with the service identity from `config`."""

    def __init__(self, config: Settings) -> None:
        self.fields = {
            "service": config.SERVICE_NAME,
            "environment": config.ENVIRONMENT,
            "version": config.VERSION,
        }

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


class RedactSecrets:
    """Replace configured credentials in event values with a placeholder."""

    def __init__(self, config: Settings) -> None:
        self.secrets = [
            value
            for value in (config.access_token, (config.MP_WEBHOOK_SECRET or "").strip())
            if len(value) >= 8
        ]

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in list(event_dict.items()):
            if key in SECRET_KEYS and value:
                event_dict[key] = REDACTED
            elif isinstance(value, str) and self.secrets:
                event_dict[key] = self._scrub(value)
        return event_dict

    def _scrub(self, text: str) -> str:
        for secret in self.secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text


def drop_color_message_key(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    # uvicorn duplicates the message under this key
    event_dict.pop("color_message", None)
    return event_dict


@contextmanager
def bound_payment_context(
    *, payment_id: str | None = None, order_id: str | None = None
) -> Iterator[None]:
    """Attach `payment_id` / `order_id` to every event logged inside the block."""
    fields = {
        key: str(value)
        for key, value in (("payment_id", payment_id), ("order_id", order_id))
        if value is not None
    }
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def build_processors(config: Settings, *, json_logs: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        AppContext(config),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso" if json_logs else "%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        RedactSecrets(config),
    ]
    if json_logs:
        processors += [
            structlog.processors.UnicodeDecoder(),
            drop_color_message_key,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def configure_structlog(json_logs: bool = True, config: Settings | None = None) -> None:
    """Configure structlog and route stdlib logging to stdout. JSON unless `json_logs` is False."""
    config = config or settings
    structlog.configure(
        processors=build_processors(config, json_logs=json_logs),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.INFO)

    # Provider and print-sink calls are logged by the gateway and forwarder
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = [
    "bound_payment_context",
    "build_processors",
    "configure_structlog",
    "get_logger",
]
