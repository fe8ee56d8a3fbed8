"""
Relay-scoped logging: every line carries the request id, relay type
(LB / APP) and the id of the load balancer or application being served.
"""

import logging
from typing import Any, MutableMapping, Tuple

LOG_FORMAT = (
    "%(asctime)s [%(levelname)s] [%(request_id)s] [%(relay_type)s] "
    "[%(type_id)s] %(name)s: %(message)s"
)

_RELAY_FIELDS = ("request_id", "relay_type", "type_id")


class RelayContextFilter(logging.Filter):
    """Fill in blank relay fields so LOG_FORMAT works for any record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in _RELAY_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


class RelayLogger(logging.LoggerAdapter):
    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def relay_logger(
    logger: logging.Logger, request_id: str, relay_type: str, type_id: str
) -> RelayLogger:
    return RelayLogger(
        logger,
        {"request_id": request_id, "relay_type": relay_type, "type_id": type_id},
    )


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RelayContextFilter) for f in handler.filters):
            handler.addFilter(RelayContextFilter())
