"""One log stream for structlog (ledger client) and stdlib loggers (services, workers).

Stdlib records go through the same processors as structlog events via
``structlog.stdlib.ProcessorFormatter``, so a workflow line and the ledger
submit it triggers carry the same request id, environment and network.
"""

import logging
import sys
from typing import Any

import structlog

from trivia.config import Settings

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "arq.worker", "sqlalchemy.engine")

_handler: logging.Handler | None = None


def _deployment(settings: Settings) -> structlog.types.Processor:
    def add_deployment(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("environment", settings.environment)
        event_dict.setdefault("network", settings.ledger_network)
        return event_dict

    return add_deployment


def setup_logging(settings: Settings) -> None:
    """Configure structlog and route the root logger through its renderer. Safe to call again."""
    global _handler  # noqa: PLW0603
    as_json = settings.log_format == "json"
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _deployment(settings),
    ]

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    final: list[structlog.types.Processor] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if as_json:
        final += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final.append(structlog.dev.ConsoleRenderer())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processors=final))

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    _handler = handler

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
