# entitlement_engine/core/logger.py
from __future__ import annotations
import logging
import sys
from typing import Optional

import structlog
from entitlement_engine.core.settings import settings, Settings


def setup_logging(cfg: Optional[Settings] = None) -> None:
    cfg = cfg or settings
    level = getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)

    # Standard logging config
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )

    # Structlog processors
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if cfg.DEV_MODE:
        processors.append(structlog.processors.ExceptionRenderer())
        processors.append(structlog.processors.KeyValueRenderer(sort_keys=True))
    else:
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def bind_event_context(*, event_id: Optional[str] = None, correlation_id: Optional[str] = None, **extra) -> None:
    """Attach per-message identifiers to every log line emitted while it is processed."""
    structlog.contextvars.clear_contextvars()
    values = {"event_id": event_id, "correlation_id": correlation_id, **extra}
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})
