"""
Logging setup and contextual loggers
"""

import logging
import sys

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOGGER_NAME = "postgres-operator"

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(level: str = "INFO"):
    """Configure structured logging"""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class ContextAdapter(logging.LoggerAdapter):
    """Append key=value pairs (pod, revision, ...) to every message"""

    def process(self, msg, kwargs):
        if self.extra:
            pairs = " ".join(f"{k}={v}" for k, v in self.extra.items())
            msg = f"{msg} [{pairs}]"
        return msg, kwargs


def with_values(log, **values) -> ContextAdapter:
    """Return a logger that carries values in addition to those of log"""
    if isinstance(log, ContextAdapter):
        merged = dict(log.extra)
        merged.update(values)
        return ContextAdapter(log.logger, merged)
    return ContextAdapter(log, values)


def discard() -> logging.Logger:
    """A logger that drops everything written to it"""
    log = logging.getLogger(LOGGER_NAME + ".discard")
    log.propagate = False
    log.disabled = True
    if not log.handlers:
        log.addHandler(logging.NullHandler())
    return log
