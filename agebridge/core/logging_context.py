import logging
import contextvars
from contextlib import contextmanager
from typing import Any, Dict, Optional

# Keys such as graph or transaction_id copied onto records logged in this context
_log_context: contextvars.ContextVar[Optional[Dict[str, Any]]] = contextvars.ContextVar(
    "agebridge_log_context", default=None
)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get() or {})


class ContextFilter(logging.Filter):
    def filter(self, record):
        for key, value in (_log_context.get() or {}).items():
            # explicit extra= values win
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def LoggingContext(logger: logging.Logger, **fields):
    """
    Attach ``fields`` to every record logged while the block runs,
    including records from awaited coroutines in the same task.

    example:
        with LoggingContext(logger, graph="social", transaction_id="tx_1a2b"):
            logger.info("carries graph and transaction_id")
    """
    token = _log_context.set({**current_log_context(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)
