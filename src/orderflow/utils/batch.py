"""Bounded fan-out for admin batch operations.

Each item runs on a worker thread with its own domain context. Failures are
reported per item; one failure never aborts the rest of the batch.
"""

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor

import structlog
from protean.exceptions import ObjectNotFoundError, ValidationError

from orderflow.config import get_settings
from orderflow.domain import orderflow
from orderflow.errors import OrderflowError

logger = structlog.get_logger(__name__)

# Expected per-item failures; anything else is a bug and is logged with a traceback
_ITEM_ERRORS = (ValidationError, ObjectNotFoundError, OrderflowError)


def _describe(exc: Exception) -> str:
    messages = getattr(exc, "messages", None)
    if isinstance(messages, dict):
        return "; ".join(str(m) for values in messages.values() for m in (values if isinstance(values, list) else [values]))
    return str(exc)


def run_batch(items: Iterable, work: Callable, key: Callable = str, max_workers: int | None = None) -> list[dict]:
    """Apply ``work`` to every item concurrently.

    Returns one ``{"id", "ok", "error"}`` dict per item, in input order.
    """
    items = list(items)
    if not items:
        return []

    def _run(item) -> dict:
        with orderflow.domain_context():
            try:
                work(item)
            except _ITEM_ERRORS as exc:
                logger.warning("batch_item_failed", item=key(item), error=_describe(exc))
                return {"id": key(item), "ok": False, "error": _describe(exc)}
            except Exception as exc:
                logger.exception("batch_item_crashed", item=key(item))
                return {"id": key(item), "ok": False, "error": str(exc)}
        return {"id": key(item), "ok": True, "error": None}

    workers = max(1, min(max_workers or get_settings().batch_max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="orderflow-batch") as executor:
        return list(executor.map(_run, items))
