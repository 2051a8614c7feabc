import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def run_bounded(items: Sequence[T], operation: Callable[[T], R], concurrency: int) -> List:
    """
    Run `operation` over every item with at most `concurrency` calls in flight.
    A new call starts as soon as one finishes; returns once all are done,
    results in input order.

    `operation` is expected to turn its own failures into a result record.
    If an exception still escapes, it is logged and stored in that item's
    slot instead of failing the whole batch.
    """
    if not items:
        return []

    def _guarded(item):
        try:
            return operation(item)
        except Exception as e:
            log.exception("batch operation failed for %r", item)
            return e

    workers = max(1, min(concurrency, len(items)))
    with ThreadPoolExecutor(max_workers=workers) as ex:
        return list(ex.map(_guarded, items))
