"""Page-by-page walk of a remote listing."""

import logging
from collections.abc import Callable, Iterator

from app.core.exceptions import ScopeTooLarge
from app.services.remote_client import RemotePage

logger = logging.getLogger(__name__)


def fetch_pages(
    list_operation: Callable[[int, int], RemotePage],
    page_size: int,
    max_pages: int | None = None,
) -> Iterator[list[dict]]:
    """Yield each page's items, requesting pages 1, 2, ... until exhaustion.

    A short page is the last one; an empty page is also treated as the end.
    After ``max_pages`` full pages one more page is read, and only a non-empty
    one raises ``ScopeTooLarge``.
    Failures propagate: a fetch is never resumed mid-sequence.
    """
    page = 1
    while True:
        result = list_operation(page, page_size)
        if not result.items:
            logger.debug("Page %d empty, listing exhausted", page)
            return
        if max_pages is not None and page > max_pages:
            raise ScopeTooLarge(
                f"Listing did not end within {max_pages} pages of {page_size}; narrow the scope"
            )
        yield result.items
        if result.count < page_size:
            return
        page += 1


def fetch_all(
    list_operation: Callable[[int, int], RemotePage],
    page_size: int,
    max_pages: int | None = None,
) -> Iterator[dict]:
    """Lazy sequence of every entity in a listing."""
    for items in fetch_pages(list_operation, page_size, max_pages):
        yield from items
