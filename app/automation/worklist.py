"""Work item sources: a fixed queue, or the portal's own listing view."""

from __future__ import annotations

from collections import deque
from typing import Callable, Iterable, List, Optional, Set

from . import audit
from .error_codes import ListingNavigationError
from .logging_utils import _automation_event
from .navigation import NavigationStrategyEngine, PagerDescriptors
from .ports import Descriptor, DocumentPort, ensure_session

HandledCheck = Callable[[str], bool]


class QueueWorkItemSource:
    """Yield item ids from an explicit list, in order, each once."""

    def __init__(self, item_ids: Iterable[str], handled: Optional[HandledCheck] = None) -> None:
        self._queue = deque(str(item).strip() for item in item_ids if str(item).strip())
        self._handled = handled

    def __len__(self) -> int:
        return len(self._queue)

    def next(self) -> Optional[str]:
        return self._queue.popleft() if self._queue else None

    def was_handled_this_period(self, item_id: str) -> bool:
        if self._handled is None:
            return False
        return bool(self._handled(item_id))


class ListingWorkItemSource:
    """Read pending item ids off the paginated listing view.

    Rows are scanned page by page; every id is yielded at most once per run.
    The controller reopens the listing between items, so the page cursor is
    re-reached through the navigation engine each time.
    """

    def __init__(
        self,
        *,
        item_id_descriptor: Descriptor = Descriptor(role="item-id"),
        handled: HandledCheck = audit.was_item_handled,
        max_pages: int = 200,
        engine_factory: Optional[Callable[[DocumentPort], NavigationStrategyEngine]] = None,
    ) -> None:
        self._pager = PagerDescriptors()
        self._item_id_descriptor = item_id_descriptor
        self._handled = handled
        self._max_pages = max(1, max_pages)
        self._engine_factory = engine_factory or NavigationStrategyEngine
        self._port: Optional[DocumentPort] = None
        self._seen: Set[str] = set()
        self._page = 1

    def bind(self, port: DocumentPort) -> None:
        """Attach the session's port; resets the cursor for a fresh run."""

        self._port = port
        self._seen = set()
        self._page = 1

    def next(self) -> Optional[str]:
        if self._port is None:
            raise RuntimeError("ListingWorkItemSource is not bound to a session")
        port = self._port
        engine = self._engine_factory(port)

        while self._page <= self._max_pages:
            identity = ensure_session(port, context="listing_scan")
            if identity.total_pages is not None and self._page > identity.total_pages:
                break
            if self._page > 1 or identity.page_number not in (None, 1):
                reached = engine.reach(self._page)
                if not reached:
                    _automation_event(
                        "nav",
                        step="listing_page_unreachable",
                        page=self._page,
                        reason=reached.reason,
                    )
                    raise ListingNavigationError(
                        f"Listing page {self._page} unreachable: {reached.reason or 'no strategy succeeded'}"
                    )

            for item_id in self._visible_ids(port):
                if item_id not in self._seen:
                    self._seen.add(item_id)
                    return item_id
            # Without a page total, a view with no forward pager is the last page.
            if identity.total_pages is None and not self._has_later_page(port):
                break
            self._page += 1

        _automation_event("state", phase="listing_exhausted", pages=self._page - 1, seen=len(self._seen))
        return None

    def was_handled_this_period(self, item_id: str) -> bool:
        return bool(self._handled(item_id))

    def _has_later_page(self, port: DocumentPort) -> bool:
        if port.locate(self._pager.next_page) is not None:
            return True
        for ref in port.locate_all(self._pager.page_link):
            text = (port.read_text(ref) or "").strip()
            if text.isdigit() and int(text) > self._page:
                return True
        return False

    def _visible_ids(self, port: DocumentPort) -> List[str]:
        ids: List[str] = []
        for ref in port.locate_all(self._item_id_descriptor):
            text = (port.read_text(ref) or "").strip()
            if text:
                ids.append(text)
        return ids


__all__ = ["ListingWorkItemSource", "QueueWorkItemSource"]
