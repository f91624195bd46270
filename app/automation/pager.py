"""Parse DataTables pager state out of listing HTML."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from bs4 import BeautifulSoup

_INFO_PATTERN = re.compile(
    r"Showing\s+([\d,]+)\s+to\s+([\d,]+)\s+of\s+([\d,]+)", re.IGNORECASE
)

INFO_SELECTOR = ".dataTables_info"
CURRENT_SELECTOR = ".paginate_button.current, .page-item.active .page-link"
PAGE_BUTTON_SELECTOR = ".paginate_button, .page-item .page-link"
LENGTH_SELECTOR = "select[name$='_length']"
ROW_SELECTOR = "table tbody tr"


@dataclass(frozen=True)
class PagerInfo:
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    first_item: Optional[int] = None
    last_item: Optional[int] = None
    total_items: Optional[int] = None
    page_size: Optional[int] = None
    item_count: Optional[int] = None
    visible_pages: Tuple[int, ...] = ()


def _to_int(raw: str) -> int:
    return int(raw.replace(",", ""))


def parse_info_text(text: str) -> Optional[Tuple[int, int, int]]:
    """Return ``(first, last, total)`` from "Showing 26 to 50 of 625 entries"."""

    match = _INFO_PATTERN.search(text or "")
    if not match:
        return None
    return _to_int(match.group(1)), _to_int(match.group(2)), _to_int(match.group(3))


def _digit_text(node) -> Optional[int]:
    text = node.get_text(strip=True) if node is not None else ""
    return int(text) if text.isdigit() else None


def parse_pager_html(html: str, *, row_selector: str = ROW_SELECTOR) -> PagerInfo:
    """Derive the current page, totals and page size from listing markup.

    The highlighted pager button wins for the current page; the info text is
    the fallback. Returns an empty :class:`PagerInfo` when the markup has no
    pager at all.
    """

    soup = BeautifulSoup(html or "", "html5lib")

    first = last = total = None
    info_node = soup.select_one(INFO_SELECTOR)
    if info_node is not None:
        parsed = parse_info_text(info_node.get_text(" ", strip=True))
        if parsed:
            first, last, total = parsed

    current = _digit_text(soup.select_one(CURRENT_SELECTOR))
    visible = sorted(
        {
            number
            for number in (_digit_text(node) for node in soup.select(PAGE_BUTTON_SELECTOR))
            if number is not None
        }
    )

    page_size: Optional[int] = None
    length_node = soup.select_one(LENGTH_SELECTOR)
    if length_node is not None:
        selected = length_node.select_one("option[selected]") or length_node.select_one("option")
        if selected is not None:
            value = str(selected.get("value") or selected.get_text(strip=True))
            if value.isdigit() and int(value) > 0:
                page_size = int(value)
    if page_size is None and first is not None and last is not None:
        if current is not None and current > 1 and first > 1:
            page_size = (first - 1) // (current - 1)
        elif total is not None and last < total:
            page_size = last - first + 1

    if current is None and first and page_size:
        current = (first - 1) // page_size + 1

    total_pages: Optional[int] = None
    if total is not None and page_size:
        total_pages = max(1, math.ceil(total / page_size))
    elif visible:
        total_pages = max(visible)

    if first is not None and last is not None:
        item_count: Optional[int] = 0 if total == 0 else last - first + 1
    else:
        rows = [
            row for row in soup.select(row_selector) if not row.select_one(".dataTables_empty")
        ]
        item_count = len(rows) if rows or soup.select_one("table") is not None else None

    return PagerInfo(
        current_page=current,
        total_pages=total_pages,
        first_item=first,
        last_item=last,
        total_items=total,
        page_size=page_size,
        item_count=item_count,
        visible_pages=tuple(visible),
    )


__all__ = ["PagerInfo", "parse_info_text", "parse_pager_html"]
