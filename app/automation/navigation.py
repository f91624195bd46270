"""Reaching a page of listing results without direct page addressing.

The portal's listings are paginated DataTables. Some views accept a page query
parameter, many do not, and the pager only ever shows a small window of page
numbers. :class:`NavigationStrategyEngine` tries a fixed chain of strategies and
the first one that claims success is checked against what the view actually
shows:

1. ``direct_locate``    click the page number if it is visible in the pager.
2. ``direct_address``   rewrite the page query parameter, when the view has one.
3. ``jump_and_walk``    for far targets: jump to the nearest visible page, then
                        step one page at a time.
4. ``reverse_from_end`` when the target is nearer the last page: jump to the end
                        and step backwards.
5. ``incremental_walk`` step one page at a time from wherever we are.

A ``reach`` call runs the chain once. A failed reachability check is final for
that call; retrying is up to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from . import config
from .logging_utils import _automation_event
from .ports import (
    Descriptor,
    DocumentPort,
    ElementRef,
    NavigationTarget,
    PageIdentity,
    Technique,
    ensure_session,
)

DIRECT_LOCATE = "direct_locate"
DIRECT_ADDRESS = "direct_address"
JUMP_AND_WALK = "jump_and_walk"
REVERSE_FROM_END = "reverse_from_end"
INCREMENTAL_WALK = "incremental_walk"
ALREADY_THERE = "already_there"

STRATEGY_ORDER: Tuple[str, ...] = (
    DIRECT_LOCATE,
    DIRECT_ADDRESS,
    JUMP_AND_WALK,
    REVERSE_FROM_END,
    INCREMENTAL_WALK,
)


@dataclass(frozen=True)
class PagerDescriptors:
    """Descriptors for the pager controls of a listing."""

    page_link: Descriptor = Descriptor(role="page-link")
    next_page: Descriptor = Descriptor(role="next-page")
    previous_page: Descriptor = Descriptor(role="previous-page")
    last_page: Descriptor = Descriptor(role="last-page")

    def page(self, number: int) -> Descriptor:
        return self.page_link.with_text(str(number))


@dataclass(frozen=True)
class NavigationResult:
    target: int
    reached: bool
    strategy: Optional[str] = None
    reason: Optional[str] = None
    actions: int = 0
    # False when the view exposed neither a page number nor an item count.
    verified: bool = True
    observed_page: Optional[int] = None
    attempted: Tuple[str, ...] = ()
    skipped: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.reached


def rewrite_page_param(address: str, param: str, page_number: int) -> Optional[str]:
    """Return ``address`` with ``param`` set to ``page_number``.

    Returns ``None`` when the address does not already carry ``param``.
    """

    parts = urlsplit(address)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if not any(key == param for key, _ in query):
        return None
    rewritten = [(key, str(page_number) if key == param else value) for key, value in query]
    return urlunsplit(parts._replace(query=urlencode(rewritten)))


def expected_item_count(page_number: int, total_items: int, page_size: int) -> int:
    """Return how many rows page ``page_number`` shows for the given totals."""

    if page_size <= 0:
        return 0
    remaining = total_items - (page_number - 1) * page_size
    return max(0, min(page_size, remaining))


class NavigationStrategyEngine:
    """Drive a :class:`DocumentPort` to a target page of results."""

    def __init__(
        self,
        port: DocumentPort,
        *,
        pager: Optional[PagerDescriptors] = None,
        jump_threshold: Optional[int] = None,
        settle_timeout: Optional[float] = None,
        page_param: Optional[str] = None,
        technique: Technique = Technique.NORMAL,
        cancelled: Optional[Callable[[], bool]] = None,
        max_walk_steps: int = 1000,
    ) -> None:
        self._port = port
        self._pager = pager or PagerDescriptors()
        self._jump_threshold = (
            config.NAV_JUMP_THRESHOLD if jump_threshold is None else int(jump_threshold)
        )
        self._settle_timeout = (
            float(config.SETTLE_TIMEOUT_SECONDS) if settle_timeout is None else float(settle_timeout)
        )
        self._page_param = page_param or config.PAGE_QUERY_PARAM
        self._technique = technique
        self._cancelled = cancelled
        self._max_walk_steps = max(1, max_walk_steps)
        self._actions = 0
        self._position: Optional[int] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reach(self, target: Union[NavigationTarget, int]) -> NavigationResult:
        if not isinstance(target, NavigationTarget):
            target = NavigationTarget(int(target))
        goal = target.page_number

        self._actions = 0
        identity = ensure_session(self._port, context="navigation")
        self._position = identity.page_number

        if identity.page_number == goal:
            _automation_event("nav", step="already_there", target=goal)
            return NavigationResult(
                target=goal,
                reached=True,
                strategy=ALREADY_THERE,
                observed_page=goal,
            )

        attempted: List[str] = []
        skipped: List[str] = []
        runners = {
            DIRECT_LOCATE: (self._direct_locate_applicable, self._run_direct_locate),
            DIRECT_ADDRESS: (self._direct_address_applicable, self._run_direct_address),
            JUMP_AND_WALK: (self._jump_applicable, self._run_jump_and_walk),
            REVERSE_FROM_END: (self._reverse_applicable, self._run_reverse_from_end),
            INCREMENTAL_WALK: (self._walk_applicable, self._run_incremental_walk),
        }

        for name in STRATEGY_ORDER:
            if self._is_cancelled():
                return self._result(goal, False, None, "cancelled", attempted, skipped)

            # Earlier strategies may have moved the view; re-read it.
            identity = ensure_session(self._port, context=name)
            if identity.page_number is not None:
                self._position = identity.page_number
            applicable, run = runners[name]

            skip_reason = applicable(goal, identity)
            if skip_reason:
                skipped.append(name)
                _automation_event("nav", step="skip", strategy=name, target=goal, reason=skip_reason)
                continue

            attempted.append(name)
            _automation_event(
                "nav",
                step="attempt",
                strategy=name,
                target=goal,
                current=self._current_page(),
            )
            if not run(goal, identity):
                _automation_event(
                    "nav", step="strategy_failed", strategy=name, target=goal, actions=self._actions
                )
                continue

            return self._check_reached(goal, name, attempted, skipped)

        _automation_event("nav", step="not_reached", target=goal, attempted=attempted, skipped=skipped)
        return self._result(goal, False, None, "all strategies failed", attempted, skipped)

    # ------------------------------------------------------------------
    # Strategy preconditions. Each returns a skip reason or ``None``.
    # ------------------------------------------------------------------

    def _direct_locate_applicable(self, goal: int, identity: PageIdentity) -> Optional[str]:
        return None

    def _direct_address_applicable(self, goal: int, identity: PageIdentity) -> Optional[str]:
        if not identity.addressable:
            return "not_addressable"
        if rewrite_page_param(identity.address, self._page_param, goal) is None:
            return "no_page_parameter"
        return None

    def _jump_applicable(self, goal: int, identity: PageIdentity) -> Optional[str]:
        if abs(goal - self._current_page()) <= self._jump_threshold:
            return "distance_within_threshold"
        return None

    def _reverse_applicable(self, goal: int, identity: PageIdentity) -> Optional[str]:
        total = identity.total_pages
        if total is None:
            return "total_pages_unknown"
        if goal > total:
            return "target_beyond_last_page"
        if not (total - goal < goal - 1):
            return "closer_to_start"
        return None

    def _walk_applicable(self, goal: int, identity: PageIdentity) -> Optional[str]:
        return None

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _run_direct_locate(self, goal: int, identity: PageIdentity) -> bool:
        ref = self._port.locate(self._pager.page(goal))
        if ref is None:
            return False
        return self._activate_and_settle(ref, position=goal)

    def _run_direct_address(self, goal: int, identity: PageIdentity) -> bool:
        address = rewrite_page_param(identity.address, self._page_param, goal)
        if address is None:
            return False
        ensure_session(self._port, context=DIRECT_ADDRESS)
        self._actions += 1
        if not self._port.navigate(address):
            return False
        if not self._port.wait_settled(self._settle_timeout):
            return False
        self._position = goal
        return True

    def _run_jump_and_walk(self, goal: int, identity: PageIdentity) -> bool:
        current = self._current_page()
        anchors = [
            number
            for number in self._visible_page_numbers()
            if number != current and abs(number - goal) < abs(current - goal)
        ]
        if not anchors:
            _automation_event("nav", step="no_anchor", strategy=JUMP_AND_WALK, target=goal)
            return False

        anchor = min(anchors, key=lambda number: (abs(number - goal), number))
        _automation_event("nav", step="jump", strategy=JUMP_AND_WALK, anchor=anchor, target=goal)
        if not self._run_direct_locate(anchor, identity):
            return False
        return self._walk(anchor, goal)

    def _run_reverse_from_end(self, goal: int, identity: PageIdentity) -> bool:
        total = identity.total_pages
        if total is None:
            return False
        if self._current_page() != total:
            ref = self._port.locate(self._pager.last_page) or self._port.locate(self._pager.page(total))
            if ref is None:
                return False
            if not self._activate_and_settle(ref, position=total):
                return False
        return self._walk(total, goal)

    def _run_incremental_walk(self, goal: int, identity: PageIdentity) -> bool:
        return self._walk(self._current_page(), goal)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _walk(self, start: int, goal: int) -> bool:
        """Step one page at a time from ``start`` to ``goal``."""

        steps = abs(goal - start)
        if steps > self._max_walk_steps:
            _automation_event("nav", step="walk_too_long", start=start, target=goal, steps=steps)
            return False

        delta = 1 if goal > start else -1
        control = self._pager.next_page if delta > 0 else self._pager.previous_page
        position = start
        for _ in range(steps):
            if self._is_cancelled():
                return False
            ensure_session(self._port, context="walk")
            ref = self._port.locate(control)
            if ref is None:
                _automation_event(
                    "nav", step="control_missing", control=control.role, position=position, target=goal
                )
                return False
            if not self._activate_and_settle(ref, position=position + delta):
                return False
            position += delta
        return True

    def _activate_and_settle(self, ref: ElementRef, *, position: int) -> bool:
        ensure_session(self._port, context="pager_click")
        self._actions += 1
        if not self._port.activate(ref, self._technique):
            return False
        if not self._port.wait_settled(self._settle_timeout):
            _automation_event("nav", step="settle_timeout", position=position)
            return False
        self._position = position
        return True

    def _visible_page_numbers(self) -> List[int]:
        numbers: List[int] = []
        refs: Sequence[ElementRef] = self._port.locate_all(self._pager.page_link)
        for ref in refs:
            text = (self._port.read_text(ref) or "").strip()
            if text.isdigit():
                numbers.append(int(text))
        return sorted(set(numbers))

    def _current_page(self) -> int:
        # The listing opens on page 1 when nothing else is known.
        return self._position if self._position is not None else 1

    def _is_cancelled(self) -> bool:
        return bool(self._cancelled and self._cancelled())

    def _check_reached(
        self, goal: int, strategy: str, attempted: List[str], skipped: List[str]
    ) -> NavigationResult:
        identity = ensure_session(self._port, context="reachability_check")
        verified = True
        if identity.page_number is not None:
            ok = identity.page_number == goal
        elif (
            identity.item_count is not None
            and identity.total_items is not None
            and identity.page_size
        ):
            ok = identity.item_count == expected_item_count(
                goal, identity.total_items, identity.page_size
            )
        else:
            ok = True
            verified = False

        _automation_event(
            "nav",
            step="reachability_check",
            strategy=strategy,
            target=goal,
            observed_page=identity.page_number,
            item_count=identity.item_count,
            ok=ok,
            verified=verified,
            actions=self._actions,
        )
        return NavigationResult(
            target=goal,
            reached=ok,
            strategy=strategy,
            reason=None if ok else "reachability_mismatch",
            actions=self._actions,
            verified=verified,
            observed_page=identity.page_number,
            attempted=tuple(attempted),
            skipped=tuple(skipped),
        )

    def _result(
        self,
        goal: int,
        reached: bool,
        strategy: Optional[str],
        reason: Optional[str],
        attempted: List[str],
        skipped: List[str],
    ) -> NavigationResult:
        return NavigationResult(
            target=goal,
            reached=reached,
            strategy=strategy,
            reason=reason,
            actions=self._actions,
            observed_page=self._position,
            attempted=tuple(attempted),
            skipped=tuple(skipped),
        )


__all__ = [
    "NavigationResult",
    "NavigationStrategyEngine",
    "PagerDescriptors",
    "STRATEGY_ORDER",
    "expected_item_count",
    "rewrite_page_param",
]
