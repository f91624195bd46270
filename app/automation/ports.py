"""Shared types and the ports the workflow core consumes.

The core never talks to a browser directly. Everything it needs from "the
current remote view" goes through :class:`DocumentPort`; elements are named
with a small :class:`Descriptor` (role, text, attribute hints) that the adapter
resolves however it likes. Work items come from a :class:`WorkItemSource` and
outcomes go to an :class:`AuditSink`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .error_codes import SessionLostError
from .logging_utils import _automation_event

ElementRef = Any


class Technique(str, Enum):
    """Ways of activating an element, in escalation order."""

    NORMAL = "normal"
    # Bypasses visibility/overlap actionability checks.
    FORCED = "forced"
    # Dispatches the click from script, no simulated pointer at all.
    PROGRAMMATIC = "programmatic"


DEFAULT_TECHNIQUES: Tuple[Technique, ...] = (
    Technique.NORMAL,
    Technique.FORCED,
    Technique.PROGRAMMATIC,
)


@dataclass(frozen=True)
class Descriptor:
    """Adapter-neutral description of an element on the current view."""

    role: str
    text: Optional[str] = None
    attrs: Tuple[Tuple[str, str], ...] = ()

    def attr(self, name: str) -> Optional[str]:
        for key, value in self.attrs:
            if key == name:
                return value
        return None

    def with_text(self, text: str) -> "Descriptor":
        return replace(self, text=text)

    def format(self, **values: Any) -> "Descriptor":
        """Substitute ``{placeholders}`` in text and attribute values."""

        text = self.text.format(**values) if self.text is not None else None
        attrs = tuple((key, value.format(**values)) for key, value in self.attrs)
        return Descriptor(role=self.role, text=text, attrs=attrs)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Descriptor":
        attrs = raw.get("attrs") or {}
        return cls(
            role=str(raw["role"]),
            text=raw.get("text"),
            attrs=tuple((str(k), str(v)) for k, v in sorted(attrs.items())),
        )


@dataclass(frozen=True)
class PageIdentity:
    """What the adapter can observe about the current view."""

    address: str = ""
    # The address carries a pagination query parameter that can be rewritten.
    addressable: bool = False
    page_number: Optional[int] = None
    total_pages: Optional[int] = None
    item_count: Optional[int] = None
    total_items: Optional[int] = None
    page_size: Optional[int] = None
    domain_ok: bool = True


@dataclass(frozen=True)
class NavigationTarget:
    page_number: int

    def __post_init__(self) -> None:
        if int(self.page_number) < 1:
            raise ValueError(f"page_number must be >= 1, got {self.page_number!r}")


@dataclass(frozen=True)
class ActionOutcome:
    attempted: bool
    confirmed: bool
    attempts_used: int
    technique: Optional[Technique] = None


@dataclass(frozen=True)
class WorkItemResult:
    """Outcome of one work item; never mutated after creation."""

    item_id: str
    success: bool
    detail: Optional[str] = None
    skip_reason: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "success": self.success,
            "detail": self.detail,
            "skip_reason": self.skip_reason,
            "error_code": self.error_code,
            "attempts": self.attempts,
            **self.extra,
        }


@runtime_checkable
class DocumentPort(Protocol):
    """The current remote view, as seen by the workflow core."""

    def locate(self, descriptor: Descriptor) -> Optional[ElementRef]: ...

    def locate_all(self, descriptor: Descriptor) -> Sequence[ElementRef]: ...

    def activate(self, ref: ElementRef, technique: Technique) -> bool: ...

    def read_text(self, ref: ElementRef) -> str: ...

    def navigate(self, address: str) -> bool: ...

    def wait_settled(self, timeout: float) -> bool: ...

    def wait_for(self, descriptor: Descriptor, *, present: bool, timeout: float) -> bool: ...

    def current_identity(self) -> PageIdentity: ...


@runtime_checkable
class WorkItemSource(Protocol):
    def next(self) -> Optional[str]: ...

    def was_handled_this_period(self, item_id: str) -> bool: ...


@runtime_checkable
class AuditSink(Protocol):
    def record(self, result: WorkItemResult) -> None: ...


@runtime_checkable
class PortalSession(Protocol):
    """One logged-in portal session; owns exactly one DocumentPort."""

    port: DocumentPort

    def open_listing(self) -> bool: ...

    def open_item(self, item_id: str) -> bool: ...

    def close(self) -> None: ...


def ensure_session(port: DocumentPort, *, context: str) -> PageIdentity:
    """Return the current identity or raise :class:`SessionLostError`.

    Called before any page-level action; every later action against a lost
    session would be meaningless.
    """

    identity = port.current_identity()
    if not identity.domain_ok:
        _automation_event(
            "error",
            phase="session",
            kind="session_lost",
            context=context,
            address=identity.address,
        )
        raise SessionLostError(f"Session lost during {context} (at {identity.address or 'unknown'})")
    return identity


__all__ = [
    "ActionOutcome",
    "AuditSink",
    "DEFAULT_TECHNIQUES",
    "Descriptor",
    "DocumentPort",
    "ElementRef",
    "NavigationTarget",
    "PageIdentity",
    "PortalSession",
    "Technique",
    "WorkItemResult",
    "WorkItemSource",
    "ensure_session",
]
