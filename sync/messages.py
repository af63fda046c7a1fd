"""
Messages exchanged between the coordinator, page monitors and the
control surface.

Every message kind is its own dataclass carrying a `kind` tag. Messages
cross context boundaries as plain dicts (to_dict / parse_message), so no
context ever holds a reference into another context's state.

Edits sent inside `apply-edit` follow the same pattern.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Type


class MessageError(ValueError):
    """A wire payload is not a valid message or edit."""


_MESSAGES: Dict[str, Type['Message']] = {}
_EDITS: Dict[str, Type['Edit']] = {}


def _build(cls, data: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise MessageError(f"Bad payload for {cls.kind}: {e}") from e


# ----------------------------------------------------------------------
# Edits
# ----------------------------------------------------------------------

@dataclass
class Edit:
    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["kind"] = self.kind
        return data


def edit(kind: str):
    """Register an Edit subclass under a wire tag."""
    def register(cls):
        cls.kind = kind
        _EDITS[kind] = cls
        return cls
    return register


@edit("add-rule")
@dataclass
class AddRule(Edit):
    domain: str
    category: Optional[str] = None
    detox: Optional[bool] = None  # None: follow the selected mode


@edit("remove-rule")
@dataclass
class RemoveRule(Edit):
    domain: str


@edit("clear-rules")
@dataclass
class ClearRules(Edit):
    pass


@edit("set-enabled")
@dataclass
class SetEnabled(Edit):
    enabled: bool


@edit("set-mode")
@dataclass
class SetMode(Edit):
    mode: str


def parse_edit(data: Dict[str, Any]) -> Edit:
    if not isinstance(data, dict):
        raise MessageError(f"Edit must be an object, got {type(data).__name__}")
    cls = _EDITS.get(data.get("kind"))
    if cls is None:
        raise MessageError(f"Unknown edit kind: {data.get('kind')!r}")
    return _build(cls, data)


# ----------------------------------------------------------------------
# Messages
# ----------------------------------------------------------------------

@dataclass
class Message:
    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["kind"] = self.kind
        return data


def message(kind: str):
    """Register a Message subclass under a wire tag."""
    def register(cls):
        cls.kind = kind
        _MESSAGES[kind] = cls
        return cls
    return register


@message("get-state")
@dataclass
class GetState(Message):
    """Request the full replica. Response: {"success", "state"}."""


@message("apply-edit")
@dataclass
class ApplyEdit(Message):
    """
    Apply edits atomically.

    expected_revision, when set, must equal the coordinator's revision or
    the whole batch is rejected as stale.
    """

    edits: List[Edit] = field(default_factory=list)
    expected_revision: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "edits": [e.to_dict() for e in self.edits],
            "expected_revision": self.expected_revision,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'ApplyEdit':
        raw_edits = data.get("edits") or []
        if not isinstance(raw_edits, list):
            raise MessageError("apply-edit edits must be a list")
        return cls(
            edits=[parse_edit(e) for e in raw_edits],
            expected_revision=data.get("expected_revision"),
        )


@message("state-changed")
@dataclass
class StateChanged(Message):
    state: Dict[str, Any]


@message("usage-delta")
@dataclass
class UsageDelta(Message):
    domain: str
    minutes: float


@message("time-remaining")
@dataclass
class TimeRemaining(Message):
    domain: str
    remaining: float
    daily_limit: float
    used_today: float


@message("quota-exhausted")
@dataclass
class QuotaExhausted(Message):
    domain: str
    daily_limit: float = 0.0


@message("report-block")
@dataclass
class ReportBlock(Message):
    domain: str
    url: str = ""


@message("check-url")
@dataclass
class CheckUrl(Message):
    """Response: {"success", "should_block", "reason", "domain"}."""

    url: str


@message("get-detox-info")
@dataclass
class GetDetoxInfo(Message):
    """Response: {"success", "info"} where info is None for non-detox domains."""

    domain: str


@message("time-limit-exceeded")
@dataclass
class TimeLimitExceeded(Message):
    domain: str


@message("detox-reset")
@dataclass
class DetoxReset(Message):
    count: int


def parse_message(data: Dict[str, Any]) -> Message:
    """
    Rebuild a message from its wire form.

    Raises:
        MessageError: If the kind is unknown or the payload doesn't fit.
    """
    if not isinstance(data, dict):
        raise MessageError(f"Message must be an object, got {type(data).__name__}")
    cls = _MESSAGES.get(data.get("kind"))
    if cls is None:
        raise MessageError(f"Unknown message kind: {data.get('kind')!r}")
    if hasattr(cls, "from_payload"):
        return cls.from_payload(data)
    return _build(cls, data)


# Kinds each context must be able to handle
COORDINATOR_INBOUND = (GetState, ApplyEdit, ReportBlock, CheckUrl, GetDetoxInfo, TimeLimitExceeded)
PAGE_MONITOR_INBOUND = (TimeRemaining, QuotaExhausted, StateChanged, DetoxReset)
CONTROL_SURFACE_INBOUND = (UsageDelta, StateChanged, DetoxReset)
