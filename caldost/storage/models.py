from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    COMPLAINANT = "COMPLAINANT"

    @property
    def id_prefix(self) -> str:
        return {"SUPER_ADMIN": "SA", "ADMIN": "AD", "COMPLAINANT": "CMP"}[self.value]


def new_public_id(role: Role) -> str:
    """Role-prefixed public identifier, e.g. ``AD-1F2E3C4B``."""
    return f"{role.id_prefix}-{secrets.token_hex(4).upper()}"


class ComplaintStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"


TERMINAL_STATUSES = frozenset({ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED})
ADMIN_SETTABLE_STATUSES = frozenset(
    {
        ComplaintStatus.PENDING,
        ComplaintStatus.IN_PROGRESS,
        ComplaintStatus.RESOLVED,
        ComplaintStatus.REJECTED,
    }
)


class PriorityLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ComplaintDomain(str, Enum):
    """The two complaint registries. Each has its own number prefix and grant namespace."""

    EDUCATION = "education"
    HEALTH = "health"

    @property
    def number_prefix(self) -> str:
        return "EDU" if self is ComplaintDomain.EDUCATION else "HLT"

    @property
    def grant_namespace(self) -> str:
        if self is ComplaintDomain.EDUCATION:
            return "complaint:access"
        return "health:complaint:access"

    @property
    def link_path(self) -> str:
        if self is ComplaintDomain.EDUCATION:
            return "/complaint"
        return "/health/complaint"


def new_complaint_number(domain: ComplaintDomain, now: Optional[datetime] = None) -> str:
    year = (now or utcnow()).year
    return f"{domain.number_prefix}-{year}-{secrets.token_hex(4).upper()}"


class HistorySource(str, Enum):
    API = "API"
    ADMIN = "ADMIN"
    USER_LINK = "USER_LINK"


# ---------------------------------------------------------------------------
# Status history events. The set is closed: every entry on a complaint is one
# of these, and each renders to the ``{status, at, source, by?}`` wire form.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Submitted:
    status: ComplaintStatus
    at: datetime
    kind = "submitted"
    source = HistorySource.API

    @property
    def by(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class AdminUpdate:
    status: ComplaintStatus
    at: datetime
    by: str
    previous_status: Optional[ComplaintStatus] = None
    note_added: bool = False
    kind = "admin_update"
    source = HistorySource.ADMIN


@dataclass(frozen=True)
class Reopen:
    status: ComplaintStatus
    at: datetime
    by: str
    reopened_from: ComplaintStatus
    kind = "reopen"
    source = HistorySource.ADMIN


@dataclass(frozen=True)
class Close:
    status: ComplaintStatus
    at: datetime
    by: str
    final_note: Optional[str] = None
    kind = "close"
    source = HistorySource.ADMIN


@dataclass(frozen=True)
class UserLinkTouch:
    status: ComplaintStatus
    at: datetime
    fields_changed: tuple[str, ...] = ()
    attachments_added: int = 0
    kind = "user_link_touch"
    source = HistorySource.USER_LINK

    @property
    def by(self) -> Optional[str]:
        return None


StatusEvent = Union[Submitted, AdminUpdate, Reopen, Close, UserLinkTouch]


def event_to_dict(event: StatusEvent) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": event.status.value,
        "at": event.at.isoformat(),
        "source": event.source.value,
        "kind": event.kind,
    }
    if event.by:
        payload["by"] = event.by
    if isinstance(event, AdminUpdate):
        if event.previous_status is not None:
            payload["previous_status"] = event.previous_status.value
        payload["note_added"] = event.note_added
    elif isinstance(event, Reopen):
        payload["reopened_from"] = event.reopened_from.value
    elif isinstance(event, Close):
        payload["final_note"] = event.final_note
    elif isinstance(event, UserLinkTouch):
        payload["fields_changed"] = list(event.fields_changed)
        payload["attachments_added"] = event.attachments_added
    return payload


def event_from_dict(data: Dict[str, Any]) -> StatusEvent:
    status = ComplaintStatus(data["status"])
    at = datetime.fromisoformat(data["at"])
    kind = data.get("kind")
    if kind == "admin_update":
        prev = data.get("previous_status")
        return AdminUpdate(
            status=status,
            at=at,
            by=data["by"],
            previous_status=ComplaintStatus(prev) if prev else None,
            note_added=bool(data.get("note_added")),
        )
    if kind == "reopen":
        return Reopen(
            status=status,
            at=at,
            by=data["by"],
            reopened_from=ComplaintStatus(data["reopened_from"]),
        )
    if kind == "close":
        return Close(status=status, at=at, by=data["by"], final_note=data.get("final_note"))
    if kind == "user_link_touch":
        return UserLinkTouch(
            status=status,
            at=at,
            fields_changed=tuple(data.get("fields_changed") or ()),
            attachments_added=int(data.get("attachments_added") or 0),
        )
    if kind == "submitted":
        return Submitted(status=status, at=at)
    raise ValueError(f"unknown status event kind: {kind!r}")


@dataclass
class TimelineNote:
    note: str
    by: str
    at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"note": self.note, "by": self.by, "at": self.at.isoformat()}


@dataclass
class ResolutionDetails:
    timeline: List[TimelineNote] = field(default_factory=list)
    final_note: Optional[str] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"timeline": [n.to_dict() for n in self.timeline]}
        if self.closed_at is not None:
            payload.update(
                final_note=self.final_note,
                closed_by=self.closed_by,
                closed_at=self.closed_at.isoformat(),
            )
        elif self.final_note is not None:
            payload["final_note"] = self.final_note
        return payload

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResolutionDetails":
        data = data or {}
        return cls(
            timeline=[
                TimelineNote(note=n["note"], by=n["by"], at=datetime.fromisoformat(n["at"]))
                for n in data.get("timeline", [])
            ],
            final_note=data.get("final_note"),
            closed_by=data.get("closed_by"),
            closed_at=_parse_dt(data.get("closed_at")),
        )


@dataclass
class Attachment:
    id: str
    url: str
    original_name: Optional[str] = None
    mimetype: Optional[str] = None
    size: int = 0
    uploaded_at: datetime = field(default_factory=utcnow)
    note: Optional[str] = None
    uploaded_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "original_name": self.original_name,
            "mimetype": self.mimetype,
            "size": self.size,
            "uploaded_at": self.uploaded_at.isoformat(),
            "note": self.note,
            "uploaded_by": self.uploaded_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            url=data["url"],
            original_name=data.get("original_name"),
            mimetype=data.get("mimetype"),
            size=int(data.get("size") or 0),
            uploaded_at=datetime.fromisoformat(data["uploaded_at"]),
            note=data.get("note"),
            uploaded_by=data.get("uploaded_by"),
        )


@dataclass
class Complaint:
    complaint_number: str
    domain: ComplaintDomain
    district: str
    title: str
    description: str
    current_status: ComplaintStatus = ComplaintStatus.PENDING
    priority_level: PriorityLevel = PriorityLevel.MEDIUM
    is_anonymous: bool = False
    complainant_name: Optional[str] = None
    complainant_phone: Optional[str] = None
    complainant_email: Optional[str] = None
    # Domain specific fields (block/village/institution or facility/persons)
    details: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)
    status_history: List[StatusEvent] = field(default_factory=list)
    resolution_details: ResolutionDetails = field(default_factory=ResolutionDetails)
    complaint_end_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return (
            self.current_status in TERMINAL_STATUSES
            or self.resolution_details.closed_at is not None
        )

    def history_dicts(self) -> List[Dict[str, Any]]:
        return [event_to_dict(e) for e in self.status_history]


@dataclass
class District:
    district_code_alpha: str
    district_code_numeric: int
    district_name: str
    assigned_admin_public_user_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AdminAccount:
    public_user_id: str
    name: str
    email: str
    district_code_alpha: str
    password_hash: str
    phone_number: Optional[str] = None
    post: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    login_details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def role(self) -> Role:
        return Role.ADMIN


@dataclass
class SuperAdminAccount:
    public_user_id: str
    name: str
    email: str
    password_hash: str
    phone_number: Optional[str] = None
    is_active: bool = True
    login_details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def role(self) -> Role:
        return Role.SUPER_ADMIN


@dataclass
class ApiKeyRecord:
    id: str
    name: str
    key_digest: str
    encrypted_key: str
    key_prefix: str
    created_by: str
    is_active: bool = True
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


__all__ = [
    "AdminAccount",
    "AdminUpdate",
    "ApiKeyRecord",
    "Attachment",
    "Close",
    "Complaint",
    "ComplaintDomain",
    "ComplaintStatus",
    "District",
    "HistorySource",
    "PriorityLevel",
    "Reopen",
    "ResolutionDetails",
    "Role",
    "StatusEvent",
    "Submitted",
    "SuperAdminAccount",
    "TimelineNote",
    "UserLinkTouch",
    "event_from_dict",
    "event_to_dict",
    "new_complaint_number",
    "new_public_id",
    "utcnow",
]
