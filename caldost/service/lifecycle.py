"""Complaint status state machine.

Pure functions over :class:`~caldost.storage.models.Complaint`. They mutate
the complaint in place and return the single status event they appended.
Persistence, scope checks and notifications belong to the caller.

``RESOLVED`` and ``CLOSED`` are soft-terminal: while a complaint is terminal
(or carries ``closed_at``) the only accepted admin update is a reopen to
``IN_PROGRESS``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from caldost.service.errors import ConflictError, ValidationError
from caldost.storage.models import (
    ADMIN_SETTABLE_STATUSES,
    TERMINAL_STATUSES,
    AdminUpdate,
    Attachment,
    Close,
    Complaint,
    ComplaintStatus,
    Reopen,
    StatusEvent,
    TimelineNote,
    UserLinkTouch,
)

REOPEN_REQUIRED_MESSAGE = (
    "This complaint is already resolved or closed. Reopen it before making updates."
)
ALREADY_CLOSED_MESSAGE = "Complaint is already closed or resolved"
NOTHING_TO_UPDATE_MESSAGE = "Nothing to update"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def parse_status(value: Optional[str]) -> Optional[ComplaintStatus]:
    if value is None or value == "":
        return None
    try:
        return ComplaintStatus(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(
            "Invalid status value", detail={"allowed": sorted(s.value for s in ComplaintStatus)}
        ) from exc


def parse_final_status(value: Optional[str]) -> ComplaintStatus:
    if not value:
        raise ValidationError("Final status is required")
    status = parse_status(value)
    if status not in TERMINAL_STATUSES:
        raise ValidationError("Final status must be RESOLVED or CLOSED")
    return status


@dataclass
class AdminPatch:
    status: Optional[ComplaintStatus] = None
    resolution_note: Optional[str] = None
    final_resolution_note: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    # Raw uploads not yet stored; counted so a files-only request is not empty.
    pending_files: int = 0

    def __post_init__(self) -> None:
        self.resolution_note = _clean(self.resolution_note)
        self.final_resolution_note = _clean(self.final_resolution_note)

    @property
    def is_empty(self) -> bool:
        return (
            self.status is None
            and self.resolution_note is None
            and self.final_resolution_note is None
            and not self.attachments
            and not self.pending_files
        )


@dataclass
class UserLinkPatch:
    description: Optional[str] = None
    email: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    pending_files: int = 0

    def __post_init__(self) -> None:
        self.description = _clean(self.description)
        self.email = _clean(self.email)

    @property
    def is_empty(self) -> bool:
        return (
            self.description is None
            and self.email is None
            and not self.attachments
            and not self.pending_files
        )


def ensure_not_empty(patch: AdminPatch | UserLinkPatch) -> None:
    if patch.is_empty:
        raise ValidationError(NOTHING_TO_UPDATE_MESSAGE)


def _reopen(complaint: Complaint) -> ComplaintStatus:
    reopened_from = complaint.current_status
    complaint.current_status = ComplaintStatus.IN_PROGRESS
    complaint.complaint_end_at = None
    details = complaint.resolution_details
    details.closed_at = None
    details.closed_by = None
    details.final_note = None
    return reopened_from


def apply_admin_update(
    complaint: Complaint, patch: AdminPatch, *, admin_id: str, now: datetime
) -> StatusEvent:
    """Apply an administrator update and append exactly one ADMIN history entry."""
    ensure_not_empty(patch)

    reopened_from: Optional[ComplaintStatus] = None
    if complaint.is_terminal:
        if patch.status is not ComplaintStatus.IN_PROGRESS:
            raise ConflictError(REOPEN_REQUIRED_MESSAGE)
        reopened_from = _reopen(complaint)

    previous_status = complaint.current_status
    if patch.status is not None and patch.status is not complaint.current_status:
        if patch.status not in ADMIN_SETTABLE_STATUSES:
            raise ValidationError(
                "Invalid status value",
                detail={"allowed": sorted(s.value for s in ADMIN_SETTABLE_STATUSES)},
            )
        complaint.current_status = patch.status
        if patch.status is ComplaintStatus.RESOLVED:
            complaint.complaint_end_at = now

    note_added = False
    if patch.resolution_note:
        timeline = complaint.resolution_details.timeline
        if not timeline or timeline[-1].note != patch.resolution_note:
            timeline.append(TimelineNote(note=patch.resolution_note, by=admin_id, at=now))
            note_added = True

    if patch.final_resolution_note:
        complaint.resolution_details.final_note = patch.final_resolution_note

    for attachment in patch.attachments:
        attachment.uploaded_by = admin_id
        complaint.attachments.append(attachment)

    event: StatusEvent
    if reopened_from is not None:
        event = Reopen(
            status=complaint.current_status, at=now, by=admin_id, reopened_from=reopened_from
        )
    else:
        event = AdminUpdate(
            status=complaint.current_status,
            at=now,
            by=admin_id,
            previous_status=previous_status,
            note_added=note_added,
        )
    complaint.status_history.append(event)
    complaint.updated_at = now
    return event


def apply_close(
    complaint: Complaint,
    final_status: ComplaintStatus,
    *,
    admin_id: str,
    now: datetime,
    final_note: Optional[str] = None,
) -> StatusEvent:
    if final_status not in TERMINAL_STATUSES:
        raise ValidationError("Final status must be RESOLVED or CLOSED")
    if complaint.is_terminal:
        raise ConflictError(ALREADY_CLOSED_MESSAGE)

    note = _clean(final_note)
    complaint.current_status = final_status
    complaint.complaint_end_at = now
    details = complaint.resolution_details
    details.final_note = note
    details.closed_by = admin_id
    details.closed_at = now

    event = Close(status=final_status, at=now, by=admin_id, final_note=note)
    complaint.status_history.append(event)
    complaint.updated_at = now
    return event


def apply_user_link_update(
    complaint: Complaint, patch: UserLinkPatch, *, now: datetime
) -> StatusEvent:
    """Complainant self-service edit. Never changes ``current_status``."""
    ensure_not_empty(patch)

    changed: list[str] = []
    if patch.description and patch.description != complaint.description:
        complaint.description = patch.description
        changed.append("description")
    if (
        patch.email
        and not complaint.is_anonymous
        and patch.email.lower() != complaint.complainant_email
    ):
        complaint.complainant_email = patch.email.lower()
        changed.append("complainant_email")
    complaint.attachments.extend(patch.attachments)

    event = UserLinkTouch(
        status=complaint.current_status,
        at=now,
        fields_changed=tuple(changed),
        attachments_added=len(patch.attachments),
    )
    complaint.status_history.append(event)
    complaint.updated_at = now
    return event


__all__ = [
    "ALREADY_CLOSED_MESSAGE",
    "AdminPatch",
    "NOTHING_TO_UPDATE_MESSAGE",
    "REOPEN_REQUIRED_MESSAGE",
    "UserLinkPatch",
    "apply_admin_update",
    "apply_close",
    "apply_user_link_update",
    "ensure_not_empty",
    "parse_final_status",
    "parse_status",
]
