"""Tests for the complaint status state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from caldost.service.errors import ConflictError, ValidationError
from caldost.service.lifecycle import (
    NOTHING_TO_UPDATE_MESSAGE,
    REOPEN_REQUIRED_MESSAGE,
    AdminPatch,
    UserLinkPatch,
    apply_admin_update,
    apply_close,
    apply_user_link_update,
    parse_final_status,
    parse_status,
)
from caldost.storage.models import (
    AdminUpdate,
    Attachment,
    Close,
    Complaint,
    ComplaintDomain,
    ComplaintStatus,
    HistorySource,
    Reopen,
    Submitted,
    UserLinkTouch,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _complaint(**overrides) -> Complaint:
    fields = dict(
        complaint_number="EDU-2026-0001",
        domain=ComplaintDomain.EDUCATION,
        district="Ranchi",
        title="Teacher absent",
        description="No teacher since Monday",
        complainant_phone="9876543210",
        complainant_email="parent@example.org",
        status_history=[Submitted(status=ComplaintStatus.PENDING, at=T0)],
        created_at=T0,
        updated_at=T0,
    )
    fields.update(overrides)
    return Complaint(**fields)


def _later(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


class TestParsing:
    def test_parse_status_is_case_insensitive(self):
        assert parse_status("in_progress") is ComplaintStatus.IN_PROGRESS

    def test_parse_status_blank_is_none(self):
        assert parse_status(None) is None
        assert parse_status("") is None

    def test_parse_status_rejects_unknown(self):
        with pytest.raises(ValidationError):
            parse_status("DONE")

    def test_final_status_must_be_terminal(self):
        assert parse_final_status("resolved") is ComplaintStatus.RESOLVED
        with pytest.raises(ValidationError):
            parse_final_status("REJECTED")
        with pytest.raises(ValidationError):
            parse_final_status(None)


class TestAdminUpdate:
    """Each accepted admin update appends exactly one ADMIN history entry."""

    def test_empty_patch_rejected(self):
        complaint = _complaint()
        with pytest.raises(ValidationError) as exc:
            apply_admin_update(complaint, AdminPatch(resolution_note="   "), admin_id="AD-1", now=_later(1))
        assert exc.value.message == NOTHING_TO_UPDATE_MESSAGE
        assert len(complaint.status_history) == 1

    def test_status_change_records_previous_status(self):
        complaint = _complaint()
        event = apply_admin_update(
            complaint,
            AdminPatch(status=ComplaintStatus.IN_PROGRESS),
            admin_id="AD-1",
            now=_later(1),
        )
        assert isinstance(event, AdminUpdate)
        assert event.previous_status is ComplaintStatus.PENDING
        assert event.source is HistorySource.ADMIN
        assert complaint.current_status is ComplaintStatus.IN_PROGRESS
        assert complaint.status_history[-1] is event

    def test_note_appends_timeline(self):
        complaint = _complaint()
        apply_admin_update(
            complaint, AdminPatch(resolution_note="Visited school"), admin_id="AD-1", now=_later(1)
        )
        timeline = complaint.resolution_details.timeline
        assert [n.note for n in timeline] == ["Visited school"]
        assert timeline[0].by == "AD-1"

    def test_identical_consecutive_note_not_duplicated(self):
        complaint = _complaint()
        patch = AdminPatch(resolution_note="Visited school")
        apply_admin_update(complaint, patch, admin_id="AD-1", now=_later(1))
        event = apply_admin_update(
            complaint, AdminPatch(resolution_note="Visited school"), admin_id="AD-1", now=_later(2)
        )
        assert len(complaint.resolution_details.timeline) == 1
        assert event.note_added is False
        assert len(complaint.status_history) == 3

    def test_resolved_sets_end_time(self):
        complaint = _complaint()
        apply_admin_update(
            complaint, AdminPatch(status=ComplaintStatus.RESOLVED), admin_id="AD-1", now=_later(5)
        )
        assert complaint.complaint_end_at == _later(5)
        assert complaint.is_terminal

    def test_attachments_are_stamped_with_uploader(self):
        complaint = _complaint()
        attachment = Attachment(id="a1", url="attachments/education/EDU-2026-0001/a1_x.pdf")
        apply_admin_update(
            complaint, AdminPatch(attachments=[attachment]), admin_id="AD-1", now=_later(1)
        )
        assert complaint.attachments[0].uploaded_by == "AD-1"

    def test_closed_is_not_admin_settable(self):
        complaint = _complaint()
        with pytest.raises(ValidationError):
            apply_admin_update(
                complaint, AdminPatch(status=ComplaintStatus.CLOSED), admin_id="AD-1", now=_later(1)
            )


class TestCloseAndReopen:
    """Resolve, get blocked, reopen, then update again."""

    def test_full_cycle(self):
        complaint = _complaint()
        apply_admin_update(
            complaint, AdminPatch(status=ComplaintStatus.IN_PROGRESS), admin_id="AD-1", now=_later(1)
        )
        close_event = apply_close(
            complaint, ComplaintStatus.RESOLVED, admin_id="AD-1", now=_later(2), final_note="Fixed"
        )
        assert isinstance(close_event, Close)
        assert complaint.resolution_details.closed_at == _later(2)
        assert complaint.resolution_details.final_note == "Fixed"

        with pytest.raises(ConflictError) as exc:
            apply_admin_update(
                complaint, AdminPatch(resolution_note="more"), admin_id="AD-1", now=_later(3)
            )
        assert exc.value.message == REOPEN_REQUIRED_MESSAGE

        reopen = apply_admin_update(
            complaint,
            AdminPatch(status=ComplaintStatus.IN_PROGRESS, resolution_note="Reopened on appeal"),
            admin_id="AD-1",
            now=_later(4),
        )
        assert isinstance(reopen, Reopen)
        assert reopen.reopened_from is ComplaintStatus.RESOLVED
        assert complaint.current_status is ComplaintStatus.IN_PROGRESS
        assert complaint.complaint_end_at is None
        assert complaint.resolution_details.closed_at is None
        assert complaint.resolution_details.final_note is None
        assert complaint.resolution_details.timeline[-1].note == "Reopened on appeal"

        apply_admin_update(
            complaint, AdminPatch(resolution_note="Follow-up visit"), admin_id="AD-1", now=_later(5)
        )
        kinds = [e.kind for e in complaint.status_history]
        assert kinds == ["submitted", "admin_update", "close", "reopen", "admin_update"]

    def test_close_twice_conflicts(self):
        complaint = _complaint()
        apply_close(complaint, ComplaintStatus.CLOSED, admin_id="AD-1", now=_later(1))
        with pytest.raises(ConflictError):
            apply_close(complaint, ComplaintStatus.RESOLVED, admin_id="AD-1", now=_later(2))
        assert len(complaint.status_history) == 2

    def test_close_requires_terminal_status(self):
        complaint = _complaint()
        with pytest.raises(ValidationError):
            apply_close(complaint, ComplaintStatus.REJECTED, admin_id="AD-1", now=_later(1))

    def test_terminal_blocks_other_status_changes(self):
        complaint = _complaint()
        apply_close(complaint, ComplaintStatus.CLOSED, admin_id="AD-1", now=_later(1))
        with pytest.raises(ConflictError):
            apply_admin_update(
                complaint, AdminPatch(status=ComplaintStatus.PENDING), admin_id="AD-1", now=_later(2)
            )


class TestUserLinkUpdate:
    """Complainant edits never move the status."""

    def test_description_and_email_change(self):
        complaint = _complaint(current_status=ComplaintStatus.IN_PROGRESS)
        event = apply_user_link_update(
            complaint,
            UserLinkPatch(description="Still no teacher", email="New@Example.org"),
            now=_later(1),
        )
        assert isinstance(event, UserLinkTouch)
        assert event.source is HistorySource.USER_LINK
        assert event.fields_changed == ("description", "complainant_email")
        assert complaint.description == "Still no teacher"
        assert complaint.complainant_email == "new@example.org"
        assert complaint.current_status is ComplaintStatus.IN_PROGRESS

    def test_status_unchanged_even_when_terminal(self):
        complaint = _complaint()
        apply_close(complaint, ComplaintStatus.RESOLVED, admin_id="AD-1", now=_later(1))
        apply_user_link_update(complaint, UserLinkPatch(description="Thanks"), now=_later(2))
        assert complaint.current_status is ComplaintStatus.RESOLVED
        assert complaint.status_history[-1].status is ComplaintStatus.RESOLVED

    def test_anonymous_email_not_set(self):
        complaint = _complaint(is_anonymous=True, complainant_email=None, complainant_phone=None)
        event = apply_user_link_update(
            complaint, UserLinkPatch(email="someone@example.org"), now=_later(1)
        )
        assert complaint.complainant_email is None
        assert event.fields_changed == ()

    def test_empty_patch_rejected(self):
        with pytest.raises(ValidationError):
            apply_user_link_update(_complaint(), UserLinkPatch(description=" "), now=_later(1))

    def test_attachments_counted(self):
        complaint = _complaint()
        event = apply_user_link_update(
            complaint,
            UserLinkPatch(attachments=[Attachment(id="a1", url="attachments/x")]),
            now=_later(1),
        )
        assert event.attachments_added == 1
        assert len(complaint.attachments) == 1
