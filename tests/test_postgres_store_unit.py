import json
from contextlib import nullcontext

import pytest
from psycopg import errors

from caldost.logging import get_logger
from caldost.storage.errors import ConstraintViolation, StaleRecordError
from caldost.storage.models import (
    AdminAccount,
    Attachment,
    Complaint,
    ComplaintDomain,
    ComplaintStatus,
    ResolutionDetails,
    Submitted,
    utcnow,
)
from caldost.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=None):
        self.rows = rows or []
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Returns queued results in order and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def execute(self, sql, params=None):
        self.calls.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    def transaction(self):
        return nullcontext()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


class _Diag:
    def __init__(self, constraint_name):
        self.constraint_name = constraint_name


def _unique_violation(constraint_name):
    class _Violation(errors.UniqueViolation):
        diag = _Diag(constraint_name)

    return _Violation("duplicate key value violates unique constraint")


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(results)
    store.pool = FakePool(conn)
    store.logger = get_logger(__name__)
    return store, conn


def _complaint(**overrides):
    now = utcnow()
    data = dict(
        complaint_number="EDU-2026-0A1B2C",
        domain=ComplaintDomain.EDUCATION,
        district="Ranchi",
        title="Mid-day meal not served",
        description="No meal for two weeks",
        complainant_phone="9876543210",
        details={"institution_name": "Govt Middle School Kanke"},
        attachments=[Attachment(id="att-1", url="/files/att-1", original_name="photo.jpg")],
        status_history=[Submitted(status=ComplaintStatus.PENDING, at=now)],
        created_at=now,
        updated_at=now,
        version=1,
    )
    data.update(overrides)
    return Complaint(**data)


def _row_for(complaint):
    """What psycopg hands back for a stored complaint: JSONB columns decoded."""
    payload = PostgresStore._complaint_payload(complaint)
    for column in ("details", "attachments", "status_history", "resolution_details"):
        payload[column] = json.loads(payload[column])
    return {
        "domain": complaint.domain.value,
        "complaint_number": complaint.complaint_number,
        **payload,
        "created_at": complaint.created_at,
        "updated_at": complaint.updated_at,
        "version": complaint.version,
    }


def test_complaint_row_maps_back_to_complaint():
    closed_at = utcnow()
    original = _complaint(
        current_status=ComplaintStatus.RESOLVED,
        resolution_details=ResolutionDetails(
            final_note="Meals restored", closed_by="AD-0A1B2C3D", closed_at=closed_at
        ),
        complaint_end_at=closed_at,
        version=4,
    )
    store, conn = _store(FakeCursor(rows=[_row_for(original)]))

    loaded = store.get_complaint(ComplaintDomain.EDUCATION, original.complaint_number)

    assert conn.calls[0][1] == ("education", original.complaint_number)
    assert loaded.current_status is ComplaintStatus.RESOLVED
    assert loaded.details == {"institution_name": "Govt Middle School Kanke"}
    assert loaded.attachments[0].original_name == "photo.jpg"
    assert [e.kind for e in loaded.status_history] == ["submitted"]
    assert loaded.resolution_details.closed_by == "AD-0A1B2C3D"
    assert loaded.resolution_details.closed_at == closed_at
    assert loaded.version == 4


def test_missing_complaint_returns_none():
    store, _ = _store(FakeCursor())
    assert store.get_complaint(ComplaintDomain.HEALTH, "HLT-2026-NOPE") is None


def test_save_complaint_bumps_version_under_version_predicate():
    complaint = _complaint(version=3)
    store, conn = _store(FakeCursor(rowcount=1))

    saved = store.save_complaint(complaint)

    sql, params = conn.calls[0]
    assert "version = version + 1" in sql
    assert sql.endswith("WHERE domain = %s AND complaint_number = %s AND version = %s")
    assert params[-3:] == ["education", complaint.complaint_number, 3]
    assert saved.version == 4


def test_save_complaint_with_stale_version_is_rejected():
    store, _ = _store(FakeCursor(rowcount=0), FakeCursor(rows=[{"version": 5}]))
    with pytest.raises(StaleRecordError):
        store.save_complaint(_complaint(version=3))


def test_save_unknown_complaint_is_not_reported_as_stale():
    store, _ = _store(FakeCursor(rowcount=0), FakeCursor())
    with pytest.raises(ConstraintViolation) as exc:
        store.save_complaint(_complaint())
    assert not isinstance(exc.value, StaleRecordError)
    assert exc.value.message == "complaint not found"


def test_unique_violation_reports_the_offending_field():
    store, _ = _store(_unique_violation("district_name_lower_idx"))
    with pytest.raises(ConstraintViolation) as exc:
        store.create_district("ran", "Ranchi")
    assert exc.value.detail == {"field": "district_name"}


def test_unknown_constraint_falls_back_to_operation_default():
    store, _ = _store(_unique_violation("some_other_key"))
    with pytest.raises(ConstraintViolation) as exc:
        store.create_district("RAN", "Ranchi")
    assert exc.value.detail == {"field": "district_code_alpha"}


def test_create_district_uppercases_code_and_numbers_from_1001():
    created_at = utcnow()
    row = {
        "district_code_alpha": "RAN",
        "district_code_numeric": 1001,
        "district_name": "Ranchi",
        "created_at": created_at,
    }
    store, conn = _store(FakeCursor(rows=[row]))

    district = store.create_district("ran", "Ranchi")

    assert conn.calls[0][1] == ("RAN", 1000, "Ranchi")
    assert district.district_code_numeric == 1001
    assert district.assigned_admin_public_user_ids == []


def test_second_admin_for_district_is_a_constraint_violation():
    account = AdminAccount(
        public_user_id="AD-0A1B2C3D",
        name="Ranchi Admin",
        email="admin.ran@example.org",
        district_code_alpha="RAN",
        password_hash="hash",
    )
    store, _ = _store(
        FakeCursor(rows=[{"district_code_alpha": "RAN"}]),
        _unique_violation("district_admin_district_code_alpha_key"),
    )
    with pytest.raises(ConstraintViolation) as exc:
        store.create_admin(account)
    assert exc.value.message == "an admin is already assigned to this district"


def test_admin_for_unknown_district_is_rejected():
    account = AdminAccount(
        public_user_id="AD-0A1B2C3D",
        name="Nowhere Admin",
        email="admin@example.org",
        district_code_alpha="XXX",
        password_hash="hash",
    )
    store, conn = _store(FakeCursor())
    with pytest.raises(ConstraintViolation) as exc:
        store.create_admin(account)
    assert exc.value.detail == {"field": "district_code_alpha"}
    assert len(conn.calls) == 1


def test_list_complaints_filters_escapes_search_and_counts():
    store, conn = _store(FakeCursor(rows=[{"total": 7}]), FakeCursor())

    rows, total = store.list_complaints(
        ComplaintDomain.EDUCATION, district="Ranchi", search="50%_off", limit=5, offset=10
    )

    assert rows == []
    assert total == 7
    count_sql, count_params = conn.calls[0]
    assert count_sql.startswith("SELECT COUNT(*) AS total FROM complaint WHERE domain = %s")
    assert "district = %s" in count_sql
    assert count_params[:2] == ["education", "Ranchi"]
    assert count_params[2:] == ["%50\\%\\_off%"] * 4
    page_sql, page_params = conn.calls[1]
    assert page_sql.endswith("ORDER BY created_at DESC LIMIT %s OFFSET %s")
    assert page_params[-2:] == [5, 10]


def test_contact_lookup_without_contact_skips_the_database():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    assert store.find_complaints_by_contact() == []


def test_contact_lookup_lowercases_email():
    store, conn = _store(FakeCursor())
    store.find_complaints_by_contact(phone="9876543210", email="Asha@Example.org")
    sql, params = conn.calls[0]
    assert "complainant_phone = %s OR complainant_email = %s" in sql
    assert params == ["9876543210", "asha@example.org"]
