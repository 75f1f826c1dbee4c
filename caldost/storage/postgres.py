from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from caldost.logging import get_logger
from caldost.storage.errors import ConstraintViolation, StaleRecordError
from caldost.storage.memory import FIRST_DISTRICT_NUMERIC_CODE
from caldost.storage.models import (
    AdminAccount,
    ApiKeyRecord,
    Attachment,
    Complaint,
    ComplaintDomain,
    ComplaintStatus,
    District,
    PriorityLevel,
    ResolutionDetails,
    SuperAdminAccount,
    event_from_dict,
    event_to_dict,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS super_admin (
        public_user_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        phone_number TEXT UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        login_details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS district (
        district_code_alpha TEXT PRIMARY KEY,
        district_code_numeric INTEGER NOT NULL UNIQUE,
        district_name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS district_name_lower_idx ON district (lower(district_name))",
    """
    CREATE TABLE IF NOT EXISTS district_admin (
        public_user_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        district_code_alpha TEXT NOT NULL UNIQUE REFERENCES district (district_code_alpha),
        password_hash TEXT NOT NULL,
        phone_number TEXT UNIQUE,
        post TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_by TEXT,
        login_details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS complaint (
        domain TEXT NOT NULL,
        complaint_number TEXT NOT NULL,
        district TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        current_status TEXT NOT NULL,
        priority_level TEXT NOT NULL,
        is_anonymous BOOLEAN NOT NULL DEFAULT FALSE,
        complainant_name TEXT,
        complainant_phone TEXT,
        complainant_email TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
        status_history JSONB NOT NULL DEFAULT '[]'::jsonb,
        resolution_details JSONB NOT NULL DEFAULT '{}'::jsonb,
        complaint_end_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        version INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (domain, complaint_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS complaint_district_idx ON complaint (domain, district, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS complaint_phone_idx ON complaint (complainant_phone)",
    "CREATE INDEX IF NOT EXISTS complaint_email_idx ON complaint (complainant_email)",
    """
    CREATE TABLE IF NOT EXISTS api_key (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        key_digest TEXT NOT NULL UNIQUE,
        encrypted_key TEXT NOT NULL,
        key_prefix TEXT NOT NULL,
        created_by TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        usage_count INTEGER NOT NULL DEFAULT 0,
        last_used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

# constraint name -> (message, field) reported back to callers
_UNIQUE_CONSTRAINTS: Dict[str, Tuple[str, str]] = {
    "super_admin_email_key": ("email already exists", "email"),
    "super_admin_phone_number_key": ("phone number already exists", "phone_number"),
    "district_pkey": ("district code already exists", "district_code_alpha"),
    "district_name_lower_idx": ("district name already exists", "district_name"),
    "district_admin_district_code_alpha_key": (
        "an admin is already assigned to this district",
        "district_code_alpha",
    ),
    "district_admin_email_key": ("admin with same email or phone number already exists", "email"),
    "district_admin_phone_number_key": (
        "admin with same email or phone number already exists",
        "email",
    ),
    "complaint_pkey": ("complaint number already exists", "complaint_number"),
    "api_key_key_digest_key": ("api key already exists", "key"),
}

_DISTRICT_SELECT = """
    SELECT d.*, a.public_user_id AS admin_public_user_id
    FROM district d
    LEFT JOIN district_admin a ON a.district_code_alpha = d.district_code_alpha
"""


def _unique_violation(exc: errors.UniqueViolation, default: Tuple[str, str]) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None)
    message, field = _UNIQUE_CONSTRAINTS.get(constraint or "", default)
    return ConstraintViolation(message, {"field": field})


def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresStore:
    """Postgres-backed store for accounts, districts, complaints and API keys.

    Complaint history, attachments and resolution details live in JSONB
    columns next to the scalar fields so one row is one complaint. Saves are
    guarded by the ``version`` column the same way ``MemoryStore`` guards them.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=5)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _super_admin_from_row(row: Dict[str, Any]) -> SuperAdminAccount:
        return SuperAdminAccount(
            public_user_id=row["public_user_id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            phone_number=row.get("phone_number"),
            is_active=bool(row.get("is_active", True)),
            login_details=row.get("login_details") or {},
            created_at=row["created_at"],
        )

    @staticmethod
    def _admin_from_row(row: Dict[str, Any]) -> AdminAccount:
        return AdminAccount(
            public_user_id=row["public_user_id"],
            name=row["name"],
            email=row["email"],
            district_code_alpha=row["district_code_alpha"],
            password_hash=row["password_hash"],
            phone_number=row.get("phone_number"),
            post=row.get("post"),
            is_active=bool(row.get("is_active", True)),
            created_by=row.get("created_by"),
            login_details=row.get("login_details") or {},
            created_at=row["created_at"],
        )

    @staticmethod
    def _district_from_row(row: Dict[str, Any]) -> District:
        admin_id = row.get("admin_public_user_id")
        return District(
            district_code_alpha=row["district_code_alpha"],
            district_code_numeric=row["district_code_numeric"],
            district_name=row["district_name"],
            assigned_admin_public_user_ids=[admin_id] if admin_id else [],
            created_at=row["created_at"],
        )

    @staticmethod
    def _api_key_from_row(row: Dict[str, Any]) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=row["id"],
            name=row["name"],
            key_digest=row["key_digest"],
            encrypted_key=row["encrypted_key"],
            key_prefix=row["key_prefix"],
            created_by=row["created_by"],
            is_active=bool(row.get("is_active", True)),
            usage_count=int(row.get("usage_count") or 0),
            last_used_at=row.get("last_used_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _complaint_from_row(row: Dict[str, Any]) -> Complaint:
        return Complaint(
            complaint_number=row["complaint_number"],
            domain=ComplaintDomain(row["domain"]),
            district=row["district"],
            title=row["title"],
            description=row["description"],
            current_status=ComplaintStatus(row["current_status"]),
            priority_level=PriorityLevel(row["priority_level"]),
            is_anonymous=bool(row.get("is_anonymous")),
            complainant_name=row.get("complainant_name"),
            complainant_phone=row.get("complainant_phone"),
            complainant_email=row.get("complainant_email"),
            details=row.get("details") or {},
            attachments=[Attachment.from_dict(a) for a in row.get("attachments") or []],
            status_history=[event_from_dict(e) for e in row.get("status_history") or []],
            resolution_details=ResolutionDetails.from_dict(row.get("resolution_details")),
            complaint_end_at=row.get("complaint_end_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=int(row["version"]),
        )

    @staticmethod
    def _complaint_payload(complaint: Complaint) -> Dict[str, Any]:
        """Column values shared by insert and update."""
        return {
            "district": complaint.district,
            "title": complaint.title,
            "description": complaint.description,
            "current_status": complaint.current_status.value,
            "priority_level": complaint.priority_level.value,
            "is_anonymous": complaint.is_anonymous,
            "complainant_name": complaint.complainant_name,
            "complainant_phone": complaint.complainant_phone,
            "complainant_email": complaint.complainant_email,
            "details": json.dumps(complaint.details),
            "attachments": json.dumps([a.to_dict() for a in complaint.attachments]),
            "status_history": json.dumps([event_to_dict(e) for e in complaint.status_history]),
            "resolution_details": json.dumps(complaint.resolution_details.to_dict()),
            "complaint_end_at": complaint.complaint_end_at,
        }

    # ------------------------------------------------------------------
    # super admins
    # ------------------------------------------------------------------
    def create_super_admin(self, account: SuperAdminAccount) -> SuperAdminAccount:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO super_admin (public_user_id, name, email, password_hash, phone_number,
                                             is_active, login_details, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.public_user_id,
                        account.name,
                        account.email,
                        account.password_hash,
                        account.phone_number,
                        account.is_active,
                        json.dumps(account.login_details),
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, ("email already exists", "email")) from exc
        return account

    def get_super_admin(self, public_user_id: str) -> Optional[SuperAdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM super_admin WHERE public_user_id = %s", (public_user_id,)
            ).fetchone()
        return self._super_admin_from_row(row) if row else None

    def get_super_admin_by_email(self, email: str) -> Optional[SuperAdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM super_admin WHERE email = %s", (email.lower(),)
            ).fetchone()
        return self._super_admin_from_row(row) if row else None

    def get_super_admin_by_phone(self, phone_number: str) -> Optional[SuperAdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM super_admin WHERE phone_number = %s", (phone_number,)
            ).fetchone()
        return self._super_admin_from_row(row) if row else None

    def save_super_admin(self, account: SuperAdminAccount) -> None:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE super_admin
                    SET name = %s, email = %s, password_hash = %s, phone_number = %s,
                        is_active = %s, login_details = %s
                    WHERE public_user_id = %s
                    """,
                    (
                        account.name,
                        account.email,
                        account.password_hash,
                        account.phone_number,
                        account.is_active,
                        json.dumps(account.login_details),
                        account.public_user_id,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, ("email already exists", "email")) from exc
        if result.rowcount == 0:
            raise ConstraintViolation("super admin not found", {"field": "public_user_id"})

    # ------------------------------------------------------------------
    # districts
    # ------------------------------------------------------------------
    def create_district(self, code_alpha: str, name: str) -> District:
        code = code_alpha.upper()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO district (district_code_alpha, district_code_numeric, district_name)
                    SELECT %s, COALESCE(MAX(district_code_numeric), %s) + 1, %s FROM district
                    RETURNING *
                    """,
                    (code, FIRST_DISTRICT_NUMERIC_CODE - 1, name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(
                exc, ("district code already exists", "district_code_alpha")
            ) from exc
        self.logger.info("district_created", district=code, numeric=row["district_code_numeric"])
        return self._district_from_row(row)

    def get_district(self, code_alpha: str) -> Optional[District]:
        with self._connect() as conn:
            row = conn.execute(
                _DISTRICT_SELECT + " WHERE d.district_code_alpha = %s", (code_alpha.upper(),)
            ).fetchone()
        return self._district_from_row(row) if row else None

    def list_districts(self) -> List[District]:
        with self._connect() as conn:
            rows = conn.execute(_DISTRICT_SELECT + " ORDER BY d.district_code_numeric").fetchall()
        return [self._district_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # admins
    # ------------------------------------------------------------------
    def create_admin(self, account: AdminAccount) -> AdminAccount:
        """Create an admin; the unique district column keeps one admin per district."""
        try:
            with self._connect() as conn, conn.transaction():
                district = conn.execute(
                    "SELECT district_code_alpha FROM district WHERE district_code_alpha = %s FOR UPDATE",
                    (account.district_code_alpha,),
                ).fetchone()
                if not district:
                    raise ConstraintViolation("district not found", {"field": "district_code_alpha"})
                conn.execute(
                    """
                    INSERT INTO district_admin (public_user_id, name, email, district_code_alpha,
                                                password_hash, phone_number, post, is_active,
                                                created_by, login_details, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.public_user_id,
                        account.name,
                        account.email,
                        account.district_code_alpha,
                        account.password_hash,
                        account.phone_number,
                        account.post,
                        account.is_active,
                        account.created_by,
                        json.dumps(account.login_details),
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(
                exc, ("admin with same email or phone number already exists", "email")
            ) from exc
        return account

    def get_admin(self, public_user_id: str) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM district_admin WHERE public_user_id = %s", (public_user_id,)
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM district_admin WHERE email = %s", (email.lower(),)
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def list_admins(self) -> List[AdminAccount]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM district_admin ORDER BY created_at").fetchall()
        return [self._admin_from_row(row) for row in rows]

    def save_admin(self, account: AdminAccount) -> None:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE district_admin
                    SET name = %s, email = %s, password_hash = %s, phone_number = %s, post = %s,
                        is_active = %s, login_details = %s
                    WHERE public_user_id = %s
                    """,
                    (
                        account.name,
                        account.email,
                        account.password_hash,
                        account.phone_number,
                        account.post,
                        account.is_active,
                        json.dumps(account.login_details),
                        account.public_user_id,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(
                exc, ("admin with same email or phone number already exists", "email")
            ) from exc
        if result.rowcount == 0:
            raise ConstraintViolation("admin not found", {"field": "public_user_id"})

    # ------------------------------------------------------------------
    # complaints
    # ------------------------------------------------------------------
    def create_complaint(self, complaint: Complaint) -> Complaint:
        complaint.version = 1
        payload = self._complaint_payload(complaint)
        columns = ["domain", "complaint_number", *payload, "created_at", "updated_at", "version"]
        values = [
            complaint.domain.value,
            complaint.complaint_number,
            *payload.values(),
            complaint.created_at,
            complaint.updated_at,
            complaint.version,
        ]
        placeholders = ", ".join(["%s"] * len(columns))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO complaint ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(
                exc, ("complaint number already exists", "complaint_number")
            ) from exc
        return complaint

    def get_complaint(
        self, domain: ComplaintDomain, complaint_number: str
    ) -> Optional[Complaint]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM complaint WHERE domain = %s AND complaint_number = %s",
                (domain.value, complaint_number),
            ).fetchone()
        return self._complaint_from_row(row) if row else None

    def save_complaint(self, complaint: Complaint) -> Complaint:
        """Write back a complaint read earlier; the version predicate rejects stale writes."""
        payload = self._complaint_payload(complaint)
        assignments = ", ".join(f"{column} = %s" for column in payload)
        now = utcnow()
        with self._connect() as conn:
            result = conn.execute(
                f"""
                UPDATE complaint
                SET {assignments}, updated_at = %s, version = version + 1
                WHERE domain = %s AND complaint_number = %s AND version = %s
                """,
                [
                    *payload.values(),
                    now,
                    complaint.domain.value,
                    complaint.complaint_number,
                    complaint.version,
                ],
            )
            if result.rowcount == 0:
                exists = conn.execute(
                    "SELECT version FROM complaint WHERE domain = %s AND complaint_number = %s",
                    (complaint.domain.value, complaint.complaint_number),
                ).fetchone()
                if exists is None:
                    raise ConstraintViolation("complaint not found", {"field": "complaint_number"})
                raise StaleRecordError(
                    "complaint was modified concurrently; reload and retry",
                    {"complaint_number": complaint.complaint_number},
                )
        complaint.version += 1
        complaint.updated_at = now
        return complaint

    def list_complaints(
        self,
        domain: ComplaintDomain,
        *,
        district: Optional[str] = None,
        status: Optional[ComplaintStatus] = None,
        priority: Optional[PriorityLevel] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Complaint], int]:
        clauses = ["domain = %s"]
        params: List[Any] = [domain.value]
        if district is not None:
            clauses.append("district = %s")
            params.append(district)
        if status is not None:
            clauses.append("current_status = %s")
            params.append(status.value)
        if priority is not None:
            clauses.append("priority_level = %s")
            params.append(priority.value)
        if search:
            pattern = _like_pattern(search)
            clauses.append(
                "(complaint_number ILIKE %s OR title ILIKE %s"
                " OR details->>'institution_name' ILIKE %s OR details->>'facility_name' ILIKE %s)"
            )
            params.extend([pattern] * 4)
        where = " AND ".join(clauses)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM complaint WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM complaint WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._complaint_from_row(row) for row in rows], total

    def find_complaints_by_contact(
        self, *, phone: Optional[str] = None, email: Optional[str] = None
    ) -> List[Complaint]:
        clauses: List[str] = []
        params: List[Any] = []
        if phone:
            clauses.append("complainant_phone = %s")
            params.append(phone)
        if email:
            clauses.append("complainant_email = %s")
            params.append(email.lower())
        if not clauses:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM complaint WHERE {' OR '.join(clauses)} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [self._complaint_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # api keys
    # ------------------------------------------------------------------
    def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_key (id, name, key_digest, encrypted_key, key_prefix, created_by,
                                         is_active, usage_count, last_used_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.name,
                        record.key_digest,
                        record.encrypted_key,
                        record.key_prefix,
                        record.created_by,
                        record.is_active,
                        record.usage_count,
                        record.last_used_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc, ("api key already exists", "key")) from exc
        return record

    def get_api_key_by_digest(self, digest: str) -> Optional[ApiKeyRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_key WHERE key_digest = %s", (digest,)).fetchone()
        return self._api_key_from_row(row) if row else None

    def get_api_key(self, key_id: str) -> Optional[ApiKeyRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_key WHERE id = %s", (key_id,)).fetchone()
        return self._api_key_from_row(row) if row else None

    def list_api_keys(self) -> List[ApiKeyRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM api_key ORDER BY created_at").fetchall()
        return [self._api_key_from_row(row) for row in rows]

    def record_api_key_use(self, key_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_key SET usage_count = usage_count + 1, last_used_at = %s WHERE id = %s",
                (utcnow(), key_id),
            )

    def set_api_key_active(self, key_id: str, active: bool) -> Optional[ApiKeyRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE api_key SET is_active = %s WHERE id = %s RETURNING *", (active, key_id)
            ).fetchone()
        return self._api_key_from_row(row) if row else None


__all__ = ["PostgresStore"]
