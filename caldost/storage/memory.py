from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from caldost.logging import get_logger
from caldost.storage.errors import ConstraintViolation, StaleRecordError
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

FIRST_DISTRICT_NUMERIC_CODE = 1001


class MemoryStore:
    """In-memory backing store persisted as a JSON snapshot under ``fs_root``.

    Records handed out are copies; callers mutate them and write back through
    the ``save_*`` methods. Complaints carry a ``version`` so a save based on
    a stale read is rejected instead of silently overwriting a newer history.
    """

    def __init__(self, fs_root: str = "/tmp/caldost", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.super_admins: Dict[str, SuperAdminAccount] = {}
        self.admins: Dict[str, AdminAccount] = {}
        self.districts: Dict[str, District] = {}
        self.complaints: Dict[Tuple[str, str], Complaint] = {}
        self.api_keys: Dict[str, ApiKeyRecord] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # super admins
    # ------------------------------------------------------------------
    def create_super_admin(self, account: SuperAdminAccount) -> SuperAdminAccount:
        with self._data_lock:
            if any(sa.email == account.email for sa in self.super_admins.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if account.phone_number and any(
                sa.phone_number == account.phone_number for sa in self.super_admins.values()
            ):
                raise ConstraintViolation("phone number already exists", {"field": "phone_number"})
            self.super_admins[account.public_user_id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def get_super_admin(self, public_user_id: str) -> Optional[SuperAdminAccount]:
        with self._data_lock:
            return copy.deepcopy(self.super_admins.get(public_user_id))

    def get_super_admin_by_email(self, email: str) -> Optional[SuperAdminAccount]:
        with self._data_lock:
            found = next(
                (sa for sa in self.super_admins.values() if sa.email == email.lower()), None
            )
            return copy.deepcopy(found)

    def get_super_admin_by_phone(self, phone_number: str) -> Optional[SuperAdminAccount]:
        with self._data_lock:
            found = next(
                (sa for sa in self.super_admins.values() if sa.phone_number == phone_number),
                None,
            )
            return copy.deepcopy(found)

    def save_super_admin(self, account: SuperAdminAccount) -> None:
        with self._data_lock:
            if account.public_user_id not in self.super_admins:
                raise ConstraintViolation("super admin not found", {"field": "public_user_id"})
            self.super_admins[account.public_user_id] = copy.deepcopy(account)
            self._persist_state()

    # ------------------------------------------------------------------
    # districts
    # ------------------------------------------------------------------
    def create_district(self, code_alpha: str, name: str) -> District:
        with self._data_lock:
            code = code_alpha.upper()
            if code in self.districts:
                raise ConstraintViolation("district code already exists", {"field": "district_code_alpha"})
            if any(d.district_name.lower() == name.lower() for d in self.districts.values()):
                raise ConstraintViolation("district name already exists", {"field": "district_name"})
            numeric = max(
                (d.district_code_numeric for d in self.districts.values()),
                default=FIRST_DISTRICT_NUMERIC_CODE - 1,
            ) + 1
            district = District(
                district_code_alpha=code,
                district_code_numeric=numeric,
                district_name=name,
            )
            self.districts[code] = district
            self._persist_state()
            return copy.deepcopy(district)

    def get_district(self, code_alpha: str) -> Optional[District]:
        with self._data_lock:
            return copy.deepcopy(self.districts.get(code_alpha.upper()))

    def list_districts(self) -> List[District]:
        with self._data_lock:
            return [
                copy.deepcopy(d)
                for d in sorted(self.districts.values(), key=lambda d: d.district_code_numeric)
            ]

    # ------------------------------------------------------------------
    # admins
    # ------------------------------------------------------------------
    def create_admin(self, account: AdminAccount) -> AdminAccount:
        """Create an admin and assign it to its district in one step."""
        with self._data_lock:
            district = self.districts.get(account.district_code_alpha)
            if not district:
                raise ConstraintViolation("district not found", {"field": "district_code_alpha"})
            if district.assigned_admin_public_user_ids:
                raise ConstraintViolation(
                    "an admin is already assigned to this district",
                    {"field": "district_code_alpha"},
                )
            for existing in self.admins.values():
                if existing.email == account.email or (
                    account.phone_number and existing.phone_number == account.phone_number
                ):
                    raise ConstraintViolation(
                        "admin with same email or phone number already exists",
                        {"field": "email"},
                    )
            self.admins[account.public_user_id] = copy.deepcopy(account)
            district.assigned_admin_public_user_ids = [account.public_user_id]
            self._persist_state()
            return copy.deepcopy(account)

    def get_admin(self, public_user_id: str) -> Optional[AdminAccount]:
        with self._data_lock:
            return copy.deepcopy(self.admins.get(public_user_id))

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._data_lock:
            found = next((a for a in self.admins.values() if a.email == email.lower()), None)
            return copy.deepcopy(found)

    def list_admins(self) -> List[AdminAccount]:
        with self._data_lock:
            return [
                copy.deepcopy(a)
                for a in sorted(self.admins.values(), key=lambda a: a.created_at)
            ]

    def save_admin(self, account: AdminAccount) -> None:
        with self._data_lock:
            if account.public_user_id not in self.admins:
                raise ConstraintViolation("admin not found", {"field": "public_user_id"})
            self.admins[account.public_user_id] = copy.deepcopy(account)
            self._persist_state()

    # ------------------------------------------------------------------
    # complaints
    # ------------------------------------------------------------------
    def create_complaint(self, complaint: Complaint) -> Complaint:
        with self._data_lock:
            key = (complaint.domain.value, complaint.complaint_number)
            if key in self.complaints:
                raise ConstraintViolation(
                    "complaint number already exists", {"field": "complaint_number"}
                )
            complaint.version = 1
            self.complaints[key] = copy.deepcopy(complaint)
            self._persist_state()
            return copy.deepcopy(complaint)

    def get_complaint(
        self, domain: ComplaintDomain, complaint_number: str
    ) -> Optional[Complaint]:
        with self._data_lock:
            return copy.deepcopy(self.complaints.get((domain.value, complaint_number)))

    def save_complaint(self, complaint: Complaint) -> Complaint:
        """Write back a complaint read earlier; rejects the write if someone saved in between."""
        with self._data_lock:
            key = (complaint.domain.value, complaint.complaint_number)
            current = self.complaints.get(key)
            if current is None:
                raise ConstraintViolation("complaint not found", {"field": "complaint_number"})
            if current.version != complaint.version:
                raise StaleRecordError(
                    "complaint was modified concurrently; reload and retry",
                    {"complaint_number": complaint.complaint_number},
                )
            complaint.version = current.version + 1
            complaint.updated_at = utcnow()
            self.complaints[key] = copy.deepcopy(complaint)
            self._persist_state()
            return copy.deepcopy(complaint)

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
        with self._data_lock:
            rows = [c for c in self.complaints.values() if c.domain is domain]
            if district is not None:
                rows = [c for c in rows if c.district == district]
            if status is not None:
                rows = [c for c in rows if c.current_status is status]
            if priority is not None:
                rows = [c for c in rows if c.priority_level is priority]
            if search:
                needle = search.lower()
                rows = [c for c in rows if self._matches_search(c, needle)]
            rows.sort(key=lambda c: c.created_at, reverse=True)
            total = len(rows)
            return [copy.deepcopy(c) for c in rows[offset : offset + limit]], total

    @staticmethod
    def _matches_search(complaint: Complaint, needle: str) -> bool:
        haystack: Iterable[Any] = (
            complaint.complaint_number,
            complaint.title,
            complaint.details.get("institution_name"),
            complaint.details.get("facility_name"),
        )
        return any(isinstance(v, str) and needle in v.lower() for v in haystack)

    def find_complaints_by_contact(
        self, *, phone: Optional[str] = None, email: Optional[str] = None
    ) -> List[Complaint]:
        with self._data_lock:
            matches = [
                c
                for c in self.complaints.values()
                if (phone and c.complainant_phone == phone)
                or (email and c.complainant_email == email.lower())
            ]
            matches.sort(key=lambda c: c.created_at, reverse=True)
            return [copy.deepcopy(c) for c in matches]

    # ------------------------------------------------------------------
    # api keys
    # ------------------------------------------------------------------
    def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        with self._data_lock:
            if any(k.key_digest == record.key_digest for k in self.api_keys.values()):
                raise ConstraintViolation("api key already exists", {"field": "key"})
            self.api_keys[record.id] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_api_key_by_digest(self, digest: str) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            found = next((k for k in self.api_keys.values() if k.key_digest == digest), None)
            return copy.deepcopy(found)

    def get_api_key(self, key_id: str) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            return copy.deepcopy(self.api_keys.get(key_id))

    def list_api_keys(self) -> List[ApiKeyRecord]:
        with self._data_lock:
            return [
                copy.deepcopy(k)
                for k in sorted(self.api_keys.values(), key=lambda k: k.created_at)
            ]

    def record_api_key_use(self, key_id: str) -> None:
        with self._data_lock:
            record = self.api_keys.get(key_id)
            if not record:
                return
            record.usage_count += 1
            record.last_used_at = utcnow()
            self._persist_state()

    def set_api_key_active(self, key_id: str, active: bool) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            record = self.api_keys.get(key_id)
            if not record:
                return None
            record.is_active = active
            self._persist_state()
            return copy.deepcopy(record)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # ------------------------------------------------------------------
    # snapshot persistence
    # ------------------------------------------------------------------
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_complaint(self, c: Complaint) -> Dict[str, Any]:
        return {
            "complaint_number": c.complaint_number,
            "domain": c.domain.value,
            "district": c.district,
            "title": c.title,
            "description": c.description,
            "current_status": c.current_status.value,
            "priority_level": c.priority_level.value,
            "is_anonymous": c.is_anonymous,
            "complainant_name": c.complainant_name,
            "complainant_phone": c.complainant_phone,
            "complainant_email": c.complainant_email,
            "details": c.details,
            "attachments": [a.to_dict() for a in c.attachments],
            "status_history": [event_to_dict(e) for e in c.status_history],
            "resolution_details": c.resolution_details.to_dict(),
            "complaint_end_at": self._dt(c.complaint_end_at),
            "created_at": self._dt(c.created_at),
            "updated_at": self._dt(c.updated_at),
            "version": c.version,
        }

    def _deserialize_complaint(self, data: Dict[str, Any]) -> Complaint:
        return Complaint(
            complaint_number=data["complaint_number"],
            domain=ComplaintDomain(data["domain"]),
            district=data["district"],
            title=data["title"],
            description=data["description"],
            current_status=ComplaintStatus(data["current_status"]),
            priority_level=PriorityLevel(data["priority_level"]),
            is_anonymous=bool(data.get("is_anonymous")),
            complainant_name=data.get("complainant_name"),
            complainant_phone=data.get("complainant_phone"),
            complainant_email=data.get("complainant_email"),
            details=data.get("details") or {},
            attachments=[Attachment.from_dict(a) for a in data.get("attachments", [])],
            status_history=[event_from_dict(e) for e in data.get("status_history", [])],
            resolution_details=ResolutionDetails.from_dict(data.get("resolution_details")),
            complaint_end_at=self._parse(data.get("complaint_end_at")),
            created_at=self._parse(data["created_at"]),
            updated_at=self._parse(data["updated_at"]),
            version=int(data.get("version", 1)),
        )

    def _serialize_account(self, account: Any) -> Dict[str, Any]:
        payload = dict(account.__dict__)
        payload["created_at"] = self._dt(account.created_at)
        return payload

    def _serialize_api_key(self, record: ApiKeyRecord) -> Dict[str, Any]:
        payload = dict(record.__dict__)
        payload["created_at"] = self._dt(record.created_at)
        payload["last_used_at"] = self._dt(record.last_used_at)
        return payload

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "super_admins": [self._serialize_account(a) for a in self.super_admins.values()],
            "admins": [self._serialize_account(a) for a in self.admins.values()],
            "districts": [
                {**d.__dict__, "created_at": self._dt(d.created_at)}
                for d in self.districts.values()
            ],
            "complaints": [self._serialize_complaint(c) for c in self.complaints.values()],
            "api_keys": [self._serialize_api_key(k) for k in self.api_keys.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state, indent=2))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise
        self.super_admins = {
            a["public_user_id"]: SuperAdminAccount(
                **{**a, "created_at": self._parse(a["created_at"])}
            )
            for a in data.get("super_admins", [])
        }
        self.admins = {
            a["public_user_id"]: AdminAccount(**{**a, "created_at": self._parse(a["created_at"])})
            for a in data.get("admins", [])
        }
        self.districts = {
            d["district_code_alpha"]: District(**{**d, "created_at": self._parse(d["created_at"])})
            for d in data.get("districts", [])
        }
        self.complaints = {}
        for raw in data.get("complaints", []):
            complaint = self._deserialize_complaint(raw)
            self.complaints[(complaint.domain.value, complaint.complaint_number)] = complaint
        self.api_keys = {
            k["id"]: ApiKeyRecord(
                **{
                    **k,
                    "created_at": self._parse(k["created_at"]),
                    "last_used_at": self._parse(k.get("last_used_at")),
                }
            )
            for k in data.get("api_keys", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            complaints=len(self.complaints),
            admins=len(self.admins),
            districts=len(self.districts),
        )
        return True


__all__ = ["MemoryStore", "FIRST_DISTRICT_NUMERIC_CODE"]
