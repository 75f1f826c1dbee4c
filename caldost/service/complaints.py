from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from caldost.config import Settings
from caldost.logging import get_logger
from caldost.service.access import Complainant, DistrictAdmin, GrantHolder
from caldost.service.access_grants import AccessGrantManager
from caldost.service.accounts import normalize_email
from caldost.service.attachments import AttachmentStore, Upload
from caldost.service.district_scope import DistrictScopeEnforcer
from caldost.service.errors import (
    AccessLinkInvalidError,
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from caldost.service.lifecycle import (
    AdminPatch,
    UserLinkPatch,
    apply_admin_update,
    apply_close,
    apply_user_link_update,
    ensure_not_empty,
    parse_final_status,
    parse_status,
)
from caldost.service.notifications import Channel, NotificationDispatcher, Template
from caldost.storage.base import Store
from caldost.storage.errors import StaleRecordError
from caldost.storage.models import (
    Attachment,
    Complaint,
    ComplaintDomain,
    ComplaintStatus,
    PriorityLevel,
    Submitted,
    new_complaint_number,
    utcnow,
)

logger = get_logger(__name__)

CONCURRENT_UPDATE_MESSAGE = "Complaint was modified concurrently; reload and retry"

DOMAIN_FIELDS: Dict[ComplaintDomain, Tuple[str, ...]] = {
    ComplaintDomain.EDUCATION: (
        "block",
        "panchayat",
        "village",
        "institution_name",
        "institution_code",
        "institution_type",
    ),
    ComplaintDomain.HEALTH: (
        "block",
        "panchayat",
        "village",
        "facility_name",
        "facility_type",
        "mentioned_persons",
    ),
}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return value is True


def parse_priority(value: Optional[str]) -> Optional[PriorityLevel]:
    if value is None or value == "":
        return None
    try:
        return PriorityLevel(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(
            "Invalid priority level",
            detail={"allowed": [p.value for p in PriorityLevel]},
        ) from exc


def complaint_summary(complaint: Complaint) -> Dict[str, Any]:
    summary = {
        "complaint_number": complaint.complaint_number,
        "domain": complaint.domain.value,
        "district": complaint.district,
        "complaint_title": complaint.title,
        "current_status": complaint.current_status.value,
        "priority_level": complaint.priority_level.value,
        "created_at": complaint.created_at.isoformat(),
        "updated_at": complaint.updated_at.isoformat(),
    }
    for key in ("institution_name", "facility_name"):
        if key in complaint.details:
            summary[key] = complaint.details[key]
    return summary


def complaint_detail(complaint: Complaint) -> Dict[str, Any]:
    return {
        "complaint_number": complaint.complaint_number,
        "domain": complaint.domain.value,
        "district": complaint.district,
        "complaint_title": complaint.title,
        "complaint_description": complaint.description,
        "current_status": complaint.current_status.value,
        "priority_level": complaint.priority_level.value,
        "is_anonymous": complaint.is_anonymous,
        "complainant_name": complaint.complainant_name,
        "complainant_phone": complaint.complainant_phone,
        "complainant_email": complaint.complainant_email,
        **complaint.details,
        "attachments": [a.to_dict() for a in complaint.attachments],
        "status_history": complaint.history_dicts(),
        "resolution_details": complaint.resolution_details.to_dict(),
        "complaint_end_at": (
            complaint.complaint_end_at.isoformat() if complaint.complaint_end_at else None
        ),
        "created_at": complaint.created_at.isoformat(),
        "updated_at": complaint.updated_at.isoformat(),
    }


class ComplaintService:
    """Complaint intake, self-service via access grants and admin resolution.

    Every mutation follows the same order: validate the request, load the
    complaint, check the caller's scope, run the state machine, save, and
    only then schedule notifications.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        *,
        grants: AccessGrantManager,
        scope: DistrictScopeEnforcer,
        attachments: AttachmentStore,
        notifier: NotificationDispatcher,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.grants = grants
        self.scope = scope
        self.attachments = attachments
        self.notifier = notifier
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def access_link(self, domain: ComplaintDomain, complaint_number: str, token: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        return f"{base}{domain.link_path}/{complaint_number}?token={token}"

    def _save(self, complaint: Complaint) -> Complaint:
        try:
            return self.store.save_complaint(complaint)
        except StaleRecordError as exc:
            logger.warning(
                "complaint_save_conflict", complaint_number=complaint.complaint_number
            )
            raise ConflictError(CONCURRENT_UPDATE_MESSAGE, detail=exc.detail) from exc

    def _notify_complainant(
        self, complaint: Complaint, template: Template, context: Dict[str, Any]
    ) -> None:
        if complaint.is_anonymous:
            return
        context = {"complaint_number": complaint.complaint_number, **context}
        if complaint.complainant_phone:
            self.notifier.notify(Channel.SMS, complaint.complainant_phone, template, context)
        if complaint.complainant_email:
            self.notifier.notify(Channel.EMAIL, complaint.complainant_email, template, context)

    async def _store_uploads(
        self, complaint: Complaint, uploads: Sequence[Upload]
    ) -> List[Attachment]:
        if not uploads:
            return []
        return await self.attachments.store_many(
            complaint.domain, complaint.complaint_number, uploads
        )

    # ------------------------------------------------------------------
    # intake
    # ------------------------------------------------------------------
    async def create(
        self, domain: ComplaintDomain, data: Dict[str, Any]
    ) -> Tuple[Complaint, Optional[str]]:
        """Register a complaint; returns it with the access grant token, if any."""
        district = _text(data.get("district"))
        title = _text(data.get("complaint_title"))
        description = _text(data.get("complaint_description"))
        if not district or not title or not description:
            raise ValidationError("District, complaint title and description are required")

        anonymous = _as_bool(data.get("is_anonymous"))
        name = None if anonymous else _text(data.get("complainant_name"))
        phone = None if anonymous else _text(data.get("complainant_phone"))
        email = None if anonymous else _text(data.get("complainant_email"))
        if not anonymous and not name and not phone:
            raise ValidationError(
                "Name or phone number is required for non-anonymous complaints"
            )
        if email:
            email = normalize_email(email)
        priority = parse_priority(data.get("priority_level")) or PriorityLevel.MEDIUM

        now = self._clock()
        details = {
            key: data.get(key)
            for key in DOMAIN_FIELDS[domain]
            if data.get(key) not in (None, "")
        }
        complaint = Complaint(
            complaint_number=new_complaint_number(domain, now),
            domain=domain,
            district=district,
            title=title,
            description=description,
            priority_level=priority,
            is_anonymous=anonymous,
            complainant_name=name,
            complainant_phone=phone,
            complainant_email=email,
            details=details,
            status_history=[Submitted(status=ComplaintStatus.PENDING, at=now)],
            created_at=now,
            updated_at=now,
        )
        created = self.store.create_complaint(complaint)
        logger.info(
            "complaint_created",
            domain=domain.value,
            complaint_number=created.complaint_number,
            anonymous=anonymous,
        )

        token: Optional[str] = None
        if not anonymous and (phone or email):
            token = await self.issue_access_grant(domain, created.complaint_number)
            self._notify_complainant(
                created,
                Template.COMPLAINT_REGISTERED,
                {"access_link": self.access_link(domain, created.complaint_number, token)},
            )
        return created, token

    async def issue_access_grant(self, domain: ComplaintDomain, complaint_number: str) -> str:
        return await self.grants.grant(domain, complaint_number)

    # ------------------------------------------------------------------
    # self-service through an access grant
    # ------------------------------------------------------------------
    def _load_for_holder(self, holder: GrantHolder) -> Complaint:
        complaint = self.store.get_complaint(holder.domain, holder.complaint_number)
        if complaint is None:
            raise AccessLinkInvalidError()
        return complaint

    def read_via_grant(self, holder: GrantHolder) -> Dict[str, Any]:
        complaint = self._load_for_holder(holder)
        return {
            "complaint_number": complaint.complaint_number,
            "complaint_title": complaint.title,
            "complaint_description": complaint.description,
            "complainant_email": complaint.complainant_email,
            "attachments": [a.to_dict() for a in complaint.attachments],
            "current_status": complaint.current_status.value,
            "created_at": complaint.created_at.isoformat(),
        }

    async def update_via_grant(
        self,
        holder: GrantHolder,
        *,
        description: Optional[str] = None,
        email: Optional[str] = None,
        uploads: Sequence[Upload] = (),
    ) -> Complaint:
        """Apply a complainant edit; ``holder`` comes from ``AccessGrantManager.authorize``."""
        patch = UserLinkPatch(description=description, email=email, pending_files=len(uploads))
        ensure_not_empty(patch)
        if patch.email:
            patch.email = normalize_email(patch.email)
        complaint = self._load_for_holder(holder)

        patch.attachments = await self._store_uploads(complaint, uploads)
        try:
            apply_user_link_update(complaint, patch, now=self._clock())
            saved = self._save(complaint)
        except ServiceError:
            self.attachments.discard(patch.attachments)
            raise
        logger.info(
            "complaint_updated_via_link",
            domain=holder.domain.value,
            complaint_number=holder.complaint_number,
            attachments_added=len(patch.attachments),
        )
        return saved

    # ------------------------------------------------------------------
    # admin resolution
    # ------------------------------------------------------------------
    def get_for_admin(
        self, admin: DistrictAdmin, domain: ComplaintDomain, complaint_number: str
    ) -> Complaint:
        if not complaint_number:
            raise ValidationError("Complaint number is required")
        complaint = self.store.get_complaint(domain, complaint_number)
        if complaint is None:
            raise NotFoundError("Complaint not found")
        self.scope.authorize(admin, complaint)
        return complaint

    async def admin_update(
        self,
        admin: DistrictAdmin,
        domain: ComplaintDomain,
        complaint_number: str,
        *,
        status: Optional[str] = None,
        resolution_note: Optional[str] = None,
        final_resolution_note: Optional[str] = None,
        uploads: Sequence[Upload] = (),
    ) -> Complaint:
        patch = AdminPatch(
            status=parse_status(status),
            resolution_note=resolution_note,
            final_resolution_note=final_resolution_note,
            pending_files=len(uploads),
        )
        ensure_not_empty(patch)
        complaint = self.get_for_admin(admin, domain, complaint_number)

        patch.attachments = await self._store_uploads(complaint, uploads)
        try:
            event = apply_admin_update(
                complaint, patch, admin_id=admin.principal_id, now=self._clock()
            )
            saved = self._save(complaint)
        except ServiceError:
            self.attachments.discard(patch.attachments)
            raise
        logger.info(
            "complaint_admin_update",
            domain=domain.value,
            complaint_number=complaint_number,
            admin=admin.principal_id,
            event_kind=event.kind,
            status=saved.current_status.value,
        )
        self._notify_complainant(
            saved,
            Template.COMPLAINT_UPDATED,
            {"status": saved.current_status.value, "note": patch.resolution_note},
        )
        return saved

    async def admin_close(
        self,
        admin: DistrictAdmin,
        domain: ComplaintDomain,
        complaint_number: str,
        final_status: Optional[str],
        final_note: Optional[str] = None,
    ) -> Complaint:
        if not complaint_number:
            raise ValidationError("Complaint number is required")
        status = parse_final_status(final_status)
        complaint = self.get_for_admin(admin, domain, complaint_number)
        apply_close(
            complaint,
            status,
            admin_id=admin.principal_id,
            now=self._clock(),
            final_note=final_note,
        )
        saved = self._save(complaint)
        logger.info(
            "complaint_closed",
            domain=domain.value,
            complaint_number=complaint_number,
            admin=admin.principal_id,
            status=status.value,
        )
        self._notify_complainant(
            saved,
            Template.COMPLAINT_CLOSED,
            {"status": status.value, "final_note": saved.resolution_details.final_note},
        )
        return saved

    def list_for_admin(
        self,
        admin: DistrictAdmin,
        domain: ComplaintDomain,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        district_name = self.scope.resolve_district_name(admin)
        page_size = limit or self.settings.default_page_size
        if page < 1 or page_size < 1 or page_size > self.settings.max_page_size:
            raise ValidationError(
                "Invalid pagination parameters",
                detail={"max_limit": self.settings.max_page_size},
            )
        rows, total = self.store.list_complaints(
            domain,
            district=district_name,
            status=parse_status(status),
            priority=parse_priority(priority),
            search=_text(search),
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return {
            "complaints": [complaint_summary(c) for c in rows],
            "pagination": {
                "total": total,
                "page": page,
                "limit": page_size,
                "total_pages": math.ceil(total / page_size) if total else 0,
            },
            "admin_district": district_name,
        }

    def list_for_complainant(self, complainant: Complainant) -> List[Dict[str, Any]]:
        contact = complainant.contact or ""
        if not contact:
            return []
        if "@" in contact:
            rows = self.store.find_complaints_by_contact(email=contact)
        else:
            rows = self.store.find_complaints_by_contact(phone=contact)
        return [complaint_summary(c) for c in rows]


__all__ = [
    "CONCURRENT_UPDATE_MESSAGE",
    "ComplaintService",
    "complaint_detail",
    "complaint_summary",
    "parse_priority",
]
