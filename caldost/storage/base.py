from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from caldost.storage.models import (
    AdminAccount,
    ApiKeyRecord,
    Complaint,
    ComplaintDomain,
    ComplaintStatus,
    District,
    PriorityLevel,
    SuperAdminAccount,
)


class Store(Protocol):
    """Record storage shared by the account, auth and complaint services.

    ``MemoryStore`` backs tests and local development; ``PostgresStore``
    backs deployments. Both raise ``ConstraintViolation`` on uniqueness
    failures and ``StaleRecordError`` when a complaint save loses a race.
    """

    def create_super_admin(self, account: SuperAdminAccount) -> SuperAdminAccount: ...

    def get_super_admin(self, public_user_id: str) -> Optional[SuperAdminAccount]: ...

    def get_super_admin_by_email(self, email: str) -> Optional[SuperAdminAccount]: ...

    def get_super_admin_by_phone(self, phone_number: str) -> Optional[SuperAdminAccount]: ...

    def save_super_admin(self, account: SuperAdminAccount) -> None: ...

    def create_district(self, code_alpha: str, name: str) -> District: ...

    def get_district(self, code_alpha: str) -> Optional[District]: ...

    def list_districts(self) -> List[District]: ...

    def create_admin(self, account: AdminAccount) -> AdminAccount: ...

    def get_admin(self, public_user_id: str) -> Optional[AdminAccount]: ...

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]: ...

    def list_admins(self) -> List[AdminAccount]: ...

    def save_admin(self, account: AdminAccount) -> None: ...

    def create_complaint(self, complaint: Complaint) -> Complaint: ...

    def get_complaint(
        self, domain: ComplaintDomain, complaint_number: str
    ) -> Optional[Complaint]: ...

    def save_complaint(self, complaint: Complaint) -> Complaint: ...

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
    ) -> Tuple[List[Complaint], int]: ...

    def find_complaints_by_contact(
        self, *, phone: Optional[str] = None, email: Optional[str] = None
    ) -> List[Complaint]: ...

    def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord: ...

    def get_api_key_by_digest(self, digest: str) -> Optional[ApiKeyRecord]: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKeyRecord]: ...

    def list_api_keys(self) -> List[ApiKeyRecord]: ...

    def record_api_key_use(self, key_id: str) -> None: ...

    def set_api_key_active(self, key_id: str, active: bool) -> Optional[ApiKeyRecord]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


__all__ = ["Store"]
