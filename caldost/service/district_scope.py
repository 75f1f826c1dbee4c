from __future__ import annotations

from typing import Optional, Protocol

from caldost.logging import get_logger
from caldost.service.access import DistrictAdmin
from caldost.service.errors import AuthorizationError
from caldost.storage.models import Complaint, District

logger = get_logger(__name__)


class DistrictLookup(Protocol):
    def get_district(self, code_alpha: str) -> Optional[District]: ...


class DistrictScopeEnforcer:
    """Admins may only act on complaints filed in their own district.

    Complaints record the district *name*; admins carry a district *code*.
    The code is resolved on every call so a renamed district takes effect
    immediately.
    """

    def __init__(self, store: DistrictLookup) -> None:
        self.store = store

    def resolve_district_name(self, admin: DistrictAdmin) -> str:
        district = self.store.get_district(admin.district_code)
        if district is None:
            logger.warning(
                "district_scope_unresolvable",
                admin=admin.principal_id,
                district_code=admin.district_code,
            )
            raise AuthorizationError()
        return district.district_name

    def authorize(self, admin: DistrictAdmin, complaint: Complaint) -> None:
        district_name = self.resolve_district_name(admin)
        if complaint.district != district_name:
            logger.warning(
                "district_scope_denied",
                admin=admin.principal_id,
                complaint_number=complaint.complaint_number,
            )
            raise AuthorizationError()


__all__ = ["DistrictScopeEnforcer"]
