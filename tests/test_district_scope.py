"""Tests for district scoping of admin access."""

import pytest

from caldost.service.access import AuthContext, DistrictAdmin, require_district_admin, require_super_admin
from caldost.service.district_scope import DistrictScopeEnforcer
from caldost.service.errors import AuthorizationError
from caldost.storage.memory import MemoryStore
from caldost.storage.models import Complaint, ComplaintDomain, Role


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    store.create_district("RAN", "Ranchi")
    store.create_district("DHN", "Dhanbad")
    return store


def _complaint(district: str) -> Complaint:
    return Complaint(
        complaint_number="HLT-2026-0001",
        domain=ComplaintDomain.HEALTH,
        district=district,
        title="No doctor",
        description="PHC closed",
    )


class TestDistrictScopeEnforcer:
    def test_same_district_allowed(self, store):
        scope = DistrictScopeEnforcer(store)
        scope.authorize(DistrictAdmin("AD-1", "RAN"), _complaint("Ranchi"))

    def test_other_district_denied(self, store):
        scope = DistrictScopeEnforcer(store)
        with pytest.raises(AuthorizationError):
            scope.authorize(DistrictAdmin("AD-1", "RAN"), _complaint("Dhanbad"))

    def test_unknown_district_code_denied(self, store):
        scope = DistrictScopeEnforcer(store)
        with pytest.raises(AuthorizationError):
            scope.resolve_district_name(DistrictAdmin("AD-1", "XYZ"))

    def test_code_resolves_to_name(self, store):
        scope = DistrictScopeEnforcer(store)
        assert scope.resolve_district_name(DistrictAdmin("AD-1", "dhn")) == "Dhanbad"


class TestCapabilities:
    """Role checks happen on the capability resolved from the session."""

    def test_admin_without_district_is_forbidden(self):
        ctx = AuthContext(principal_id="AD-1", role=Role.ADMIN)
        with pytest.raises(AuthorizationError):
            require_district_admin(ctx)

    def test_admin_is_not_super_admin(self):
        ctx = AuthContext(principal_id="AD-1", role=Role.ADMIN, district="RAN")
        assert require_district_admin(ctx) == DistrictAdmin("AD-1", "RAN")
        with pytest.raises(AuthorizationError):
            require_super_admin(ctx)

    def test_complainant_is_not_admin(self):
        ctx = AuthContext(principal_id="CMP-1", role=Role.COMPLAINANT, contact="9876543210")
        with pytest.raises(AuthorizationError):
            require_district_admin(ctx)
