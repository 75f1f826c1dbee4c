from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from caldost.service.errors import AuthorizationError
from caldost.storage.models import ComplaintDomain, Role


@dataclass(frozen=True)
class SuperAdmin:
    principal_id: str


@dataclass(frozen=True)
class DistrictAdmin:
    principal_id: str
    district_code: str


@dataclass(frozen=True)
class Complainant:
    principal_id: str
    contact: Optional[str]


@dataclass(frozen=True)
class GrantHolder:
    domain: ComplaintDomain
    complaint_number: str


Capability = Union[SuperAdmin, DistrictAdmin, Complainant, GrantHolder]


@dataclass
class AuthContext:
    """Authenticated principal resolved once per request."""

    principal_id: str
    role: Role
    district: Optional[str] = None
    contact: Optional[str] = None

    @property
    def capability(self) -> Capability:
        if self.role is Role.SUPER_ADMIN:
            return SuperAdmin(self.principal_id)
        if self.role is Role.ADMIN:
            if not self.district:
                raise AuthorizationError()
            return DistrictAdmin(self.principal_id, self.district)
        return Complainant(self.principal_id, self.contact)


def require_super_admin(ctx: AuthContext) -> SuperAdmin:
    capability = ctx.capability
    if not isinstance(capability, SuperAdmin):
        raise AuthorizationError()
    return capability


def require_district_admin(ctx: AuthContext) -> DistrictAdmin:
    capability = ctx.capability
    if not isinstance(capability, DistrictAdmin):
        raise AuthorizationError()
    return capability


def require_complainant(ctx: AuthContext) -> Complainant:
    capability = ctx.capability
    if not isinstance(capability, Complainant):
        raise AuthorizationError()
    return capability


__all__ = [
    "AuthContext",
    "Capability",
    "Complainant",
    "DistrictAdmin",
    "GrantHolder",
    "SuperAdmin",
    "require_complainant",
    "require_district_admin",
    "require_super_admin",
]
