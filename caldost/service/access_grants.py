from __future__ import annotations

import hmac
import secrets

from caldost.logging import get_logger
from caldost.service.access import GrantHolder
from caldost.service.errors import AccessLinkInvalidError
from caldost.storage.models import ComplaintDomain
from caldost.storage.secret_store import SecretStore

logger = get_logger(__name__)

GRANT_TOKEN_BYTES = 24


def grant_key(domain: ComplaintDomain, complaint_number: str) -> str:
    return f"{domain.grant_namespace}:{complaint_number}"


class AccessGrantManager:
    """Complaint-scoped opaque tokens for unauthenticated self-service.

    A grant is multi-use until its TTL lapses. Absence, mismatch and unknown
    complaints all raise the same ``AccessLinkInvalidError``.
    """

    def __init__(self, store: SecretStore, *, ttl_seconds: int = 86400) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def grant(self, domain: ComplaintDomain, complaint_number: str) -> str:
        token = secrets.token_hex(GRANT_TOKEN_BYTES)
        await self.store.set(grant_key(domain, complaint_number), token, self.ttl_seconds)
        logger.info(
            "access_grant_issued", domain=domain.value, complaint_number=complaint_number
        )
        return token

    async def authorize(
        self, domain: ComplaintDomain, complaint_number: str, presented: str | None
    ) -> GrantHolder:
        """Check a presented token and return the capability it confers."""
        if not presented:
            raise AccessLinkInvalidError()
        stored = await self.store.get(grant_key(domain, complaint_number))
        if stored is None or not hmac.compare_digest(
            stored.encode("utf-8"), presented.encode("utf-8")
        ):
            logger.info(
                "access_grant_rejected", domain=domain.value, complaint_number=complaint_number
            )
            raise AccessLinkInvalidError()
        return GrantHolder(domain, complaint_number)


__all__ = ["AccessGrantManager", "GRANT_TOKEN_BYTES", "grant_key"]
