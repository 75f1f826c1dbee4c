from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from caldost.logging import get_logger
from caldost.storage.models import Role, utcnow
from caldost.storage.secret_store import SecretStore

logger = get_logger(__name__)


def session_key(principal_id: str) -> str:
    return f"session:{principal_id}"


@dataclass
class SessionRecord:
    principal_id: str
    role: Role
    district: Optional[str]
    logged_in_at: datetime
    contact: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "principal_id": self.principal_id,
                "role": self.role.value,
                "district": self.district,
                "contact": self.contact,
                "logged_in_at": self.logged_in_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            principal_id=data["principal_id"],
            role=Role(data["role"]),
            district=data.get("district"),
            contact=data.get("contact"),
            logged_in_at=datetime.fromisoformat(data["logged_in_at"]),
        )


class SessionManager:
    """One server-side session record per principal.

    A new login overwrites the record and restarts its TTL; the record is
    authoritative over bearer tokens, so closing it revokes every token the
    principal holds on every device.
    """

    def __init__(self, store: SecretStore, *, ttl_seconds: int = 604800) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def open(
        self,
        principal_id: str,
        role: Role,
        district: Optional[str] = None,
        *,
        contact: Optional[str] = None,
    ) -> SessionRecord:
        record = SessionRecord(
            principal_id=principal_id,
            role=role,
            district=district,
            contact=contact,
            logged_in_at=utcnow(),
        )
        await self.store.set(session_key(principal_id), record.to_json(), self.ttl_seconds)
        logger.info("session_opened", principal=principal_id, role=role.value)
        return record

    async def get(self, principal_id: str) -> Optional[SessionRecord]:
        raw = await self.store.get(session_key(principal_id))
        if raw is None:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError) as exc:
            logger.warning("session_record_corrupt", principal=principal_id, error=str(exc))
            return None

    async def is_live(self, principal_id: str) -> bool:
        return await self.store.get(session_key(principal_id)) is not None

    async def close(self, principal_id: str) -> None:
        await self.store.delete(session_key(principal_id))
        logger.info("session_closed", principal=principal_id)


__all__ = ["SessionManager", "SessionRecord", "session_key"]
