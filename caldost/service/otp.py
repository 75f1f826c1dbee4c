from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from caldost.logging import get_logger
from caldost.storage.models import utcnow
from caldost.storage.secret_store import FieldMatch, SecretStore

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


class OtpPurpose(str, Enum):
    """Challenge namespaces. The value is the secret store key prefix."""

    ADMIN_LOGIN = "admin_login_otp"
    SUPER_ADMIN_EMAIL_LOGIN = "login_otp"
    SUPER_ADMIN_PHONE_LOGIN = "phone_login_otp"
    PASSWORD_RESET = "forgot_pwd_otp"
    COMPLAINANT_PHONE_LOGIN = "complainant_phone_otp"
    COMPLAINANT_EMAIL_LOGIN = "complainant_email_otp"


class OtpOutcome(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass
class OtpVerification:
    outcome: OtpOutcome
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome is OtpOutcome.OK


def generate_code() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def challenge_key(purpose: OtpPurpose, principal_key: str) -> str:
    return f"{purpose.value}:{principal_key}"


class OtpChallengeManager:
    """Issues and single-use-verifies six digit codes.

    At most one live challenge exists per (principal, purpose); issuing again
    overwrites it. Verification consumes the challenge with one atomic
    compare-and-delete, so two concurrent requests cannot both succeed.
    """

    def __init__(self, store: SecretStore, *, ttl_seconds: int = 300) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def issue(
        self,
        principal_key: str,
        purpose: OtpPurpose,
        *,
        extra: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> str:
        code = code or generate_code()
        payload = {
            **(extra or {}),
            "principal_key": principal_key,
            "otp": code,
            "created_at": utcnow().isoformat(),
        }
        await self.store.set(
            challenge_key(purpose, principal_key), json.dumps(payload), self.ttl_seconds
        )
        logger.info("otp_issued", purpose=purpose.value, principal=principal_key)
        return code

    async def verify(
        self, principal_key: str, purpose: OtpPurpose, submitted: str
    ) -> OtpVerification:
        result, raw = await self.store.pop_if_field_matches(
            challenge_key(purpose, principal_key), "otp", str(submitted).strip()
        )
        if result is FieldMatch.ABSENT:
            logger.info("otp_expired", purpose=purpose.value, principal=principal_key)
            return OtpVerification(OtpOutcome.EXPIRED)
        if result is FieldMatch.MISMATCH:
            logger.info("otp_mismatch", purpose=purpose.value, principal=principal_key)
            return OtpVerification(OtpOutcome.MISMATCH)
        payload = json.loads(raw) if raw else {}
        logger.info("otp_verified", purpose=purpose.value, principal=principal_key)
        return OtpVerification(OtpOutcome.OK, payload)


__all__ = [
    "OtpChallengeManager",
    "OtpOutcome",
    "OtpPurpose",
    "OtpVerification",
    "challenge_key",
    "generate_code",
]
