from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from caldost.config import Settings
from caldost.logging import get_logger
from caldost.service.errors import InvalidTokenError
from caldost.storage.models import Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    principal_id: str
    role: Role
    district: Optional[str] = None
    contact: Optional[str] = None
    token_type: str = ACCESS
    jti: Optional[str] = None
    exp: Optional[int] = None


class TokenIssuer:
    """HS256 bearer tokens carrying principal id, role and district.

    ``verify`` checks signature, issuer, audience and expiry only. Whether a
    session is still live is decided by the caller at the auth boundary.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock or time.time
        self._leeway = leeway_seconds

    def sign_access(self, claims: TokenClaims) -> str:
        return self._sign(claims, ACCESS, self.settings.access_token_ttl_minutes * 60)

    def sign_refresh(self, claims: TokenClaims) -> str:
        return self._sign(claims, REFRESH, self.settings.refresh_token_ttl_minutes * 60)

    def verify(self, token: str, *, expected_type: str = ACCESS) -> TokenClaims:
        payload = self._decode(token)
        if payload is None:
            raise InvalidTokenError("invalid or expired token")
        if payload.get("token_type") != expected_type:
            raise InvalidTokenError("invalid or expired token")
        try:
            role = Role(payload["role"])
            principal_id = str(payload["sub"])
        except (KeyError, ValueError) as exc:
            raise InvalidTokenError("invalid or expired token") from exc
        if role is Role.ADMIN and not payload.get("district"):
            raise InvalidTokenError("invalid or expired token")
        return TokenClaims(
            principal_id=principal_id,
            role=role,
            district=payload.get("district"),
            contact=payload.get("contact"),
            token_type=payload["token_type"],
            jti=payload.get("jti"),
            exp=int(payload["exp"]),
        )

    def _sign(self, claims: TokenClaims, token_type: str, ttl_seconds: int) -> str:
        if claims.role is Role.ADMIN and not claims.district:
            raise ValueError("admin tokens require a district claim")
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.principal_id,
            "role": claims.role.value,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(self._clock()),
            "exp": int(self._clock()) + ttl_seconds,
        }
        if claims.district:
            payload["district"] = claims.district
        if claims.contact:
            payload["contact"] = claims.contact
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            return None
        return payload


__all__ = ["ACCESS", "REFRESH", "TokenClaims", "TokenIssuer"]
