from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from caldost.config import Settings
from caldost.logging import get_logger
from caldost.service.access import AuthContext
from caldost.service.accounts import (
    hash_password,
    normalize_email,
    validate_password,
    verify_password,
)
from caldost.service.errors import AuthenticationError, NotFoundError, ValidationError
from caldost.service.notifications import Channel, NotificationDispatcher, Template
from caldost.service.otp import OtpChallengeManager, OtpOutcome, OtpPurpose
from caldost.service.sessions import SessionManager
from caldost.service.tokens import REFRESH, TokenClaims, TokenIssuer
from caldost.storage.base import Store
from caldost.storage.models import (
    AdminAccount,
    Role,
    SuperAdminAccount,
    new_public_id,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
OTP_EXPIRED = "OTP expired or not requested"
OTP_INVALID = "Invalid OTP"
RESET_REQUESTED = "If an account exists for this email, a reset code has been sent."

Account = Union[SuperAdminAccount, AdminAccount]


@dataclass
class SessionBundle:
    """What a successful login hands back: the tokens plus a public profile."""

    claims: TokenClaims
    access_token: str
    refresh_token: str
    user: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
        }


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _account_profile(account: Account) -> Dict[str, Any]:
    profile: Dict[str, Any] = {
        "public_user_id": account.public_user_id,
        "name": account.name,
        "email": account.email,
        "phone_number": account.phone_number,
        "role": account.role.value,
        "login_details": account.login_details,
    }
    if isinstance(account, AdminAccount):
        profile["district_code_alpha"] = account.district_code_alpha
        profile["post"] = account.post
    return profile


class AuthService:
    """OTP-gated login for every role, token refresh and the auth boundary.

    A request is authenticated only when its bearer token verifies AND the
    principal's server-side session is live.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        *,
        otp: OtpChallengeManager,
        tokens: TokenIssuer,
        sessions: SessionManager,
        notifier: NotificationDispatcher,
    ) -> None:
        self.store = store
        self.settings = settings
        self.otp = otp
        self.tokens = tokens
        self.sessions = sessions
        self.notifier = notifier
        self.logger = logger

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------
    def _otp_response(self, message: str) -> Dict[str, Any]:
        return {"message": message, "otp_expires_in_seconds": self.otp.ttl_seconds}

    async def _send_otp(
        self,
        principal_key: str,
        purpose: OtpPurpose,
        channel: Channel,
        contact: str,
        template: Template,
        *,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        code = await self.otp.issue(principal_key, purpose, extra=extra)
        self.notifier.notify(
            channel,
            contact,
            template,
            {"otp": code, "expires_in_seconds": self.otp.ttl_seconds},
        )

    async def _consume_otp(
        self, principal_key: str, purpose: OtpPurpose, submitted: Optional[str]
    ) -> Dict[str, Any]:
        if not submitted:
            raise ValidationError("OTP is required")
        result = await self.otp.verify(principal_key, purpose, submitted)
        if result.outcome is OtpOutcome.EXPIRED:
            raise AuthenticationError(OTP_EXPIRED)
        if result.outcome is OtpOutcome.MISMATCH:
            raise AuthenticationError(OTP_INVALID)
        return result.payload

    async def _open_session(
        self,
        principal_id: str,
        role: Role,
        *,
        district: Optional[str] = None,
        contact: Optional[str] = None,
        user: Optional[Dict[str, Any]] = None,
    ) -> SessionBundle:
        await self.sessions.open(principal_id, role, district, contact=contact)
        claims = TokenClaims(
            principal_id=principal_id, role=role, district=district, contact=contact
        )
        return SessionBundle(
            claims=claims,
            access_token=self.tokens.sign_access(claims),
            refresh_token=self.tokens.sign_refresh(claims),
            user=user or {},
        )

    def _record_login(
        self, account: Account, *, ip_address: Optional[str], user_agent: Optional[str]
    ) -> None:
        account.login_details = {
            "last_login_at": utcnow().isoformat(),
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        if isinstance(account, AdminAccount):
            self.store.save_admin(account)
        else:
            self.store.save_super_admin(account)

    def _find_by_email(self, email: str) -> Optional[Account]:
        return self.store.get_super_admin_by_email(email) or self.store.get_admin_by_email(email)

    # ------------------------------------------------------------------
    # super admin login
    # ------------------------------------------------------------------
    async def request_super_admin_email_otp(
        self, email: Optional[str], password: Optional[str]
    ) -> Dict[str, Any]:
        if not email or not password:
            raise ValidationError("Email and password are required")
        account = self.store.get_super_admin_by_email(email.strip())
        if (
            account is None
            or not account.is_active
            or not verify_password(account.password_hash, password)
        ):
            self.logger.warning("super_admin_login_rejected", email=email)
            raise AuthenticationError(INVALID_CREDENTIALS)
        await self._send_otp(
            account.public_user_id,
            OtpPurpose.SUPER_ADMIN_EMAIL_LOGIN,
            Channel.EMAIL,
            account.email,
            Template.SUPER_ADMIN_LOGIN_OTP,
        )
        return self._otp_response("OTP sent to your registered email address.")

    async def verify_super_admin_email_otp(
        self,
        email: Optional[str],
        otp: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionBundle:
        if not email:
            raise ValidationError("Email and OTP are required")
        account = self.store.get_super_admin_by_email(email.strip())
        if account is None or not account.is_active:
            raise AuthenticationError(OTP_EXPIRED)
        await self._consume_otp(account.public_user_id, OtpPurpose.SUPER_ADMIN_EMAIL_LOGIN, otp)
        return await self._complete_account_login(account, ip_address, user_agent)

    async def request_super_admin_phone_otp(self, phone_number: Optional[str]) -> Dict[str, Any]:
        if not phone_number:
            raise ValidationError("Phone number is required")
        account = self.store.get_super_admin_by_phone(phone_number.strip())
        if account is None or not account.is_active:
            self.logger.warning("super_admin_phone_login_rejected", phone=phone_number)
            raise NotFoundError("No account found with this phone number")
        await self._send_otp(
            account.public_user_id,
            OtpPurpose.SUPER_ADMIN_PHONE_LOGIN,
            Channel.SMS,
            phone_number.strip(),
            Template.SUPER_ADMIN_LOGIN_OTP,
        )
        return self._otp_response("OTP sent to your registered phone number.")

    async def verify_super_admin_phone_otp(
        self,
        phone_number: Optional[str],
        otp: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionBundle:
        if not phone_number:
            raise ValidationError("Phone number and OTP are required")
        account = self.store.get_super_admin_by_phone(phone_number.strip())
        if account is None or not account.is_active:
            raise AuthenticationError(OTP_EXPIRED)
        await self._consume_otp(account.public_user_id, OtpPurpose.SUPER_ADMIN_PHONE_LOGIN, otp)
        return await self._complete_account_login(account, ip_address, user_agent)

    # ------------------------------------------------------------------
    # district admin login
    # ------------------------------------------------------------------
    async def request_admin_login_otp(
        self, email: Optional[str], password: Optional[str]
    ) -> Dict[str, Any]:
        if not email or not password:
            raise ValidationError("Email and password are required")
        account = self.store.get_admin_by_email(email.strip())
        if (
            account is None
            or not account.is_active
            or not verify_password(account.password_hash, password)
        ):
            self.logger.warning("admin_login_rejected", email=email)
            raise AuthenticationError(INVALID_CREDENTIALS)
        await self._send_otp(
            account.public_user_id,
            OtpPurpose.ADMIN_LOGIN,
            Channel.EMAIL,
            account.email,
            Template.ADMIN_LOGIN_OTP,
        )
        return self._otp_response("OTP sent to your registered email address.")

    async def verify_admin_login_otp(
        self,
        email: Optional[str],
        otp: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionBundle:
        if not email:
            raise ValidationError("Email and OTP are required")
        account = self.store.get_admin_by_email(email.strip())
        if account is None or not account.is_active:
            raise AuthenticationError(OTP_EXPIRED)
        await self._consume_otp(account.public_user_id, OtpPurpose.ADMIN_LOGIN, otp)
        return await self._complete_account_login(account, ip_address, user_agent)

    async def _complete_account_login(
        self, account: Account, ip_address: Optional[str], user_agent: Optional[str]
    ) -> SessionBundle:
        self._record_login(account, ip_address=ip_address, user_agent=user_agent)
        district = account.district_code_alpha if isinstance(account, AdminAccount) else None
        bundle = await self._open_session(
            account.public_user_id,
            account.role,
            district=district,
            user=_account_profile(account),
        )
        self.logger.info(
            "login_completed", principal=account.public_user_id, role=account.role.value
        )
        return bundle

    # ------------------------------------------------------------------
    # password reset
    # ------------------------------------------------------------------
    async def request_password_reset(self, email: Optional[str]) -> Dict[str, Any]:
        """Same answer whether or not the account exists."""
        if not email:
            raise ValidationError("Email is required")
        account = self._find_by_email(email.strip())
        if account is not None and account.is_active:
            await self._send_otp(
                account.public_user_id,
                OtpPurpose.PASSWORD_RESET,
                Channel.EMAIL,
                account.email,
                Template.PASSWORD_RESET_OTP,
            )
        else:
            self.logger.info("password_reset_unknown_account", email=email)
        return self._otp_response(RESET_REQUESTED)

    async def complete_password_reset(
        self, email: Optional[str], otp: Optional[str], new_password: Optional[str]
    ) -> Dict[str, Any]:
        if not email:
            raise ValidationError("Email, OTP and new password are required")
        validate_password(new_password)
        account = self._find_by_email(email.strip())
        if account is None or not account.is_active:
            raise AuthenticationError(OTP_EXPIRED)
        await self._consume_otp(account.public_user_id, OtpPurpose.PASSWORD_RESET, otp)
        account.password_hash = hash_password(new_password)
        if isinstance(account, AdminAccount):
            self.store.save_admin(account)
        else:
            self.store.save_super_admin(account)
        await self.sessions.close(account.public_user_id)
        self.logger.info("password_reset_completed", principal=account.public_user_id)
        return {"message": "Password has been reset. Please log in again."}

    # ------------------------------------------------------------------
    # complainant login
    # ------------------------------------------------------------------
    def _complaint_types(self, *, phone: Optional[str] = None, email: Optional[str] = None) -> List[str]:
        found = self.store.find_complaints_by_contact(phone=phone, email=email)
        return sorted({c.domain.value.upper() for c in found})

    async def request_complainant_phone_otp(self, phone_number: Optional[str]) -> Dict[str, Any]:
        phone = (phone_number or "").strip()
        if not phone:
            raise ValidationError("Phone number is required")
        if not self._complaint_types(phone=phone):
            raise NotFoundError("No complaint found with this phone number")
        await self._send_otp(
            phone,
            OtpPurpose.COMPLAINANT_PHONE_LOGIN,
            Channel.SMS,
            phone,
            Template.COMPLAINANT_LOGIN_OTP,
            extra={"public_user_id": new_public_id(Role.COMPLAINANT)},
        )
        return self._otp_response("OTP sent to your phone number.")

    async def verify_complainant_phone_otp(
        self, phone_number: Optional[str], otp: Optional[str]
    ) -> SessionBundle:
        phone = (phone_number or "").strip()
        if not phone:
            raise ValidationError("Phone number and OTP are required")
        payload = await self._consume_otp(phone, OtpPurpose.COMPLAINANT_PHONE_LOGIN, otp)
        return await self._complete_complainant_login(payload, phone=phone)

    async def request_complainant_email_otp(self, email: Optional[str]) -> Dict[str, Any]:
        if not email:
            raise ValidationError("Email is required")
        address = normalize_email(email)
        if not self._complaint_types(email=address):
            raise NotFoundError("No complaint found with this email")
        await self._send_otp(
            address,
            OtpPurpose.COMPLAINANT_EMAIL_LOGIN,
            Channel.EMAIL,
            address,
            Template.COMPLAINANT_LOGIN_OTP,
            extra={"public_user_id": new_public_id(Role.COMPLAINANT)},
        )
        return self._otp_response("OTP sent to your email address.")

    async def verify_complainant_email_otp(
        self, email: Optional[str], otp: Optional[str]
    ) -> SessionBundle:
        if not email:
            raise ValidationError("Email and OTP are required")
        address = normalize_email(email)
        payload = await self._consume_otp(address, OtpPurpose.COMPLAINANT_EMAIL_LOGIN, otp)
        return await self._complete_complainant_login(payload, email=address)

    async def _complete_complainant_login(
        self,
        payload: Dict[str, Any],
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> SessionBundle:
        principal_id = payload.get("public_user_id") or new_public_id(Role.COMPLAINANT)
        contact = phone or email
        user = {
            "public_user_id": principal_id,
            "role": Role.COMPLAINANT.value,
            "phone_number": phone,
            "email": email,
            "complaint_types": self._complaint_types(phone=phone, email=email),
        }
        bundle = await self._open_session(
            principal_id, Role.COMPLAINANT, contact=contact, user=user
        )
        self.logger.info("complainant_login_completed", principal=principal_id)
        return bundle

    # ------------------------------------------------------------------
    # auth boundary
    # ------------------------------------------------------------------
    async def authenticate(
        self, authorization: Optional[str], cookie_token: Optional[str] = None
    ) -> AuthContext:
        token = _extract_bearer(authorization) or cookie_token
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.tokens.verify(token)
        record = await self.sessions.get(claims.principal_id)
        if record is None or record.role is not claims.role:
            self.logger.info("session_not_live", principal=claims.principal_id)
            raise AuthenticationError("session expired or logged out")
        return AuthContext(
            principal_id=claims.principal_id,
            role=claims.role,
            district=claims.district,
            contact=claims.contact,
        )

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[TokenClaims, str]:
        """Mint a new access token from a refresh token while the session lives."""
        if not refresh_token:
            raise AuthenticationError("refresh token required")
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        if not await self.sessions.is_live(claims.principal_id):
            raise AuthenticationError("session expired or logged out")
        access_claims = TokenClaims(
            principal_id=claims.principal_id,
            role=claims.role,
            district=claims.district,
            contact=claims.contact,
        )
        return access_claims, self.tokens.sign_access(access_claims)

    async def logout(self, ctx: AuthContext) -> None:
        await self.sessions.close(ctx.principal_id)
        self.logger.info("logout", principal=ctx.principal_id, role=ctx.role.value)


__all__ = ["AuthService", "SessionBundle"]
