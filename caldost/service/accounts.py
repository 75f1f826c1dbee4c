from __future__ import annotations

import base64
import hashlib
import re
import secrets
import uuid
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError
from cryptography.fernet import Fernet, InvalidToken

from caldost.config import Settings
from caldost.logging import get_logger
from caldost.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from caldost.storage.errors import ConstraintViolation
from caldost.storage.base import Store
from caldost.storage.models import (
    AdminAccount,
    ApiKeyRecord,
    District,
    Role,
    SuperAdminAccount,
    new_public_id,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
API_KEY_PREFIX = "cdk_"
_DISTRICT_CODE = re.compile(r"^[A-Z]{1,5}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(stored_hash: str, password: str) -> bool:
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError):
        return False


def normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not _EMAIL.match(value):
        raise ValidationError("Invalid email address")
    return value


def validate_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    return password


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def api_key_digest(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class AccountService:
    """Districts, administrator accounts and intake API keys."""

    def __init__(self, store: Store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        material = settings.api_key_secret or settings.jwt_secret
        self._cipher = Fernet(_derive_cipher_key(material))

    # districts ---------------------------------------------------------
    def create_district(self, code_alpha: Optional[str], name: Optional[str]) -> District:
        code = (code_alpha or "").strip().upper()
        district_name = (name or "").strip()
        if not code or not district_name:
            raise ValidationError("district_code_alpha and district_name are required")
        if not _DISTRICT_CODE.match(code):
            raise ValidationError("district_code_alpha must be 1 to 5 letters")
        try:
            district = self.store.create_district(code, district_name)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "district_created",
            district_code=district.district_code_alpha,
            numeric_code=district.district_code_numeric,
        )
        return district

    def list_districts(self) -> List[District]:
        return self.store.list_districts()

    # admins -------------------------------------------------------------
    def create_admin(
        self,
        *,
        name: Optional[str],
        email: Optional[str],
        district_code_alpha: Optional[str],
        password: Optional[str],
        created_by: str,
        phone_number: Optional[str] = None,
        post: Optional[str] = None,
    ) -> AdminAccount:
        if not (name and email and district_code_alpha and password):
            raise ValidationError(
                "name, email, district_code_alpha and password are required"
            )
        email_value = normalize_email(email)
        validate_password(password)
        district = self.store.get_district(district_code_alpha.strip())
        if district is None:
            raise ValidationError("Invalid district")
        if district.assigned_admin_public_user_ids:
            raise ConflictError("An admin is already assigned to this district")
        account = AdminAccount(
            public_user_id=new_public_id(Role.ADMIN),
            name=name.strip(),
            email=email_value,
            district_code_alpha=district.district_code_alpha,
            password_hash=hash_password(password),
            phone_number=(phone_number or "").strip() or None,
            post=post,
            created_by=created_by,
        )
        try:
            created = self.store.create_admin(account)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "district_code_alpha":
                raise ConflictError("An admin is already assigned to this district") from exc
            raise ConflictError(
                "Admin with same email or phone number already exists"
            ) from exc
        logger.info(
            "admin_created",
            admin=created.public_user_id,
            district_code=created.district_code_alpha,
            created_by=created_by,
        )
        return created

    def list_admins(self) -> List[AdminAccount]:
        return self.store.list_admins()

    # super admins ---------------------------------------------------------
    def create_super_admin(
        self,
        *,
        name: str,
        email: str,
        password: str,
        phone_number: Optional[str] = None,
    ) -> SuperAdminAccount:
        if not name:
            raise ValidationError("name is required")
        account = SuperAdminAccount(
            public_user_id=new_public_id(Role.SUPER_ADMIN),
            name=name.strip(),
            email=normalize_email(email),
            password_hash=hash_password(validate_password(password)),
            phone_number=(phone_number or "").strip() or None,
        )
        try:
            created = self.store.create_super_admin(account)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("super_admin_created", super_admin=created.public_user_id)
        return created

    # api keys ---------------------------------------------------------------
    def create_api_key(self, name: Optional[str], created_by: str) -> Tuple[ApiKeyRecord, str]:
        """Mint a key. The raw value is returned once and never stored in clear."""
        label = (name or "").strip()
        if not label:
            raise ValidationError("name is required")
        raw_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            name=label,
            key_digest=api_key_digest(raw_key),
            encrypted_key=self._cipher.encrypt(raw_key.encode("utf-8")).decode("utf-8"),
            key_prefix=raw_key[:10],
            created_by=created_by,
        )
        created = self.store.create_api_key(record)
        logger.info("api_key_created", key_id=created.id, created_by=created_by)
        return created, raw_key

    def list_api_keys(self) -> List[ApiKeyRecord]:
        return self.store.list_api_keys()

    def reveal_api_key(self, key_id: str) -> str:
        record = self.store.get_api_key(key_id)
        if record is None:
            raise NotFoundError("API key not found")
        try:
            return self._cipher.decrypt(record.encrypted_key.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("api_key_decrypt_failed", key_id=key_id)
            raise ServerError("unable to decrypt API key") from exc

    def deactivate_api_key(self, key_id: str) -> ApiKeyRecord:
        record = self.store.set_api_key_active(key_id, False)
        if record is None:
            raise NotFoundError("API key not found")
        logger.info("api_key_deactivated", key_id=key_id)
        return record

    def authenticate_api_key(self, raw_key: Optional[str]) -> ApiKeyRecord:
        if not raw_key:
            raise AuthenticationError("API key required")
        record = self.store.get_api_key_by_digest(api_key_digest(raw_key.strip()))
        if record is None or not record.is_active:
            logger.warning("api_key_rejected")
            raise AuthenticationError("invalid API key")
        self.store.record_api_key_use(record.id)
        return record


__all__ = [
    "AccountService",
    "api_key_digest",
    "hash_password",
    "normalize_email",
    "validate_password",
    "verify_password",
]
