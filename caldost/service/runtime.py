from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from caldost.config import SecretStoreBackend, get_settings, reset_settings_cache
from caldost.logging import get_logger
from caldost.service.access_grants import AccessGrantManager
from caldost.service.accounts import AccountService
from caldost.service.attachments import AttachmentStore
from caldost.service.auth import AuthService
from caldost.service.complaints import ComplaintService
from caldost.service.district_scope import DistrictScopeEnforcer
from caldost.service.notifications import EmailService, NotificationDispatcher, SmsService
from caldost.service.otp import OtpChallengeManager
from caldost.service.sessions import SessionManager
from caldost.service.tokens import TokenIssuer
from caldost.storage.base import Store
from caldost.storage.memory import MemoryStore
from caldost.storage.postgres import PostgresStore
from caldost.storage.secret_store import MemorySecretStore, RedisSecretStore, SecretStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            secret_store_backend=self.settings.secret_store_backend.value,
            test_mode=self.settings.test_mode,
        )
        self.store: Store = self._build_store()
        self.secrets: SecretStore = self._build_secret_store()

        self.otp = OtpChallengeManager(self.secrets, ttl_seconds=self.settings.otp_ttl_seconds)
        self.tokens = TokenIssuer(self.settings)
        self.sessions = SessionManager(
            self.secrets, ttl_seconds=self.settings.session_ttl_seconds
        )
        self.grants = AccessGrantManager(
            self.secrets, ttl_seconds=self.settings.access_grant_ttl_seconds
        )
        self.scope = DistrictScopeEnforcer(self.store)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = SmsService(
            api_url=self.settings.sms_api_url,
            api_key=self.settings.sms_api_key,
            sender_id=self.settings.sms_sender_id,
            timeout=self.settings.sms_timeout_seconds,
        )
        self.notifier = NotificationDispatcher(self.email, self.sms)
        self.attachments = AttachmentStore(
            self.settings.shared_fs_root,
            max_files=self.settings.max_attachments,
            max_bytes=self.settings.max_attachment_bytes,
        )

        self.accounts = AccountService(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            otp=self.otp,
            tokens=self.tokens,
            sessions=self.sessions,
            notifier=self.notifier,
        )
        self.complaints = ComplaintService(
            self.store,
            self.settings,
            grants=self.grants,
            scope=self.scope,
            attachments=self.attachments,
            notifier=self.notifier,
        )
        logger.info(
            "runtime_initialized",
            secret_store=type(self.secrets).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    def _build_store(self) -> Store:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: Store = MemoryStore(
                    fs_root=self.settings.shared_fs_root, persist=not self.settings.test_mode
                )
            else:
                store = PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_secret_store(self) -> SecretStore:
        if self.settings.secret_store_backend is SecretStoreBackend.MEMORY:
            if not (self.settings.test_mode or self.settings.allow_memory_secret_store):
                raise RuntimeError(
                    "SECRET_STORE_BACKEND=memory requires TEST_MODE=true or "
                    "ALLOW_MEMORY_SECRET_STORE=true"
                )
            return MemorySecretStore()

        redis_error: Exception | None = None
        try:
            store = RedisSecretStore(self.settings.redis_url)
            store.verify_connection()
            return store
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not (self.settings.test_mode or self.settings.allow_memory_secret_store):
            raise RuntimeError(
                "Redis is required for OTP challenges, sessions and access grants; "
                "start Redis or set TEST_MODE=true/ALLOW_MEMORY_SECRET_STORE=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message="Running with the in-process secret store; state is lost on restart.",
        )
        return MemorySecretStore()

    async def startup(self) -> None:
        await self.secrets.connect()

    async def close(self) -> None:
        """Flush pending notifications, then release the secret store and records store."""
        await self.notifier.drain()
        await self.secrets.close()
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.secrets, RedisSecretStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.secrets.close())
            except RuntimeError:
                try:
                    asyncio.run(runtime.secrets.close())
                except (RedisError, OSError) as exc:
                    logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
