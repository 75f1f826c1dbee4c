from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
# (principal_id, role) of the authenticated caller, bound at the auth boundary
principal_var: ContextVar[Optional[tuple[str, str]]] = ContextVar("principal", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request id when given, otherwise mint one."""
    cid = (correlation_id or "").strip()[:64] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    principal_var.set(None)
    return cid


def bind_principal(principal_id: str, role: str) -> None:
    """Tag every later log line of this request with the acting principal."""
    principal_var.set((principal_id, role))


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    principal = principal_var.get()
    if principal:
        event_dict.setdefault("actor", principal[0])
        event_dict.setdefault("actor_role", principal[1])
    return event_dict


# Values under these keys, or keys ending in ``_<name>``, are never logged in clear
_SECRET_KEYS = ("password", "secret", "token", "api_key", "authorization", "otp")
# Complainant and admin contact details are partially masked
_CONTACT_KEYS = ("email", "phone", "phone_number", "contact")
# Public ids are logged in clear, but complainant OTP keys are a phone or email
_PRINCIPAL_KEYS = ("principal", "principal_id", "actor")
_DIGITS = re.compile(r"\d")
_PHONE_LIKE = re.compile(r"^\+?[\d\s-]{7,}$")


def redact_contact(value: str) -> str:
    """Mask an email address or phone number, keeping enough to debug delivery."""
    if "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:2]}***@{domain}"
    digits = _DIGITS.findall(value)
    if len(digits) <= 4:
        return "***"
    return "***" + "".join(digits[-4:])


def _key_matches(key: str, names: tuple[str, ...]) -> bool:
    return any(key == name or key.endswith("_" + name) for name in names)


def _looks_like_contact(value: str) -> bool:
    return "@" in value or bool(_PHONE_LIKE.match(value.strip()))


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if _key_matches(lower_key, _SECRET_KEYS):
            event_dict[key] = value[:2] + "***" if len(value) > 4 else "***"
        elif _key_matches(lower_key, _CONTACT_KEYS):
            event_dict[key] = redact_contact(value)
        elif lower_key in _PRINCIPAL_KEYS and _looks_like_contact(value):
            event_dict[key] = redact_contact(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the portal.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: emit one JSON object per line
        development_mode: coloured console output, overrides ``json_output``
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_context,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
