from __future__ import annotations
import logging
from enum import Enum
from typing import Any, Dict, Optional

from ..helpers import now_ts, to_iso
from ..logger import get_logger
from .encryption import EncryptionUtils

log = get_logger("koepon.security")

SENSITIVE_KEYS = {"password", "token", "sessionid", "session_id",
                  "refresh_token", "access_token", "authorization"}


class SecurityEvent(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_REJECTED = "token_rejected"
    SESSION_REJECTED = "session_rejected"
    ACCESS_DENIED = "access_denied"
    LOGOUT = "logout"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def redact(details: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in details.items():
        if k.lower() in SENSITIVE_KEYS:
            out[k] = "[REDACTED]"
        elif isinstance(v, dict):
            out[k] = redact(v)
        else:
            out[k] = v
    return out


class SecurityLogger:
    """Structured security events. With an `encryption` helper the email
    address is sealed instead of logged in clear."""

    def __init__(self, encryption: Optional[EncryptionUtils] = None) -> None:
        self.encryption = encryption

    def log_security_event(
        self,
        event: SecurityEvent,
        severity: Severity = Severity.LOW,
        *,
        ip_address: str = "",
        user_agent: str = "",
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "timestamp": to_iso(now_ts()),
            "ipAddress": ip_address,
            "userAgent": user_agent,
            "email": self._email(email),
            "details": redact(details or {}),
        }
        level = (logging.INFO if severity in (Severity.LOW, Severity.MEDIUM)
                 else logging.WARNING)
        log.log(level, "security event: %s", event.value, extra={
            "event_type": event.value,
            "severity": severity.value,
            "user_id": user_id,
            "details": entry,
        })
        return entry

    def _email(self, email: Optional[str]):
        if not email or self.encryption is None:
            return email
        return self.encryption.encrypt(
            email, associated_data=b"security-log"
        ).to_dict()
