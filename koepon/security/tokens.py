from __future__ import annotations
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid

import jwt

from ..errors import AuthenticationError

ISSUER = "koepon-app"
AUDIENCE = "koepon-users"
ALGORITHM = "HS256"

ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=7)


class TokenErrorKind(str, Enum):
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"
    INVALID_CLAIMS = "invalid_claims"
    WRONG_TYPE = "wrong_type"


class TokenError(AuthenticationError):
    code = "invalid_token"
    public_message = "認証の有効期限が切れたか、無効なトークンです"

    def __init__(self, kind: TokenErrorKind) -> None:
        super().__init__()
        self.kind = kind


class TokenManager:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str = ISSUER,
        audience: str = AUDIENCE,
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
    ) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self.secret = secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iat": now,
            "exp": now + ttl,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def generate_access_token(
        self, user_id: str, email: str, role: str,
        session_id: Optional[str] = None,
    ) -> str:
        claims = {"sub": user_id, "email": email, "role": role,
                  "type": "access"}
        if session_id:
            claims["sid"] = session_id
        return self._encode(claims, self.access_ttl)

    def generate_refresh_token(
        self, user_id: str, session_id: Optional[str] = None
    ) -> str:
        claims = {"sub": user_id, "type": "refresh"}
        if session_id:
            claims["sid"] = session_id
        return self._encode(claims, self.refresh_ttl)

    def verify_token(
        self, token: str, expected_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Decoded claims, or TokenError tagged with what went wrong."""
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenError(TokenErrorKind.EXPIRED)
        except jwt.InvalidSignatureError:
            raise TokenError(TokenErrorKind.INVALID_SIGNATURE)
        except (jwt.InvalidAudienceError, jwt.InvalidIssuerError,
                jwt.MissingRequiredClaimError, jwt.ImmatureSignatureError,
                jwt.InvalidIssuedAtError):
            raise TokenError(TokenErrorKind.INVALID_CLAIMS)
        except jwt.InvalidTokenError:
            raise TokenError(TokenErrorKind.MALFORMED)

        if expected_type and claims.get("type") != expected_type:
            raise TokenError(TokenErrorKind.WRONG_TYPE)
        return claims

    def token_error_kind(self, token: str) -> Optional[TokenErrorKind]:
        try:
            self.verify_token(token)
        except TokenError as e:
            return e.kind
        return None

    def is_token_expired(self, token: str) -> bool:
        # tampered or malformed tokens are invalid, not expired
        return self.token_error_kind(token) is TokenErrorKind.EXPIRED
