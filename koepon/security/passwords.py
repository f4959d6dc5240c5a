import re
import secrets
from typing import List

import bcrypt

from ..errors import ValidationError

BCRYPT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8


class PasswordSecurity:

    @staticmethod
    def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
        raw = password.encode("utf-8")
        if len(raw) > MAX_PASSWORD_BYTES:
            raise ValidationError("パスワードが長すぎます")
        return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=rounds)).decode()

    @staticmethod
    def verify_password(password: str, hashed: str) -> bool:
        raw = password.encode("utf-8")
        if len(raw) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(raw, hashed.encode())
        except ValueError:
            # malformed stored hash
            return False

    @staticmethod
    def generate_secure_token(length: int = 32) -> str:
        """Hex token from `length` random bytes."""
        return secrets.token_hex(length)

    @staticmethod
    def generate_csrf_token() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def password_issues(password: str) -> List[str]:
        issues = []
        if len(password) < MIN_PASSWORD_LENGTH:
            issues.append("パスワードは8文字以上で入力してください")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            issues.append("パスワードが長すぎます")
        if not re.search(r"[A-Za-z]", password):
            issues.append("英字を含めてください")
        if not re.search(r"\d", password):
            issues.append("数字を含めてください")
        return issues

    @classmethod
    def validate_password_strength(cls, password: str) -> None:
        issues = cls.password_issues(password)
        if issues:
            raise ValidationError(issues[0], issues=issues)
