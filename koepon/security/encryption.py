from __future__ import annotations
import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Optional

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from ..logger import get_logger

log = get_logger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12


class DecryptionError(ValueError):
    pass


@dataclass(frozen=True)
class EncryptedPayload:
    encrypted: str
    iv: str
    tag: str

    def to_dict(self) -> Dict[str, str]:
        return {"encrypted": self.encrypted, "iv": self.iv, "tag": self.tag}


def _parse_key(raw: str) -> bytes:
    raw = raw.strip()
    try:
        key = bytes.fromhex(raw)
    except ValueError:
        try:
            key = base64.b64decode(raw, validate=True)
        except binascii.Error:
            raise ValueError("ENCRYPTION_KEY must be hex or base64")
    if len(key) != KEY_BYTES:
        raise ValueError("ENCRYPTION_KEY must decode to 32 bytes")
    return key


class EncryptionUtils:
    """AES-256-GCM. The nonce is passed to the cipher explicitly and stored
    next to the ciphertext and tag."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError("AES-256 needs a 32 byte key")
        self._key = key

    @classmethod
    def from_key_string(cls, raw: Optional[str]) -> "EncryptionUtils":
        if not raw:
            log.warning("ENCRYPTION_KEY not set, using an ephemeral key")
            return cls(get_random_bytes(KEY_BYTES))
        return cls(_parse_key(raw))

    def encrypt(self, plaintext: str,
                associated_data: bytes | None = None) -> EncryptedPayload:
        nonce = get_random_bytes(NONCE_BYTES)
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        if associated_data:
            cipher.update(associated_data)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        return EncryptedPayload(
            encrypted=ciphertext.hex(), iv=nonce.hex(), tag=tag.hex()
        )

    def decrypt(self, payload: EncryptedPayload,
                associated_data: bytes | None = None) -> str:
        try:
            cipher = AES.new(self._key, AES.MODE_GCM,
                             nonce=bytes.fromhex(payload.iv))
            if associated_data:
                cipher.update(associated_data)
            data = cipher.decrypt_and_verify(
                bytes.fromhex(payload.encrypted), bytes.fromhex(payload.tag)
            )
        except ValueError as e:
            # bad hex or failed authentication
            raise DecryptionError("decryption failed") from e
        return data.decode("utf-8")
