"""Per-user authenticated encryption for chat content at rest.

Each logical plaintext field is stored as the triple
``(content_encrypted, content_iv, content_tag)`` of base64 strings.
Keys are derived per user from a server secret: the user's master key is
HMAC-SHA256(secret, user_id), stretched with PBKDF2 into an AES-256 key.
"""

import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict

from app.core.config import settings
from app.core.exceptions import EncryptionError

logger = structlog.get_logger()

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

# First plaintext byte tells empty content apart from any literal string.
_KIND_EMPTY = b"\x00"
_KIND_TEXT = b"\x01"

UNRECOVERABLE_MARKER = "[ENCRYPTED_DATA_UNRECOVERABLE]"
KEY_CHANGED_PLACEHOLDER = "[Message content unavailable - encryption key changed]"
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed]"


class EncryptedField(BaseModel):
    """Ciphertext triple as persisted in three sibling columns."""

    model_config = ConfigDict(frozen=True)

    content_encrypted: str
    content_iv: str
    content_tag: str


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of decrypting one item of a batch."""

    success: bool
    content: str
    error: str | None = None


def generate_user_master_key(user_id: str, secret: str | None = None) -> str:
    """Derive the hex master key for a user from the server secret."""
    key = (secret or settings.encryption.secret.get_secret_value()).encode()
    return hmac.new(key, str(user_id).encode(), hashlib.sha256).hexdigest()


class EncryptionService:
    """Encrypts and decrypts content for a single user.

    Derived keys are cached per salt, so a batch of N records pays for one
    PBKDF2 derivation instead of N.
    """

    def __init__(
        self,
        user_id: str,
        secret: str | None = None,
        iterations: int | None = None,
    ) -> None:
        self._master_key = generate_user_master_key(user_id, secret)
        self._iterations = iterations or settings.encryption.pbkdf2_iterations
        self._salt = self._master_key[:32].encode()
        self._key_cache: dict[bytes, bytes] = {}
        self.derivation_count = 0

    def _derived_key(self, salt: bytes) -> bytes:
        cached = self._key_cache.get(salt)
        if cached is not None:
            return cached
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        key = kdf.derive(self._master_key.encode())
        self._key_cache[salt] = key
        self.derivation_count += 1
        return key

    def encrypt(self, plaintext: str) -> EncryptedField:
        """Encrypt a string; empty strings are valid input."""
        payload = _KIND_TEXT + plaintext.encode() if plaintext else _KIND_EMPTY
        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(self._derived_key(self._salt)).encrypt(nonce, payload, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return EncryptedField(
            content_encrypted=base64.b64encode(ciphertext).decode("ascii"),
            content_iv=base64.b64encode(nonce).decode("ascii"),
            content_tag=base64.b64encode(tag).decode("ascii"),
        )

    def encrypt_optional(self, plaintext: str | None) -> EncryptedField | None:
        """Encrypt optional metadata; blank values are stored as NULL."""
        if plaintext is None or not plaintext.strip():
            return None
        return self.encrypt(plaintext)

    def decrypt(self, field: EncryptedField) -> str:
        """Decrypt a triple, raising EncryptionError on any integrity failure."""
        if not (field.content_encrypted and field.content_iv and field.content_tag):
            raise EncryptionError("Invalid encrypted data format - missing required fields")
        try:
            ciphertext = base64.b64decode(field.content_encrypted, validate=True)
            nonce = base64.b64decode(field.content_iv, validate=True)
            tag = base64.b64decode(field.content_tag, validate=True)
            payload = AESGCM(self._derived_key(self._salt)).decrypt(
                nonce, ciphertext + tag, None
            )
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise EncryptionError from e

        kind, body = payload[:1], payload[1:]
        if kind == _KIND_EMPTY:
            return ""
        if kind != _KIND_TEXT:
            raise EncryptionError("Unknown payload kind")
        try:
            return body.decode()
        except UnicodeDecodeError as e:
            raise EncryptionError from e

    def decrypt_optional(self, field: EncryptedField | None) -> str | None:
        """Decrypt when present; returns None when missing or unreadable."""
        if field is None:
            return None
        try:
            return self.decrypt(field)
        except EncryptionError:
            logger.warning("Failed to decrypt optional content")
            return None

    def decrypt_batch(self, fields: list[EncryptedField]) -> list[DecryptResult]:
        """Decrypt many triples in input order without raising per item."""
        results: list[DecryptResult] = []
        for field in fields:
            try:
                content = self.decrypt(field)
            except EncryptionError as e:
                results.append(
                    DecryptResult(
                        success=False,
                        content=DECRYPTION_FAILED_PLACEHOLDER,
                        error=e.message,
                    )
                )
                continue
            if content == UNRECOVERABLE_MARKER:
                content = KEY_CHANGED_PLACEHOLDER
            results.append(DecryptResult(success=True, content=content))
        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("Batch decryption had failures", failed=failed, total=len(results))
        return results


def field_from_columns(
    encrypted: str | None, iv: str | None, tag: str | None
) -> EncryptedField | None:
    """Build a triple from nullable row columns; None unless all are set."""
    if not (encrypted and iv and tag):
        return None
    return EncryptedField(content_encrypted=encrypted, content_iv=iv, content_tag=tag)
