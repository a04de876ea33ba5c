"""
Evidence Seal - Symmetric Encryption Engine

Authenticated encryption of evidence payloads:
- PBKDF2-HMAC-SHA256 key derivation from (identity, case id)
- AES-256-GCM with a fresh 96-bit nonce per encryption
- Metadata bound into the associated data so edits to it fail decryption

The key derivation is deterministic: the same identity and case always
produce the same key. That is a known weakness of the scheme and is logged
when a key is derived.
"""

import base64
import binascii
import hashlib
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.config import CipherConfig
from ..core.evidence import EncryptionKey, EncryptionMetadata
from ..core.exceptions import DecryptionFailure, EncryptionFailure

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_LENGTH = 16

_deterministic_key_warned = False


class SymmetricCipher:
    """
    AES-256-GCM encryption engine.

    Pure CPU work: no storage or network access. The instance remembers the
    nonces it has issued per key fingerprint and redraws on a collision, so
    a nonce is never reused under the same key within a process.
    """

    def __init__(
        self,
        kdf_iterations: int = 200_000,
        salt_prefix: str = "evidence-seal/v1",
    ):
        """Initialize cipher."""
        if kdf_iterations < 1:
            raise ValueError("kdf_iterations must be at least 1")
        self.kdf_iterations = kdf_iterations
        self.salt_prefix = salt_prefix
        self._issued_nonces: Dict[str, Set[bytes]] = {}

    @classmethod
    def from_config(cls, config: CipherConfig) -> "SymmetricCipher":
        return cls(
            kdf_iterations=config.kdf_iterations,
            salt_prefix=config.kdf_salt_prefix,
        )

    def derive_key(self, identity: str, case_id: str) -> EncryptionKey:
        """
        Derive the case key for an uploader.

        Args:
            identity: Uploader identity (email address); case-insensitive
            case_id: Case identifier

        Returns:
            Deterministic EncryptionKey

        Raises:
            EncryptionFailure: If identity or case id is empty
        """
        global _deterministic_key_warned

        identity = (identity or "").strip().lower()
        case_id = (case_id or "").strip()
        if not identity or not case_id:
            raise EncryptionFailure(
                "Key derivation requires identity and case id",
                stage="derive_key",
                algorithm="PBKDF2-HMAC-SHA256",
            )

        salt = hashlib.sha256(
            f"{self.salt_prefix}|{case_id}".encode("utf-8")
        ).digest()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.kdf_iterations,
        )
        try:
            material = kdf.derive(identity.encode("utf-8"))
        except Exception as e:
            raise EncryptionFailure(
                f"Key derivation failed: {e}",
                stage="derive_key",
                algorithm="PBKDF2-HMAC-SHA256",
            ) from e

        if not _deterministic_key_warned:
            logger.warning(
                "Encryption keys are derived deterministically from "
                "(identity, case id); anyone who knows both can derive the key"
            )
            _deterministic_key_warned = True

        return EncryptionKey(material=material, identity=identity, case_id=case_id)

    def _fresh_nonce(self, key: EncryptionKey) -> bytes:
        issued = self._issued_nonces.setdefault(key.fingerprint(), set())
        while True:
            nonce = os.urandom(NONCE_SIZE)
            if nonce not in issued:
                issued.add(nonce)
                return nonce
            logger.warning("Nonce collision detected, drawing a new nonce")

    def encrypt(
        self,
        data: bytes,
        key: EncryptionKey,
        original_name: str = "",
    ) -> Tuple[bytes, EncryptionMetadata]:
        """
        Encrypt a payload.

        Args:
            data: Plaintext bytes
            key: Key from derive_key
            original_name: File name restored on decrypt

        Returns:
            Tuple of (ciphertext with embedded tag, metadata)

        Raises:
            EncryptionFailure: On invalid key material or cipher error
        """
        if len(key.material) != KEY_SIZE:
            raise EncryptionFailure(
                f"Key must be {KEY_SIZE} bytes, got {len(key.material)}",
                stage="encrypt",
                algorithm=ALGORITHM,
            )
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise EncryptionFailure(
                f"Cannot encrypt object of type {type(data).__name__}",
                stage="encrypt",
                algorithm=ALGORITHM,
            )

        nonce = self._fresh_nonce(key)
        metadata = EncryptionMetadata(
            algorithm=ALGORITHM,
            iv=base64.b64encode(nonce).decode("ascii"),
            tag_length=TAG_LENGTH,
            original_name=original_name,
            original_size=len(data),
            created_at=datetime.now(timezone.utc),
            key_fingerprint=key.fingerprint(),
        )

        try:
            ciphertext = AESGCM(key.material).encrypt(
                nonce, bytes(data), metadata.associated_data()
            )
        except Exception as e:
            raise EncryptionFailure(
                f"Encryption failed: {e}",
                stage="encrypt",
                algorithm=ALGORITHM,
            ) from e

        return ciphertext, metadata

    def decrypt(
        self,
        ciphertext: bytes,
        metadata: EncryptionMetadata,
        key: EncryptionKey,
        file_id: Optional[str] = None,
    ) -> bytes:
        """
        Decrypt and authenticate a payload.

        Raises:
            DecryptionFailure: On tag mismatch, wrong key, tampered or
                malformed metadata, or size mismatch
        """
        if metadata.algorithm != ALGORITHM:
            raise DecryptionFailure(
                f"Unsupported algorithm: {metadata.algorithm}",
                reason=DecryptionFailure.MALFORMED_METADATA,
                file_id=file_id,
            )
        if metadata.tag_length != TAG_LENGTH:
            raise DecryptionFailure(
                f"Unsupported tag length: {metadata.tag_length}",
                reason=DecryptionFailure.MALFORMED_METADATA,
                file_id=file_id,
            )

        try:
            nonce = metadata.iv_bytes
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailure(
                f"IV is not valid base64: {e}",
                reason=DecryptionFailure.MALFORMED_METADATA,
                file_id=file_id,
            ) from e
        if len(nonce) != NONCE_SIZE:
            raise DecryptionFailure(
                f"IV must be {NONCE_SIZE} bytes, got {len(nonce)}",
                reason=DecryptionFailure.MALFORMED_METADATA,
                file_id=file_id,
            )

        if len(key.material) != KEY_SIZE:
            raise DecryptionFailure(
                "Key material has wrong length",
                reason=DecryptionFailure.MALFORMED_METADATA,
                file_id=file_id,
            )

        try:
            plaintext = AESGCM(key.material).decrypt(
                nonce, bytes(ciphertext), metadata.associated_data()
            )
        except InvalidTag as e:
            raise DecryptionFailure(
                "Authentication failed: ciphertext, key or metadata do not match",
                reason=DecryptionFailure.AUTHENTICATION_FAILED,
                file_id=file_id,
            ) from e

        if len(plaintext) != metadata.original_size:
            raise DecryptionFailure(
                f"Decrypted {len(plaintext)} bytes, expected {metadata.original_size}",
                reason=DecryptionFailure.SIZE_MISMATCH,
                file_id=file_id,
            )

        return plaintext


__all__ = [
    "SymmetricCipher",
    "ALGORITHM",
    "KEY_SIZE",
    "NONCE_SIZE",
    "TAG_LENGTH",
]
