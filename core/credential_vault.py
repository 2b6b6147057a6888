"""
Credential vault for tenant secrets at rest.

Secrets are sealed with AES-256-GCM under a key derived per message from the
process master secret and a random salt (PBKDF2-HMAC-SHA512). The vault also
provides HMAC-SHA256 signing for webhook callbacks and random token generation.

Envelope layout (after base64 decoding):

    salt(64) || iv(16) || tag(16) || ciphertext

New envelopes are prefixed with ``v1:``. Untagged strings are read with the
same layout so ciphertext written before the tag existed still decrypts.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000

TAG_POSITION = SALT_LENGTH + IV_LENGTH
CIPHERTEXT_POSITION = TAG_POSITION + TAG_LENGTH

ENVELOPE_VERSION = "v1"
WEBHOOK_TOLERANCE_SECONDS = 300


def _canonical_bytes(payload: Any) -> bytes:
    # Raw bodies are signed as received; JSON re-serialization is only a
    # fallback and need not match other serializers (e.g. 1.0 vs 1)
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class CredentialVault:
    """Encrypts, decrypts and signs tenant secrets."""

    def __init__(self, master_key: Optional[str] = None, previous_keys: Optional[List[str]] = None):
        self.master_key = master_key or os.getenv("CREDENTIAL_MASTER_KEY")
        if not self.master_key:
            raise ConfigurationError("CREDENTIAL_MASTER_KEY environment variable is required")

        if previous_keys is None:
            raw = os.getenv("CREDENTIAL_MASTER_KEY_PREVIOUS", "")
            previous_keys = [key.strip() for key in raw.split(",") if key.strip()]
        # Current key first; previous keys only for reading old envelopes
        self._decrypt_keys = [self.master_key] + [k for k in previous_keys if k != self.master_key]

    @staticmethod
    def _derive_key(master_key: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(master_key.encode("utf-8"))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a secret into a versioned envelope.

        Args:
            plaintext: Secret to protect

        Returns:
            ``v1:`` prefixed base64 envelope, or None for empty input
        """
        if not plaintext:
            return None

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(self.master_key, salt)

        # AESGCM appends the tag to the ciphertext; the envelope stores it first
        sealed = AESGCM(key).encrypt(iv, str(plaintext).encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        blob = base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")
        return f"{ENVELOPE_VERSION}:{blob}"

    def decrypt(self, envelope: Optional[str]) -> Optional[str]:
        """
        Decrypt an envelope produced by :meth:`encrypt`.

        Returns None on any failure (malformed input, tampering, wrong key).
        """
        if not envelope:
            return None
        if not isinstance(envelope, str):
            logger.warning("Credential envelope has unsupported type %s", type(envelope).__name__)
            return None

        try:
            version, blob = self._split_version(envelope)
            if version != ENVELOPE_VERSION:
                logger.warning("Unsupported credential envelope version: %s", version)
                return None

            raw = base64.b64decode(blob, validate=True)
            if len(raw) <= CIPHERTEXT_POSITION:
                logger.warning("Credential envelope too short (%d bytes)", len(raw))
                return None

            salt = raw[:SALT_LENGTH]
            iv = raw[SALT_LENGTH:TAG_POSITION]
            tag = raw[TAG_POSITION:CIPHERTEXT_POSITION]
            ciphertext = raw[CIPHERTEXT_POSITION:]

            for master_key in self._decrypt_keys:
                key = self._derive_key(master_key, salt)
                try:
                    plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
                except InvalidTag:
                    continue
                return plaintext.decode("utf-8")

            logger.warning("Credential decryption failed: authentication tag mismatch")
            return None
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            logger.warning("Credential decryption failed: %s", type(e).__name__)
            return None

    @staticmethod
    def _split_version(envelope: str):
        prefix, sep, rest = envelope.partition(":")
        if sep:
            return prefix, rest
        # Legacy envelopes carry no tag; base64 never contains ':'
        return ENVELOPE_VERSION, envelope

    def encrypt_mapping(self, values: Optional[Dict[str, Any]]) -> Dict[str, str]:
        """Encrypt every non-empty value of a credentials mapping."""
        sealed = {}
        for name, value in (values or {}).items():
            envelope = self.encrypt(None if value is None else str(value))
            if envelope:
                sealed[name] = envelope
        return sealed

    def decrypt_mapping(self, values: Optional[Dict[str, str]]) -> Dict[str, Optional[str]]:
        """Decrypt a mapping produced by :meth:`encrypt_mapping`; failures map to None."""
        return {name: self.decrypt(envelope) for name, envelope in (values or {}).items()}

    @staticmethod
    def generate_token(byte_length: int = 32) -> str:
        """Generate a hex encoded cryptographically secure token."""
        return secrets.token_hex(byte_length)

    @staticmethod
    def sign_payload(payload: Any, secret: str) -> str:
        """
        HMAC-SHA256 of the payload.

        Bytes are signed as is and strings as UTF-8. Other values are signed as
        compact JSON, so callers verifying third-party signatures should pass the
        raw request body rather than a parsed object.
        """
        return hmac.new(secret.encode("utf-8"), _canonical_bytes(payload), hashlib.sha256).hexdigest()

    @classmethod
    def verify_signature(cls, payload: Any, signature: Optional[str], secret: str) -> bool:
        """Constant-time check of a hex signature. Never raises."""
        if not signature or not secret:
            return False
        try:
            expected = cls.sign_payload(payload, secret)
        except (TypeError, ValueError):
            return False
        try:
            provided = signature.encode("ascii")
        except (UnicodeEncodeError, AttributeError):
            return False
        return hmac.compare_digest(provided, expected.encode("ascii"))

    @classmethod
    def verify_timestamped_signature(
        cls,
        payload: Any,
        signature: Optional[str],
        timestamp: Optional[str],
        secret: str,
        tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
        now: Optional[float] = None,
    ) -> bool:
        """
        Verify a webhook signature computed over ``"{timestamp}.{payload}"``.

        Args:
            payload: Raw request body (bytes or str); other values are signed as compact JSON
            signature: Hex signature from the caller
            timestamp: Unix timestamp (seconds) the caller signed
            secret: Shared signing secret
            tolerance: Allowed clock skew in seconds
            now: Current time override

        Returns:
            True only when the timestamp is fresh and the signature matches
        """
        if not timestamp:
            return False
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            return False

        current = int(now if now is not None else time.time())
        if abs(current - sent_at) > tolerance:
            return False

        try:
            message = f"{timestamp}.".encode("utf-8") + _canonical_bytes(payload)
        except (TypeError, ValueError):
            return False
        return cls.verify_signature(message, signature, secret)
