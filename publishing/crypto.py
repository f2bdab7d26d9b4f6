"""
Multipost Token Encryption
==========================
AES-256-GCM envelope encryption for OAuth tokens stored in text columns.

Envelope format (JSON text):
    {"iv": base64(12-byte nonce), "tag": base64(16-byte tag), "data": base64(ciphertext)}

The key is loaded once per process by init_encryption_key() and must decode to
exactly 32 bytes, either as 64 hex characters or as base64.
"""

import base64
import binascii
import json
import logging
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from . import config
from .errors import ConfigError, CredentialIntegrityError

logger = logging.getLogger("multipost-worker")

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")

_ENC_KEY: Optional[bytes] = None


def load_encryption_key(raw: str) -> bytes:
    """Decode a 32-byte key from hex-64 or base64 text."""
    raw = (raw or "").strip().strip('"')
    if not raw:
        raise ConfigError("TOKEN_ENCRYPTION_KEY is required")

    if _HEX_KEY.match(raw):
        key = bytes.fromhex(raw)
    else:
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigError("TOKEN_ENCRYPTION_KEY must be 32 bytes (hex or base64)")

    if len(key) != KEY_LENGTH:
        raise ConfigError("TOKEN_ENCRYPTION_KEY must be 32 bytes (hex or base64)")
    return key


def init_encryption_key(raw: Optional[str] = None) -> bytes:
    """Load the process-wide key. Called at worker/API startup."""
    global _ENC_KEY
    _ENC_KEY = load_encryption_key(raw if raw is not None else config.token_encryption_key_raw())
    return _ENC_KEY


def reset_encryption_key():
    global _ENC_KEY
    _ENC_KEY = None


def _get_key() -> bytes:
    if _ENC_KEY is None:
        return init_encryption_key()
    return _ENC_KEY


def encrypt_string(value: str, key: Optional[bytes] = None) -> str:
    """Encrypt text into a JSON envelope string."""
    aesgcm = AESGCM(key or _get_key())
    nonce = secrets.token_bytes(NONCE_LENGTH)
    sealed = aesgcm.encrypt(nonce, value.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return json.dumps(
        {
            "iv": base64.b64encode(nonce).decode("ascii"),
            "tag": base64.b64encode(tag).decode("ascii"),
            "data": base64.b64encode(ciphertext).decode("ascii"),
        },
        separators=(",", ":"),
    )


def _parse_envelope(value: str) -> Optional[dict]:
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    if not all(isinstance(parsed.get(k), str) for k in ("iv", "tag", "data")):
        return None
    return parsed


def is_encrypted_envelope(value: Optional[str]) -> bool:
    return value is not None and _parse_envelope(value) is not None


def decrypt_string(value: str, key: Optional[bytes] = None) -> str:
    """
    Decrypt a JSON envelope string.

    Fails closed: a bad tag, wrong key or undecodable field raises
    CredentialIntegrityError. Non-envelope input is legacy plaintext and is only
    returned when ALLOW_LEGACY_PLAINTEXT_TOKENS is enabled.
    """
    envelope = _parse_envelope(value)
    if envelope is None:
        if config.allow_legacy_plaintext_tokens():
            logger.warning("Legacy plaintext token read; re-encrypt it on next write")
            return value
        raise CredentialIntegrityError("Stored credential is not an encrypted envelope")

    try:
        nonce = base64.b64decode(envelope["iv"], validate=True)
        tag = base64.b64decode(envelope["tag"], validate=True)
        ciphertext = base64.b64decode(envelope["data"], validate=True)
    except (binascii.Error, ValueError):
        raise CredentialIntegrityError("Stored credential envelope is malformed")

    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        raise CredentialIntegrityError("Stored credential envelope is malformed")

    try:
        plaintext = AESGCM(key or _get_key()).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag:
        raise CredentialIntegrityError("Stored credential failed integrity check")
    except ValueError:
        # wrong key size
        raise CredentialIntegrityError("Stored credential could not be decrypted")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise CredentialIntegrityError("Stored credential could not be decoded")
