"""AES-256-GCM envelope for document bytes at rest.

The key for each job is derived from a per-job ``secret`` with PBKDF2-SHA256
over a fixed, deployment-wide salt. The salt only makes the derivation
reproducible; the secret stored in ``encryption_metadata`` is what protects
the ciphertext.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from secureprint.config import settings
from secureprint.errors import Tampered

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
FIXED_SALT = b"secure-print-link-salt"
KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16


@dataclass(frozen=True)
class Envelope:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    secret: str

    def metadata(self) -> dict:
        return {
            "algorithm": ALGORITHM,
            "kdf": "pbkdf2-sha256",
            "iterations": settings.pbkdf2_iterations,
            "secret": self.secret,
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "auth_tag": base64.b64encode(self.auth_tag).decode("ascii"),
        }

    def metadata_json(self) -> str:
        return json.dumps(self.metadata())


def derive_key(secret: str, iterations: int | None = None) -> bytes:
    # Not cached: a job's secret must not outlive its erased document.
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=FIXED_SALT,
        iterations=iterations or settings.pbkdf2_iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(data: bytes, secret: str) -> Envelope:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(derive_key(secret)).encrypt(iv, data, None)
    # cryptography appends the 16-byte tag to the ciphertext.
    return Envelope(
        ciphertext=sealed[:-TAG_LENGTH],
        iv=iv,
        auth_tag=sealed[-TAG_LENGTH:],
        secret=secret,
    )


def decrypt(ciphertext: bytes, iv: bytes, auth_tag: bytes, secret: str, iterations: int | None = None) -> bytes:
    """Open an envelope. Any failure is reported as :class:`Tampered`."""
    if len(iv) != IV_LENGTH or len(auth_tag) != TAG_LENGTH:
        raise Tampered()
    try:
        return AESGCM(derive_key(secret, iterations)).decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag:
        raise Tampered() from None


def _decode_bytes(value) -> bytes:
    # Older rows stored iv/authTag as JSON arrays of byte values.
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        return base64.b64decode(value)
    raise ValueError("unsupported byte encoding")


def open_envelope(ciphertext: bytes, metadata_json: str | None) -> bytes:
    if not metadata_json:
        raise Tampered()
    try:
        meta = json.loads(metadata_json)
        secret = meta["secret"]
        iv = _decode_bytes(meta["iv"])
        auth_tag = _decode_bytes(meta.get("auth_tag", meta.get("authTag")))
        iterations = int(meta.get("iterations") or settings.pbkdf2_iterations)
    except (ValueError, KeyError, TypeError):
        logger.error("Malformed encryption metadata")
        raise Tampered() from None
    return decrypt(ciphertext, iv, auth_tag, secret, iterations)
