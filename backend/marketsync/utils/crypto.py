from __future__ import annotations

"""Encryption helpers for marketplace credential bundles at rest.

Credential bundles (refresh tokens, client secrets, API keys) are serialized to
JSON and wrapped with AES-GCM using a key derived from the application secret.

The stored format is:

    ENC:v1:<base64(nonce || ciphertext || tag)>

``decrypt`` returns values without the prefix unchanged so rows written before
encryption was enabled keep working.
"""

import base64
import json
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from marketsync.config import settings


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key


def _get_key() -> bytes:
    base = settings.credentials_secret.encode("utf-8")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"marketsync-credentials",
    )
    return hkdf.derive(base)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string value using AES-GCM. ``None`` passes through."""

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)

    blob = base64.b64encode(nonce + ct).decode("ascii")
    return _PREFIX + blob


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    Plain values (no prefix) are returned unchanged. A value that carries the
    prefix but does not decrypt raises ``ValueError``: a credential bundle we
    cannot read must not be sent to a marketplace as-is.
    """

    if value is None:
        return None
    if not value.startswith(_PREFIX):
        return value

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
    except (ValueError, TypeError) as exc:
        raise ValueError("Malformed encrypted value") from exc
    if len(raw) <= _NONCE_SIZE:
        raise ValueError("Malformed encrypted value")

    nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    try:
        pt_bytes = AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None)
    except InvalidTag as exc:
        raise ValueError("Encrypted value could not be decrypted with the current key") from exc
    return pt_bytes.decode("utf-8")


def encrypt_credentials(credentials: Optional[Dict[str, Any]]) -> str:
    return encrypt(json.dumps(credentials or {}, sort_keys=True))


def decrypt_credentials(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    plaintext = decrypt(value)
    data = json.loads(plaintext)
    if not isinstance(data, dict):
        raise ValueError("Credential bundle must be a JSON object")
    return data
