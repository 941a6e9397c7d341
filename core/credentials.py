"""
Channel credential resolution.

Channel configs store credentials either as a plain dict or sealed as
``{"encrypted": "<iv>:<tag>:<ciphertext>"}`` (hex parts, AES-256-GCM over
the JSON-encoded dict). The AES key is the first 32 bytes of the configured
encryption key.
"""
from __future__ import annotations

import json
import os
import structlog
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from models.schemas import ChannelConfig

logger = structlog.get_logger()

_IV_LENGTH = 16


class CredentialError(Exception):
    """Credentials are missing, malformed or cannot be decrypted."""


def _aes_key(encryption_key: str) -> bytes:
    if not encryption_key or len(encryption_key) < 32:
        raise CredentialError("ENCRYPTION_KEY must be at least 32 characters")
    return encryption_key[:32].encode("utf-8")


def seal_credentials(credentials: dict[str, Any], encryption_key: str) -> dict[str, str]:
    """Inverse of StoredCredentialResolver.resolve for encrypted configs."""
    iv = os.urandom(_IV_LENGTH)
    sealed = AESGCM(_aes_key(encryption_key)).encrypt(iv, json.dumps(credentials).encode(), None)
    ciphertext, tag = sealed[:-16], sealed[-16:]
    return {"encrypted": f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"}


class StoredCredentialResolver:
    """
    Usage:
        resolver = StoredCredentialResolver(settings.credentials.encryption_key)
        creds = resolver.resolve(channel_config)
    """

    def __init__(self, encryption_key: str = ""):
        self.encryption_key = encryption_key

    def resolve(self, config: ChannelConfig) -> dict[str, Any]:
        creds = config.credentials or {}
        if not creds:
            raise CredentialError(f"Channel config {config.id} has no credentials")
        if "encrypted" not in creds:
            return dict(creds)
        return self._decrypt(config.id, creds["encrypted"])

    def _decrypt(self, config_id: str, blob: Any) -> dict[str, Any]:
        parts = blob.split(":") if isinstance(blob, str) else []
        if len(parts) != 3:
            raise CredentialError(f"Channel config {config_id}: invalid encrypted credential format")

        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise CredentialError(f"Channel config {config_id}: credentials are not hex") from e

        try:
            plaintext = AESGCM(_aes_key(self.encryption_key)).decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as e:
            logger.error("credential_decrypt_failed", config_id=config_id)
            raise CredentialError(f"Channel config {config_id}: credentials could not be decrypted") from e

        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise CredentialError(f"Channel config {config_id}: decrypted credentials are not JSON") from e
        if not isinstance(data, dict):
            raise CredentialError(f"Channel config {config_id}: decrypted credentials are not an object")
        return data
