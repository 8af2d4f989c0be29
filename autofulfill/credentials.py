"""
Account credential resolution.

Secrets are stored AES-256-GCM encrypted; the base64 blob is laid out as
tag (16 bytes) followed by the ciphertext, with a separate base64 IV.
"""

import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from autofulfill import config

TAG_LENGTH = 16


class CredentialError(Exception):
    """An account identity could not be resolved or decrypted."""


@dataclass(frozen=True)
class Identity:
    """Decrypted login handle and secret. Never persisted."""
    login: str
    secret: str = field(repr=False)


def _load_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except ValueError:
        raise CredentialError("AES key is not valid hex") from None
    if len(key) != 32:
        raise CredentialError("AES key must be 32 bytes (64 hex characters)")
    return key


def decrypt_secret(ciphertext: str, iv: str, key_hex: str) -> str:
    """Decrypt a stored secret. `ciphertext` and `iv` are base64 strings."""
    key = _load_key(key_hex)
    try:
        data = base64.b64decode(ciphertext)
        nonce = base64.b64decode(iv)
    except (ValueError, TypeError):
        raise CredentialError("Encrypted secret is not valid base64") from None

    if len(data) < TAG_LENGTH:
        raise CredentialError("Encrypted secret is too short")

    tag, body = data[:TAG_LENGTH], data[TAG_LENGTH:]
    try:
        # AESGCM expects ciphertext || tag
        plaintext = AESGCM(key).decrypt(nonce, body + tag, None)
    except InvalidTag:
        raise CredentialError("Secret failed authentication (wrong key or corrupted data)") from None
    except ValueError as e:
        # Bad nonce length and the like
        raise CredentialError(f"Encrypted secret cannot be decrypted: {e}") from None

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise CredentialError("Decrypted secret is not UTF-8 text") from None


def encrypt_secret(plaintext: str, key_hex: str, iv: bytes) -> Dict[str, str]:
    """Encrypt a secret into the stored layout. Used by provisioning scripts and tests."""
    key = _load_key(key_hex)
    ct_with_tag = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    body, tag = ct_with_tag[:-TAG_LENGTH], ct_with_tag[-TAG_LENGTH:]
    return {
        "passwordEncrypted": base64.b64encode(tag + body).decode("ascii"),
        "iv": base64.b64encode(iv).decode("ascii"),
    }


class FileCredentialResolver:
    """
    Resolves account references from a JSON file:

        {"<accountRef>": {"login": "...", "passwordEncrypted": "...", "iv": "..."}}
    """

    def __init__(self, path: Path = config.CREDENTIALS_FILE, key_hex: str = config.AES_SECRET_KEY):
        self.path = Path(path)
        self.key_hex = key_hex

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            raise CredentialError(f"Credentials file {self.path} not found")
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CredentialError(f"Credentials file is not valid JSON: {e}") from None
        return data if isinstance(data, dict) else {}

    def resolve(self, account_ref: str) -> Identity:
        if not self.key_hex:
            raise CredentialError("AES_SECRET_KEY is not configured")

        entry = self._load().get(account_ref)
        if not entry:
            raise CredentialError(f"No credentials stored for account '{account_ref}'")
        if not isinstance(entry, dict):
            raise CredentialError(f"Credentials for '{account_ref}' must be an object")

        try:
            login = entry["login"]
            encrypted = entry["passwordEncrypted"]
            iv = entry["iv"]
        except KeyError as e:
            raise CredentialError(f"Credentials for '{account_ref}' missing field {e}") from None

        return Identity(login=login, secret=decrypt_secret(encrypted, iv, self.key_hex))
