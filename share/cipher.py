"""
Password-protected link cipher.

Scheme: pbkdf2-sha256-aes256gcm-v1
    key   = PBKDF2-HMAC-SHA256(password, salt, 100_000 iterations, 32 bytes)
    token = base64url_nopad(salt[16] || nonce[12] || AES-256-GCM(key, nonce, plaintext) || tag[16])

A fresh salt and nonce are drawn for every encryption. The iteration count is
the brute-force cost of a leaked link; it must not be lowered without
revisiting the threat model.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from requiform.errors import (
    AuthenticationFailed,
    CapacityExceeded,
    EncryptionFailed,
    InvalidInputFormat,
    MissingPassword,
    MissingPlaintext,
)

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_LEN = 16
NONCE_LEN = 12  # 96-bit GCM nonce
KEY_LEN = 32  # AES-256
MIN_PACKAGE_LEN = SALT_LEN + NONCE_LEN
MAX_INPUT_LENGTH = 10 * 1024 * 1024  # 10 MiB of token text

Password = Union[str, bytes]


def b64u_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64u_decode(s: str) -> bytes:
    """Decode standard or URL-safe base64, with or without padding."""
    std = s.strip().replace("-", "+").replace("_", "/")
    std += "=" * (-len(std) % 4)
    return base64.b64decode(std, validate=True)


def _password_bytes(password: Password) -> bytes:
    return password.encode("utf-8") if isinstance(password, str) else bytes(password)


def derive_key(password: Password, salt: bytes) -> bytes:
    """Derive the 256-bit AES key for (password, salt)."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LEN,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(_password_bytes(password))


def encrypt_data(plaintext: str, password: Password) -> str:
    """
    Encrypt a string into a URL-safe token.

    Raises:
        MissingPassword: If password is empty
        MissingPlaintext: If plaintext is not a string (the empty string is fine)
        EncryptionFailed: If the underlying primitive fails
    """
    if not password:
        logger.warning("encrypt_data called without a password")
        raise MissingPassword("Password is required for encryption.")
    if not isinstance(plaintext, str):
        logger.warning("encrypt_data called with non-string input")
        raise MissingPlaintext("Input data must be a string.")
    try:
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        key = derive_key(password, salt)
        ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    except Exception as e:
        logger.error(f"Encryption failed: {type(e).__name__}")
        raise EncryptionFailed("Encryption process failed.") from e
    return b64u_encode(salt + nonce + ct)


def decrypt_data(token: str, password: Password) -> str:
    """
    Decrypt a token produced by encrypt_data.

    Wrong password and tampered data both raise AuthenticationFailed with the
    same message.

    Raises:
        MissingPassword: If password is empty
        CapacityExceeded: If the token is longer than MAX_INPUT_LENGTH
        InvalidInputFormat: If the token is not base64 or is too short
        AuthenticationFailed: If the integrity check fails
    """
    if not password:
        logger.warning("decrypt_data called without a password")
        raise MissingPassword("Password is required for decryption.")
    if not isinstance(token, str) or not token:
        raise InvalidInputFormat("Invalid encrypted data provided.")
    if len(token) > MAX_INPUT_LENGTH:
        raise CapacityExceeded(
            f"Encrypted data exceeds maximum allowed size of {MAX_INPUT_LENGTH // (1024 * 1024)}MB."
        )

    try:
        blob = b64u_decode(token)
    except (binascii.Error, ValueError):
        logger.error("Base64 decoding failed during decryption attempt")
        raise InvalidInputFormat("Decryption failed: Invalid data format.") from None

    if len(blob) < MIN_PACKAGE_LEN:
        logger.error(f"Decryption failed: data length {len(blob)} is below minimum {MIN_PACKAGE_LEN}")
        raise InvalidInputFormat("Decryption failed: Data appears incomplete or corrupted.")

    salt, nonce, ct = blob[:SALT_LEN], blob[SALT_LEN:MIN_PACKAGE_LEN], blob[MIN_PACKAGE_LEN:]
    try:
        key = derive_key(password, salt)
        return AESGCM(key).decrypt(nonce, ct, None).decode("utf-8")
    except (InvalidTag, ValueError):
        logger.warning("Decryption failed during crypto operation")
        raise AuthenticationFailed() from None


async def encrypt_data_async(plaintext: str, password: Password) -> str:
    """encrypt_data off the event loop thread."""
    return await asyncio.to_thread(encrypt_data, plaintext, password)


async def decrypt_data_async(token: str, password: Password) -> str:
    """decrypt_data off the event loop thread."""
    return await asyncio.to_thread(decrypt_data, token, password)
