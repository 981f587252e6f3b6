"""
Error taxonomy for the codec and sharing layers.

Individual elements skipped during decoding are not errors: they are reported
as WARNING records through the injected logger and the caller keeps the
best-effort result.
"""

from __future__ import annotations


class RequiFormError(Exception):
    """Base class for every error raised by requiform and share."""
    pass


class MalformedInput(RequiFormError, ValueError):
    """Shape or type violation caught before any lossy or cryptographic work."""
    pass


class UnsupportedVersion(RequiFormError):
    """Envelope version, type code or pedigree format code is not recognised."""
    pass


class CapacityExceeded(RequiFormError):
    """Payload too large for reliable QR rendering or above an input ceiling."""
    pass


class CipherError(RequiFormError):
    """Base class for link cipher failures."""
    pass


class MissingPassword(CipherError, ValueError):
    pass


class MissingPlaintext(CipherError, ValueError):
    pass


class InvalidInputFormat(CipherError):
    """Token is not decodable as base64 or is shorter than salt + nonce."""
    pass


class AuthenticationFailed(CipherError):
    """
    Integrity check failed.

    Wrong password and tampered ciphertext both end here with the same
    message; callers cannot tell the two apart.
    """

    MESSAGE = "Decryption failed. Please check the password or the link may be corrupted."

    def __init__(self, message: str = MESSAGE):
        super().__init__(message)


class EncryptionFailed(CipherError):
    pass
