"""
Sharing configuration.

Environment variables control behavior:
- REQUIFORM_BASE_URL: Base address for generated links
- REQUIFORM_QR_PAYLOAD_CEILING: Largest payload (characters) rendered as one QR code (default: 4000)
- REQUIFORM_MAX_URL_LENGTH: Incoming URLs longer than this are refused (default: 20 KiB)
- REQUIFORM_MAX_PARAM_LENGTH: Incoming data/encrypted parameters longer than this are refused (default: 100 KiB)
- REQUIFORM_LINK_WARN_LENGTH: Generated links longer than this are logged as a warning (default: 2000)
- REQUIFORM_LOG_LEVEL: CLI log level (default: WARNING)

Key-derivation cost is not configurable; see share.cipher.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _opt(name: str, default: str) -> str:
    """Get optional environment variable with default."""
    return os.getenv(name, default)


def _opt_int(name: str, default: int) -> int:
    """Parse positive integer environment variable."""
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        n = int(v.strip())
    except ValueError:
        raise RuntimeError(f"Env var {name} must be an integer, got {v!r}") from None
    if n <= 0:
        raise RuntimeError(f"Env var {name} must be positive, got {n}")
    return n


@dataclass(frozen=True)
class Settings:
    """Ceilings and defaults for QR rendering and link handling."""

    BASE_URL: str = "https://requiform.local/"
    QR_PAYLOAD_CEILING: int = 4000
    MAX_URL_LENGTH: int = 20 * 1024
    MAX_PARAM_LENGTH: int = 100 * 1024
    LINK_WARN_LENGTH: int = 2000
    LOG_LEVEL: str = "WARNING"

    @staticmethod
    def load() -> Settings:
        """Load settings from environment variables."""
        return Settings(
            BASE_URL=_opt("REQUIFORM_BASE_URL", "https://requiform.local/"),
            QR_PAYLOAD_CEILING=_opt_int("REQUIFORM_QR_PAYLOAD_CEILING", 4000),
            MAX_URL_LENGTH=_opt_int("REQUIFORM_MAX_URL_LENGTH", 20 * 1024),
            MAX_PARAM_LENGTH=_opt_int("REQUIFORM_MAX_PARAM_LENGTH", 100 * 1024),
            LINK_WARN_LENGTH=_opt_int("REQUIFORM_LINK_WARN_LENGTH", 2000),
            LOG_LEVEL=_opt("REQUIFORM_LOG_LEVEL", "WARNING").upper(),
        )
