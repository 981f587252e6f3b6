"""
URL parameter packager.

Incoming links may carry data in the query string (old links only), the hash
fragment, or both; on a key collision the hash wins because it is the channel
rewritten client-side. The merged parameters are then classified, in this
order, into exactly one shape:

1. UnifiedShape   - ``data`` holds a JSON object (current nested format)
2. EncryptedShape - ``encrypted`` holds a link cipher token; no record until a password is given
3. LegacyShape    - flat individual keys (``givenName``, ``familyName``, ...)

New links are only ever written as ``#data=`` or ``#encrypted=``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import quote, unquote, unquote_plus, urlsplit, urlunsplit

from requiform.codec import compact_json
from requiform.errors import CapacityExceeded, MalformedInput
from requiform.models import ClinicalRecord, load_record
from share.cipher import Password, decrypt_data, decrypt_data_async, encrypt_data, encrypt_data_async
from share.settings import Settings

logger = logging.getLogger(__name__)

# Flat parameter name -> unified personalInfo field
LEGACY_FIELD_MAP = {
    "givenName": "firstName",
    "firstName": "firstName",
    "familyName": "lastName",
    "lastName": "lastName",
    "birthdate": "birthdate",
    "sex": "sex",
    "insurance": "insurance",
    "insuranceId": "insuranceId",
    "physicianName": "referrer",
    "referrer": "referrer",
    "diagnosis": "diagnosis",
}
LEGACY_PANEL_KEYS = ("selectedTests", "selectedPanels")

# Values that may contain a literal "+" (JSON, base64) are not plus-decoded
_RAW_KEYS = {"data", "encrypted", "password"}


class UrlChannel(str, Enum):
    NO_DATA = "no_data"
    QUERY_ONLY = "query_only"
    HASH_ONLY = "hash_only"
    BOTH = "both"


@dataclass(frozen=True)
class UnifiedShape:
    record: ClinicalRecord


@dataclass(frozen=True)
class EncryptedShape:
    token: str
    password: Optional[str] = None


@dataclass(frozen=True)
class LegacyShape:
    record: ClinicalRecord


UrlShape = Union[UnifiedShape, EncryptedShape, LegacyShape]


def parse_parameters(s: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for part in s.lstrip("?#").split("&"):
        if not part:
            continue
        key, _, value = part.partition("=")
        key = unquote_plus(key)
        params[key] = unquote(value) if key in _RAW_KEYS else unquote_plus(value)
    return params


def merge_parameters(query: str, fragment: str) -> Dict[str, str]:
    """Query parameters overlaid with hash parameters (hash wins)."""
    merged = parse_parameters(query or "")
    merged.update(parse_parameters(fragment or ""))
    return merged


def channel_of(query: str, fragment: str) -> UrlChannel:
    has_query = bool(parse_parameters(query or ""))
    has_hash = bool(parse_parameters(fragment or ""))
    if has_query and has_hash:
        return UrlChannel.BOTH
    if has_query:
        return UrlChannel.QUERY_ONLY
    if has_hash:
        return UrlChannel.HASH_ONLY
    return UrlChannel.NO_DATA


def _check_length(name: str, value: str, limit: int) -> None:
    if len(value) > limit:
        logger.warning(f"Incoming {name!r} parameter length {len(value)} exceeds maximum {limit}")
        raise CapacityExceeded(f"Input data is too large ({name}).")


def _legacy_record(params: Dict[str, str]) -> Optional[ClinicalRecord]:
    personal = {}
    for key, field in LEGACY_FIELD_MAP.items():
        if params.get(key) and not personal.get(field):
            personal[field] = params[key]
    panels = next((params[k] for k in LEGACY_PANEL_KEYS if params.get(k)), "")
    category = params.get("category", "")
    if not personal and not panels and not category:
        return None
    return load_record({"personalInfo": personal, "selectedPanels": panels, "category": category})


def classify(params: Dict[str, str], max_param_length: int = Settings.MAX_PARAM_LENGTH) -> Optional[UrlShape]:
    """
    Decide which shape the merged parameters carry.

    Raises:
        CapacityExceeded: If data/encrypted is longer than max_param_length
        MalformedInput: If a JSON object under data is not a record
    """
    data = params.get("data")
    if data:
        _check_length("data", data, max_param_length)
        try:
            obj = json.loads(data)
        except ValueError:
            obj = None
        if isinstance(obj, dict):
            logger.debug("URL carries unified data")
            return UnifiedShape(record=load_record(obj))
        logger.warning("Ignoring 'data' parameter that is not a JSON object")

    encrypted = params.get("encrypted")
    if encrypted:
        _check_length("encrypted", encrypted, max_param_length)
        logger.debug("URL carries encrypted data; password required")
        return EncryptedShape(token=encrypted, password=params.get("password") or None)

    record = _legacy_record(params)
    if record is not None:
        logger.debug("URL carries legacy flat parameters")
        return LegacyShape(record=record)
    return None


def read_url(url: str, settings: Optional[Settings] = None) -> Optional[UrlShape]:
    """
    Classify the data carried by an incoming URL, or None when there is none.

    Raises:
        CapacityExceeded: If the URL or one of its data parameters is too long
    """
    settings = settings or Settings()
    if len(url) > settings.MAX_URL_LENGTH:
        logger.warning(f"Incoming URL length {len(url)} exceeds maximum {settings.MAX_URL_LENGTH}")
        raise CapacityExceeded("URL is too long to process.")
    parts = urlsplit(url)
    params = merge_parameters(parts.query, parts.fragment)
    logger.debug(f"URL channel: {channel_of(parts.query, parts.fragment).value}")
    return classify(params, settings.MAX_PARAM_LENGTH)


def _record_from_plaintext(plaintext: str) -> ClinicalRecord:
    try:
        obj = json.loads(plaintext)
    except ValueError as e:
        raise MalformedInput("Decrypted data is not JSON.") from e
    if not isinstance(obj, dict):
        raise MalformedInput("Decrypted data has an invalid structure.")
    return load_record(obj)


def open_encrypted(shape: EncryptedShape, password: Optional[Password] = None) -> ClinicalRecord:
    """Decrypt an encrypted link with the user's password (or one embedded in the link)."""
    return _record_from_plaintext(decrypt_data(shape.token, password or shape.password or ""))


async def open_encrypted_async(shape: EncryptedShape, password: Optional[Password] = None) -> ClinicalRecord:
    plaintext = await decrypt_data_async(shape.token, password or shape.password or "")
    return _record_from_plaintext(plaintext)


def strip_parameters(url: str) -> str:
    """Base URL without query string or fragment."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def prune_empty(obj: Any) -> Any:
    """Drop None, empty strings, empty lists and empty objects, recursively."""
    if isinstance(obj, list):
        out = []
        for item in obj:
            item = prune_empty(item)
            if isinstance(item, dict) and not item:
                continue
            out.append(item)
        return out
    if isinstance(obj, dict):
        result = {}
        for key, value in obj.items():
            if value is None or value == "" or (isinstance(value, list) and not value):
                continue
            value = prune_empty(value)
            if isinstance(value, (dict, list)) and not value:
                continue
            result[key] = value
        return result
    return obj


def _finish(url: str, settings: Settings) -> str:
    if len(url) > settings.LINK_WARN_LENGTH:
        logger.warning(
            f"Generated link length {len(url)} exceeds {settings.LINK_WARN_LENGTH} characters; "
            "it may not work everywhere"
        )
    return url


def pack_record(record: Any, base_url: Optional[str] = None, settings: Optional[Settings] = None) -> str:
    """Shareable link with the unified record in the hash: ``base#data=<json>``."""
    settings = settings or Settings()
    data = compact_json(prune_empty(load_record(record).to_unified()))
    base = strip_parameters(base_url or settings.BASE_URL)
    return _finish(f"{base}#data={quote(data, safe='')}", settings)


def pack_encrypted(
    record: Any,
    password: Password,
    base_url: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Password-protected link: ``base#encrypted=<token>``."""
    settings = settings or Settings()
    token = encrypt_data(compact_json(load_record(record).to_unified()), password)
    base = strip_parameters(base_url or settings.BASE_URL)
    return _finish(f"{base}#encrypted={token}", settings)


async def pack_encrypted_async(
    record: Any,
    password: Password,
    base_url: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or Settings()
    token = await encrypt_data_async(compact_json(load_record(record).to_unified()), password)
    base = strip_parameters(base_url or settings.BASE_URL)
    return _finish(f"{base}#encrypted={token}", settings)
