"""
Adaptive QR rendering for compact record payloads.

Parameters follow payload size:
- Width grows in 20px steps from 100px (<=100 bytes) to a 180px cap (>400 bytes)
- Error correction H below 100 bytes, L above 300 bytes, M otherwise

Anything the encoder cannot fit raises CapacityExceeded. Only the pedigree
code degrades on its own, to the image-only reference [0].
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q
from qrcode.exceptions import DataOverflowError

from requiform.codec import (
    compact_json,
    complete_payload,
    patient_payload,
    pedigree_payload,
    phenotype_payload,
)
from requiform.errors import CapacityExceeded, MalformedInput
from requiform.models import load_record

logger = logging.getLogger(__name__)

BASE_SIZE = 100
MAX_SIZE = 180
DEFAULT_PAYLOAD_CEILING = 4000
DATA_URL_PREFIX = "data:image/png;base64,"

_ECC = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}


@dataclass(frozen=True)
class QrOptions:
    """Caller overrides; None means derive from payload size."""

    width: Optional[int] = None
    margin: int = 1
    dark: str = "#000000"
    light: str = "#FFFFFF"
    error_correction: Optional[str] = None


def size_for(byte_length: int, base_size: int = BASE_SIZE) -> int:
    """Rendered width in pixels for a payload of byte_length bytes."""
    size = base_size
    if byte_length > 100:
        size = min(base_size + 20, 120)
    if byte_length > 200:
        size = min(base_size + 40, 140)
    if byte_length > 300:
        size = min(base_size + 60, 160)
    if byte_length > 400:
        size = min(base_size + 80, MAX_SIZE)
    return size


def error_correction_for(byte_length: int) -> str:
    if byte_length > 300:
        return "L"
    if byte_length < 100:
        return "H"
    return "M"


def _payload_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return compact_json(payload)


def render(
    payload: Any,
    options: Optional[QrOptions] = None,
    ceiling: int = DEFAULT_PAYLOAD_CEILING,
) -> str:
    """
    Render payload as a PNG data URL.

    Args:
        payload: Text, or any JSON value (serialised without whitespace)
        options: Overrides for width, margin, colours and error correction
        ceiling: Largest payload in characters accepted for one code

    Raises:
        CapacityExceeded: If the payload is above the ceiling or does not fit
        MalformedInput: If the error correction override is not L/M/Q/H
    """
    options = options or QrOptions()
    text = _payload_text(payload)
    if len(text) > ceiling:
        raise CapacityExceeded(f"QR payload of {len(text)} characters exceeds ceiling of {ceiling}")

    byte_length = len(text.encode("utf-8"))
    width = options.width or size_for(byte_length)
    level = (options.error_correction or error_correction_for(byte_length)).upper()
    if level not in _ECC:
        raise MalformedInput(f"Unknown error correction level: {level!r}")
    logger.debug(f"QR payload {byte_length} bytes -> {width}px, level {level}")

    qr = qrcode.QRCode(version=None, error_correction=_ECC[level], box_size=1, border=options.margin)
    qr.add_data(text)
    try:
        qr.make(fit=True)
    except (DataOverflowError, ValueError) as e:
        # qrcode 8 raises a plain ValueError past version 40
        logger.error(f"QR encoder cannot fit {byte_length} bytes at level {level}")
        raise CapacityExceeded(f"QR code generation failed: {byte_length} bytes do not fit at level {level}") from e

    img = qr.make_image(fill_color=options.dark, back_color=options.light).get_image()
    img = img.resize((width, width), Image.NEAREST)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return DATA_URL_PREFIX + base64.b64encode(buf.getvalue()).decode("ascii")


def data_url_to_png(data_url: str) -> bytes:
    if not isinstance(data_url, str) or not data_url.startswith(DATA_URL_PREFIX):
        raise MalformedInput("not a PNG data URL")
    return base64.b64decode(data_url[len(DATA_URL_PREFIX):])


def patient_qr(
    personal_info: Any,
    selected_panels: Optional[Sequence[str]] = None,
    options: Optional[QrOptions] = None,
    ceiling: int = DEFAULT_PAYLOAD_CEILING,
) -> str:
    payload = patient_payload(personal_info, selected_panels)
    return render(payload, options, ceiling)


def phenotype_qr(
    observations: Sequence[Any],
    options: Optional[QrOptions] = None,
    ceiling: int = DEFAULT_PAYLOAD_CEILING,
) -> str:
    payload = phenotype_payload(observations)
    return render(payload, options, ceiling)


def pedigree_qr(
    pedigree: Any,
    image_only: bool = False,
    options: Optional[QrOptions] = None,
    ceiling: int = DEFAULT_PAYLOAD_CEILING,
) -> str:
    """
    Pedigree code, degrading to the image-only reference when the structured
    table is above the ceiling or does not fit.
    """
    payload = pedigree_payload(pedigree, image_only=image_only)
    text = compact_json(payload)
    if len(text) > ceiling:
        logger.warning(f"Pedigree payload of {len(text)} characters exceeds {ceiling}; using image reference")
        return render(pedigree_payload(None, image_only=True), options, ceiling)
    try:
        return render(text, options, ceiling)
    except CapacityExceeded:
        if image_only:
            raise
        logger.warning("Pedigree table does not fit in a QR code; using image reference")
        return render(pedigree_payload(None, image_only=True), options, ceiling)


def complete_qr(
    record: Any,
    options: Optional[QrOptions] = None,
    ceiling: int = DEFAULT_PAYLOAD_CEILING,
) -> str:
    return render(complete_payload(record), options, ceiling)


def qr_sheet(
    record: Any,
    options: Optional[QrOptions] = None,
    ceiling: int = DEFAULT_PAYLOAD_CEILING,
) -> Dict[str, str]:
    """
    Per-page codes for the PDF export: patient, phenotype and (when the record
    has one) pedigree.
    """
    record = load_record(record)
    sheet = {
        "patient": patient_qr(record.personal_info, record.selected_panels, options, ceiling),
        "phenotype": phenotype_qr(record.phenotype_observations, options, ceiling),
    }
    if record.pedigree is not None:
        sheet["pedigree"] = pedigree_qr(record.pedigree, options=options, ceiling=ceiling)
    return sheet
