"""
Pasted-text import.

Reads "Key: value" (or "key=value") lines into a ClinicalRecord:

    First Name: Jane
    Last Name: Doe
    Birthdate: 1990-05-15
    Panels: nephronophthise, alport_thin_basement
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List

from pydantic import ValidationError

from requiform.errors import MalformedInput
from requiform.models import ClinicalRecord

logger = logging.getLogger(__name__)

_SEPARATOR = re.compile(r"[:=]")

# key (lowercased) -> (section, field)
FIELD_SYNONYMS = {
    "first name": ("personalInfo", "firstName"),
    "firstname": ("personalInfo", "firstName"),
    "given name": ("personalInfo", "firstName"),
    "givenname": ("personalInfo", "firstName"),
    "last name": ("personalInfo", "lastName"),
    "lastname": ("personalInfo", "lastName"),
    "family name": ("personalInfo", "lastName"),
    "familyname": ("personalInfo", "lastName"),
    "birth date": ("personalInfo", "birthdate"),
    "birthdate": ("personalInfo", "birthdate"),
    "date of birth": ("personalInfo", "birthdate"),
    "dob": ("personalInfo", "birthdate"),
    "sex": ("personalInfo", "sex"),
    "gender": ("personalInfo", "sex"),
    "insurance": ("personalInfo", "insurance"),
    "insurance provider": ("personalInfo", "insurance"),
    "insurance id": ("personalInfo", "insuranceId"),
    "insuranceid": ("personalInfo", "insuranceId"),
    "physician": ("personalInfo", "referrer"),
    "physician name": ("personalInfo", "referrer"),
    "doctor": ("personalInfo", "referrer"),
    "referrer": ("personalInfo", "referrer"),
    "referring physician": ("personalInfo", "referrer"),
    "diagnosis": ("personalInfo", "diagnosis"),
    "clinical diagnosis": ("personalInfo", "diagnosis"),
    "panels": ("special", "panels"),
    "selected panels": ("special", "panels"),
    "tests": ("special", "panels"),
    "selected tests": ("special", "panels"),
    "category": ("root", "category"),
    "phenotypes": ("special", "phenotypes"),
}

EXAMPLE_TEXT = """First Name: Jane
Last Name: Doe
Birthdate: 1990-05-15
Sex: female
Insurance: ABC Health
Physician: Dr. Smith
Diagnosis: Suspected Renal Disease
Panels: nephronophthise, alport_thin_basement, cystic_kidney_disease"""


def parse_pasted_text(text: str) -> ClinicalRecord:
    """
    Parse pasted key/value lines.

    Unknown keys and lines without a separator are ignored. At least one
    personal field must be recognised.

    Raises:
        MalformedInput: If the text is empty or carries no personal info
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedInput("No data provided. Please paste your data into the text area.")

    personal: Dict[str, str] = {}
    result: Dict[str, Any] = {"selectedPanels": [], "phenotypeObservations": [], "category": ""}

    for line in text.splitlines():
        if not line.strip():
            continue
        m = _SEPARATOR.search(line)
        if not m:
            continue
        key = line[: m.start()].strip().lower()
        value = line[m.end():].strip()
        if not value or key not in FIELD_SYNONYMS:
            continue

        section, field = FIELD_SYNONYMS[key]
        if section == "personalInfo":
            personal[field] = value
        elif section == "root":
            result[field] = value
        elif field == "panels":
            result["selectedPanels"] = [v.strip() for v in value.split(",") if v.strip()]
        elif field == "phenotypes" and value.startswith("[") and value.endswith("]"):
            try:
                result["phenotypeObservations"] = json.loads(value)
            except ValueError as e:
                logger.warning(f"Failed to parse pasted phenotype data: {e}")

    if not personal:
        raise MalformedInput("No valid patient data found. Please check the format and try again.")

    result["personalInfo"] = personal
    try:
        return ClinicalRecord.model_validate(result)
    except ValidationError as e:
        raise MalformedInput(f"Pasted data has an invalid structure: {e.error_count()} error(s)") from e


def format_record_text(record: ClinicalRecord) -> str:
    """Render the pasteable text form of a record (inverse of parse_pasted_text)."""
    info = record.personal_info
    labelled = [
        ("First Name", info.first_name),
        ("Last Name", info.last_name),
        ("Birthdate", info.birthdate),
        ("Sex", info.sex),
        ("Insurance", info.insurance),
        ("Insurance ID", info.insurance_id),
        ("Physician", info.referrer),
        ("Diagnosis", info.diagnosis),
    ]
    lines: List[str] = [f"{label}: {value}" for label, value in labelled if value]
    if record.selected_panels:
        lines.append(f"Panels: {', '.join(record.selected_panels)}")
    if record.category:
        lines.append(f"Category: {record.category}")
    return "\n".join(lines)
