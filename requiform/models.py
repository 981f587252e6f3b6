from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from requiform.errors import MalformedInput

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 1000
MAX_PANEL_LENGTH = 100
MAX_CATEGORY_LENGTH = 100
MAX_HPO_ID_LENGTH = 50
MAX_TERM_LENGTH = 200

HPO_PREFIX = "HP:"
# HPO ids carry 7 digits; anything far longer is not an id
MAX_HPO_DIGITS = 20

_DIGITS = re.compile(r"[0-9]+")

# Older exports and links used these names for personal info fields
LEGACY_PERSONAL_NAMES = {
    "givenName": "firstName",
    "familyName": "lastName",
    "physicianName": "referrer",
}

PATIENT_FIELDS = [
    "firstName",
    "lastName",
    "birthdate",
    "sex",
    "insurance",
    "insuranceId",
    "referrer",
    "diagnosis",
]


def hpo_number(raw: Any) -> Optional[int]:
    """Numeric part of an HPO id ("HP:0000123", "123" or 123), or None."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if 0 <= raw < 10 ** MAX_HPO_DIGITS else None
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if s.upper().startswith(HPO_PREFIX):
        s = s[len(HPO_PREFIX):]
    if len(s) > MAX_HPO_DIGITS or not _DIGITS.fullmatch(s):
        return None
    return int(s)


def _raw_hpo_id(item: Dict[str, Any]) -> Any:
    return item.get("hpoId", item.get("hpo_id", item.get("id")))


def has_status(item: Any) -> bool:
    """True when a phenotype item is explicitly present or absent."""
    if not isinstance(item, dict):
        return isinstance(item, PhenotypeObservation)
    if isinstance(item.get("present"), bool):
        return True
    status = item.get("status")
    return isinstance(status, str) and status.lower() in ("present", "absent")


def usable_observations(items: List[Any]) -> List[Any]:
    """
    Observations that can be stored: an explicit present/absent status and an
    HPO id with a numeric part. Items with an unusable id are dropped with a
    warning; items without a status are dropped quietly.
    """
    kept = []
    for item in items:
        if isinstance(item, PhenotypeObservation):
            kept.append(item)
            continue
        if not has_status(item):
            continue
        if hpo_number(_raw_hpo_id(item)) is None:
            raw = _raw_hpo_id(item)
            logger.warning(f"Dropping phenotype observation with invalid HPO id: {str(raw)[:MAX_HPO_ID_LENGTH]!r}")
            continue
        kept.append(item)
    return kept


class PersonalInfo(BaseModel):
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    birthdate: str = ""
    sex: str = ""
    insurance: str = ""
    insurance_id: str = Field(default="", alias="insuranceId")
    referrer: str = ""
    diagnosis: str = ""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _legacy_names(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, current in LEGACY_PERSONAL_NAMES.items():
            if not data.get(current) and data.get(legacy):
                data[current] = data[legacy]
        return data

    @field_validator("*", mode="before")
    @classmethod
    def _as_text(cls, v: Any) -> str:
        if v is None:
            return ""
        if not isinstance(v, str):
            v = str(v)
        return v[:MAX_FIELD_LENGTH]


class PhenotypeObservation(BaseModel):
    """One HPO observation. Items with no present/absent status never get here."""
    hpo_id: str = Field(alias="hpoId")
    present: bool
    term: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _import_shape(cls, data: Any) -> Any:
        # Form exports use {id, status, label}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "hpoId" not in data and "hpo_id" not in data and "id" in data:
            data["hpoId"] = data["id"]
        if "present" not in data and isinstance(data.get("status"), str):
            status = data["status"].lower()
            if status in ("present", "absent"):
                data["present"] = status == "present"
        if not data.get("term") and isinstance(data.get("label"), str) and data["label"]:
            data["term"] = data["label"][:MAX_TERM_LENGTH]
        return data

    @field_validator("hpo_id", mode="before")
    @classmethod
    def _hpo_text(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return f"HP:{v:07d}"
        if isinstance(v, str):
            return v[:MAX_HPO_ID_LENGTH]
        return v

    @field_validator("term", mode="before")
    @classmethod
    def _term_text(cls, v: Any) -> Optional[str]:
        return v[:MAX_TERM_LENGTH] if isinstance(v, str) else None


class PedigreeIndividual(BaseModel):
    """Drawer-style pedigree node (pedigreejs dataset entry)."""
    name: Optional[str] = None
    sex: Optional[str] = None
    father: Optional[str] = None
    mother: Optional[str] = None
    affected: bool = False
    proband: bool = False

    model_config = {"extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _id_as_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("name") and data.get("id"):
            data = dict(data)
            data["name"] = str(data["id"])
        return data


class Pedigree(BaseModel):
    """Structured family graph, or a marker that only a drawn image exists."""
    individuals: List[PedigreeIndividual] = Field(default_factory=list)
    image_only: bool = Field(default=False, alias="imageOnly")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    def to_individuals(self) -> List[Dict[str, Any]]:
        """Drawer dataset entries; empty when only an image exists."""
        return [p.model_dump(exclude_none=True) for p in self.individuals]


class ClinicalRecord(BaseModel):
    """
    The logical unit being shared.

    Accepts the current unified shape as well as the older export shapes:
    - a nested ``patientData`` wrapper
    - ``selectedTests`` instead of ``selectedPanels``
    - ``phenotypeData`` as a list of ``{id, status, label}`` or a dict keyed by HPO id
    Observations without a present/absent status are dropped on import.
    """
    personal_info: PersonalInfo = Field(default_factory=PersonalInfo, alias="personalInfo")
    selected_panels: List[str] = Field(default_factory=list, alias="selectedPanels")
    phenotype_observations: List[PhenotypeObservation] = Field(
        default_factory=list, alias="phenotypeObservations"
    )
    pedigree: Optional[Pedigree] = None
    category: str = ""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _import_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        nested = data.get("patientData")
        if isinstance(nested, dict):
            for key in ("personalInfo", "selectedPanels", "phenotypeData", "category"):
                if key in nested and not data.get(key):
                    data[key] = nested[key]

        info = data.get("personalInfo")
        if not data.get("category") and isinstance(info, dict) and isinstance(info.get("category"), str):
            data["category"] = info["category"]

        if "selectedPanels" not in data and "selected_panels" not in data and "selectedTests" in data:
            data["selectedPanels"] = data["selectedTests"]

        if "phenotypeObservations" not in data and "phenotype_observations" not in data:
            phenotypes = data.get("phenotypeData")
            if isinstance(phenotypes, dict):
                phenotypes = [
                    {"id": key, **item} for key, item in phenotypes.items() if isinstance(item, dict)
                ]
            if isinstance(phenotypes, list):
                data["phenotypeObservations"] = phenotypes

        for key in ("phenotypeObservations", "phenotype_observations"):
            if isinstance(data.get(key), list):
                data[key] = usable_observations(data[key])
        return data

    @field_validator("selected_panels", mode="before")
    @classmethod
    def _panels(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [p.strip()[:MAX_PANEL_LENGTH] for p in v if isinstance(p, str) and p.strip()]

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> str:
        if not isinstance(v, str):
            return ""
        return v[:MAX_CATEGORY_LENGTH]

    def to_unified(self) -> Dict[str, Any]:
        """Current unified nested shape, camelCase keys, ready for JSON."""
        return self.model_dump(by_alias=True, exclude_none=True)


def load_record(data: Any) -> ClinicalRecord:
    """
    ClinicalRecord from a model or any accepted dict shape.

    Raises:
        MalformedInput: If the data cannot be read as a record
    """
    if isinstance(data, ClinicalRecord):
        return data
    try:
        return ClinicalRecord.model_validate(data)
    except ValidationError as e:
        raise MalformedInput(f"Record has an invalid structure: {e.error_count()} error(s)") from e
