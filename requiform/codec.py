"""
Compact record codec.

Maps clinical record fragments to the smallest JSON arrays/strings that still
carry everything the receiving side needs, and back again.

Wire formats (version 1):
    patient     [1, 1, [firstName, lastName, birthdate, sex, insurance, insuranceId, referrer, diagnosis], panels]
    phenotype   [1, 2, ["+123", "-456", ...]]
    pedigree    [1, 3, [2, [[fam, id, pat, mat, sex, phen], ...]]]  or  [1, 3, [0]]
    complete    [1, 4, patient, panels, phenotypes, pedigree | null, category]

Type 4 is an addition to the three per-page types. A reader that only knows
types 1-3 rejects it as unsupported instead of guessing at its layout.

Phenotype tokens: "+" present / "-" absent, followed by the HPO number with
leading zeros stripped ("HP:0000123" -> "+123"). Observations without a
present/absent status are never encoded.

Pure functions only. Dropped elements are reported through the injected
logger (any object with debug/warning/error) and never abort the call.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel

from requiform import (
    SUPPORTED_TYPES,
    SUPPORTED_VERSIONS,
    TYPE_COMPLETE,
    TYPE_PATIENT,
    TYPE_PEDIGREE,
    TYPE_PHENOTYPE,
    WIRE_VERSION,
)
from requiform.errors import MalformedInput, UnsupportedVersion
from requiform.models import (
    HPO_PREFIX,
    MAX_HPO_DIGITS,
    MAX_HPO_ID_LENGTH,
    PATIENT_FIELDS,
    ClinicalRecord,
    Pedigree,
    PedigreeIndividual,
    PersonalInfo,
    PhenotypeObservation,
    hpo_number,
    load_record,
)

logger = logging.getLogger(__name__)

PEDIGREE_IMAGE_ONLY = 0
PEDIGREE_TABLE = 2
PEDIGREE_FAMILY_ID = 1

HPO_DIGITS = 7

SEX_CODES = {"M": 1, "F": 2}
SEX_NAMES = {1: "M", 2: "F"}
UNAFFECTED = 1
AFFECTED = 2

_DIGITS = re.compile(r"[0-9]+")


class CodecLogger(Protocol):
    """Logging capability injected into codec calls."""

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...


def compact_json(obj: Any) -> str:
    """JSON with no structural whitespace."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedInput(f"Payload is not valid JSON: {e}") from e


def _as_mapping(obj: Any) -> Optional[Dict[str, Any]]:
    if isinstance(obj, BaseModel):
        return obj.model_dump(by_alias=True)
    if isinstance(obj, Mapping):
        return dict(obj)
    return None


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


# --- Patient ---

def encode_patient(personal_info: Any) -> List[str]:
    """
    Fixed-position patient array.

    Missing fields become "". Positions never move between versions; new
    fields may only be appended.
    """
    data = _as_mapping(personal_info) if personal_info is not None else {}
    if data is None:
        raise MalformedInput("personal info must be a mapping")
    info = PersonalInfo.model_validate(data).model_dump(by_alias=True)
    return [info[field] for field in PATIENT_FIELDS]


def decode_patient(array: Any) -> PersonalInfo:
    if not isinstance(array, list):
        raise MalformedInput("patient payload must be an array")
    values = [("" if v is None else str(v)) for v in array[: len(PATIENT_FIELDS)]]
    return PersonalInfo.model_validate(dict(zip(PATIENT_FIELDS, values)))


# --- Phenotypes ---

def hpo_id(number: Any) -> str:
    return f"{HPO_PREFIX}{str(number).zfill(HPO_DIGITS)}"


def _present_flag(data: Dict[str, Any]) -> Optional[bool]:
    present = data.get("present")
    if isinstance(present, bool):
        return present
    status = data.get("status")
    if isinstance(status, str) and status.lower() in ("present", "absent"):
        return status.lower() == "present"
    return None


def encode_phenotypes(
    observations: Sequence[Any], log: Optional[CodecLogger] = None
) -> List[str]:
    """
    Encode observations as "+N" / "-N" tokens, preserving input order.

    Observations without a status are skipped; ids that are neither
    "HP:" + digits nor a bare integer are dropped with a warning.
    """
    log = log or logger
    if observations is None:
        return []
    if not isinstance(observations, (list, tuple)):
        raise MalformedInput("phenotype observations must be a list")

    tokens = []
    for item in observations:
        data = _as_mapping(item)
        if data is None:
            log.warning(f"Dropping phenotype observation of type {type(item).__name__}")
            continue
        present = _present_flag(data)
        if present is None:
            log.debug("Skipping phenotype observation without present/absent status")
            continue
        raw_id = data.get("hpoId", data.get("hpo_id", data.get("id")))
        number = hpo_number(raw_id)
        if number is None:
            log.warning(f"Dropping phenotype observation with invalid HPO id: {str(raw_id)[:MAX_HPO_ID_LENGTH]!r}")
            continue
        tokens.append(f"{'+' if present else '-'}{number}")
    log.debug(f"Encoded {len(tokens)} of {len(observations)} phenotype observations")
    return tokens


def _decode_token(item: str, log: CodecLogger) -> Optional[PhenotypeObservation]:
    if not item or item[0] not in "+-":
        log.warning(f"Dropping phenotype token {item!r}: missing +/- prefix")
        return None
    digits = item[1:]
    if len(digits) > MAX_HPO_DIGITS or not _DIGITS.fullmatch(digits):
        log.warning(f"Dropping phenotype token {item!r}: expected +/-NUMBER")
        return None
    return PhenotypeObservation(hpo_id=hpo_id(digits), present=item[0] == "+")


def _decode_array_item(item: list, log: CodecLogger) -> Optional[PhenotypeObservation]:
    # [numericId, presentFlag, term?]
    if len(item) < 2 or item[0] is None:
        log.warning(f"Dropping phenotype array {item!r}: expected [id, present, term?]")
        return None
    number = hpo_number(item[0])
    flag = item[1]
    if number is None or not isinstance(flag, (bool, int)):
        log.warning(f"Dropping phenotype array {item!r}: invalid id or flag")
        return None
    term = item[2] if len(item) > 2 and isinstance(item[2], str) else None
    return PhenotypeObservation(hpo_id=hpo_id(number), present=bool(flag), term=term)


def _decode_object_item(item: dict, log: CodecLogger) -> Optional[PhenotypeObservation]:
    # legacy {i: id, p: present, t: term}
    number = hpo_number(item.get("i"))
    flag = item.get("p")
    if number is None or not isinstance(flag, (bool, int)):
        log.warning(f"Dropping legacy phenotype object {item!r}: invalid id or flag")
        return None
    term = item.get("t") if isinstance(item.get("t"), str) else None
    return PhenotypeObservation(hpo_id=hpo_id(number), present=bool(flag), term=term)


def decode_phenotypes(
    tokens: Sequence[Any], log: Optional[CodecLogger] = None
) -> List[PhenotypeObservation]:
    """
    Inverse of encode_phenotypes.

    Also reads the older [id, present, term] arrays and {i, p, t} objects.
    Malformed items are dropped with a warning; this never raises for them.
    """
    log = log or logger
    if tokens is None:
        return []
    if not isinstance(tokens, (list, tuple)):
        raise MalformedInput("phenotype tokens must be a list")

    out = []
    for item in tokens:
        if isinstance(item, str):
            obs = _decode_token(item, log)
        elif isinstance(item, (list, tuple)):
            obs = _decode_array_item(list(item), log)
        elif isinstance(item, dict):
            obs = _decode_object_item(item, log)
        else:
            log.warning(f"Dropping phenotype item of unsupported type {type(item).__name__}")
            obs = None
        if obs is not None:
            out.append(obs)
    return out


# --- Pedigree ---

def encode_pedigree(
    individuals: Any,
    image_only: bool = False,
    log: Optional[CodecLogger] = None,
) -> List[Any]:
    """
    Six-column PED table: [2, [[family, id, father, mother, sex, phenotype], ...]].

    IDs are assigned densely from 1 in first-seen order. A repeated name keeps
    its first occurrence and the repeat is dropped with a warning. Parents not
    present in the input resolve to 0. Returns [0] when only an image exists.
    """
    log = log or logger
    if isinstance(individuals, Pedigree):
        image_only = image_only or individuals.image_only
        individuals = individuals.individuals
    if image_only:
        return [PEDIGREE_IMAGE_ONLY]
    if individuals is None:
        individuals = []
    if not isinstance(individuals, (list, tuple)):
        raise MalformedInput("pedigree individuals must be a list")

    ids: Dict[str, int] = {}
    assigned: List[Tuple[int, Dict[str, Any]]] = []
    for person in individuals:
        data = _as_mapping(person)
        if data is None:
            log.warning(f"Dropping pedigree entry of type {type(person).__name__}")
            continue
        name = data.get("name") or data.get("id")
        if name is not None:
            name = str(name)
            if name in ids:
                log.warning(f"Dropping duplicate pedigree individual {name!r}")
                continue
        individual_id = len(assigned) + 1
        if name is not None:
            ids[name] = individual_id
        assigned.append((individual_id, data))

    rows = []
    for individual_id, data in assigned:
        father = ids.get(str(data["father"]), 0) if data.get("father") else 0
        mother = ids.get(str(data["mother"]), 0) if data.get("mother") else 0
        sex = SEX_CODES.get(data["sex"], 0) if isinstance(data.get("sex"), str) else 0
        phenotype = AFFECTED if data.get("affected") else UNAFFECTED
        rows.append([PEDIGREE_FAMILY_ID, individual_id, father, mother, sex, phenotype])
    rows.sort(key=lambda r: r[1])
    log.debug(f"Encoded pedigree with {len(rows)} individuals")
    return [PEDIGREE_TABLE, rows]


def _check_row(row: Any) -> List[int]:
    if not isinstance(row, list) or len(row) != 6 or not all(_is_int(v) for v in row):
        raise MalformedInput(f"Pedigree row must be six integers: {row!r}")
    if row[1] < 1:
        raise MalformedInput(f"Pedigree individual id must be positive: {row!r}")
    if row[4] not in (0, 1, 2) or row[5] not in (0, 1, 2):
        raise MalformedInput(f"Pedigree sex/phenotype code out of range: {row!r}")
    return row


def decode_pedigree(table: Any) -> Pedigree:
    """
    Dispatch on the format code in table[0].

    Unknown codes are an error: guessing at family relationships is not
    acceptable.
    """
    if not isinstance(table, list) or not table:
        raise MalformedInput("pedigree payload must be a non-empty array")
    code = table[0]
    if _is_int(code) and code == PEDIGREE_IMAGE_ONLY:
        return Pedigree(image_only=True)
    if not (_is_int(code) and code == PEDIGREE_TABLE):
        raise UnsupportedVersion(f"Unknown pedigree format code: {code!r}")
    if len(table) < 2 or not isinstance(table[1], list):
        raise MalformedInput("pedigree table is missing its rows")

    rows = sorted((_check_row(r) for r in table[1]), key=lambda r: r[1])
    known = {r[1] for r in rows}
    if len(known) != len(rows):
        raise MalformedInput("pedigree table repeats an individual id")

    individuals = []
    for _fam, individual_id, father, mother, sex, phenotype in rows:
        for parent in (father, mother):
            if parent and parent not in known:
                raise MalformedInput(f"Individual {individual_id} references unknown parent {parent}")
        individuals.append(
            PedigreeIndividual(
                name=str(individual_id),
                sex=SEX_NAMES.get(sex),
                father=str(father) if father else None,
                mother=str(mother) if mother else None,
                affected=phenotype == AFFECTED,
            )
        )
    return Pedigree(individuals=individuals)


# --- Envelopes ---

def wrap_envelope(type_code: int, *payload: Any) -> List[Any]:
    if type_code not in SUPPORTED_TYPES:
        raise UnsupportedVersion(f"Unknown envelope type code: {type_code!r}")
    return [WIRE_VERSION, type_code, *payload]


def unwrap_envelope(envelope: Any, expected_type: Optional[int] = None) -> Tuple[int, List[Any]]:
    """
    Validate [version, typeCode, ...payload] and return (typeCode, payload).

    Fails closed on versions and type codes this build does not know.
    """
    if isinstance(envelope, str):
        envelope = parse_json(envelope)
    if not isinstance(envelope, list) or len(envelope) < 2:
        raise MalformedInput("envelope must be an array [version, type, ...]")
    version, type_code = envelope[0], envelope[1]
    if not _is_int(version) or version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(f"Unsupported envelope version: {version!r}")
    if not _is_int(type_code) or type_code not in SUPPORTED_TYPES:
        raise UnsupportedVersion(f"Unsupported envelope type code: {type_code!r}")
    if expected_type is not None and type_code != expected_type:
        raise MalformedInput(f"Expected envelope type {expected_type}, got {type_code}")
    return type_code, envelope[2:]


def patient_payload(personal_info: Any, selected_panels: Optional[Sequence[str]] = None) -> List[Any]:
    return wrap_envelope(TYPE_PATIENT, encode_patient(personal_info), list(selected_panels or []))


def phenotype_payload(observations: Sequence[Any], log: Optional[CodecLogger] = None) -> List[Any]:
    return wrap_envelope(TYPE_PHENOTYPE, encode_phenotypes(observations, log=log))


def pedigree_payload(
    pedigree: Any, image_only: bool = False, log: Optional[CodecLogger] = None
) -> List[Any]:
    return wrap_envelope(TYPE_PEDIGREE, encode_pedigree(pedigree, image_only=image_only, log=log))


def complete_payload(record: Any, log: Optional[CodecLogger] = None) -> List[Any]:
    record = load_record(record)
    pedigree = encode_pedigree(record.pedigree, log=log) if record.pedigree is not None else None
    return wrap_envelope(
        TYPE_COMPLETE,
        encode_patient(record.personal_info),
        list(record.selected_panels),
        encode_phenotypes(record.phenotype_observations, log=log),
        pedigree,
        record.category,
    )


def _part(payload: List[Any], index: int, what: str) -> Any:
    if len(payload) <= index:
        raise MalformedInput(f"envelope is missing its {what}")
    return payload[index]


def _panels(value: Any) -> List[str]:
    if not isinstance(value, list):
        raise MalformedInput("panel list must be an array")
    return [p for p in value if isinstance(p, str)]


def decode_payload(payload: Any, log: Optional[CodecLogger] = None) -> ClinicalRecord:
    """
    Rebuild the record fragment carried by any envelope (e.g. a scanned QR code).

    Fields the envelope does not carry keep their defaults.
    """
    type_code, parts = unwrap_envelope(payload)
    record = ClinicalRecord()
    if type_code == TYPE_PATIENT:
        record.personal_info = decode_patient(_part(parts, 0, "patient array"))
        if len(parts) > 1:
            record.selected_panels = _panels(parts[1])
    elif type_code == TYPE_PHENOTYPE:
        record.phenotype_observations = decode_phenotypes(_part(parts, 0, "phenotype tokens"), log=log)
    elif type_code == TYPE_PEDIGREE:
        record.pedigree = decode_pedigree(_part(parts, 0, "pedigree table"))
    elif type_code == TYPE_COMPLETE:
        record.personal_info = decode_patient(_part(parts, 0, "patient array"))
        record.selected_panels = _panels(_part(parts, 1, "panel list"))
        record.phenotype_observations = decode_phenotypes(_part(parts, 2, "phenotype tokens"), log=log)
        pedigree = _part(parts, 3, "pedigree table")
        record.pedigree = decode_pedigree(pedigree) if pedigree is not None else None
        category = parts[4] if len(parts) > 4 else ""
        record.category = category if isinstance(category, str) else ""
    return record
