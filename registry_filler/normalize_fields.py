"""
Value Normalization Module

Canonicalizes AI-extracted civil registry values before they are written to a
PDF template: date parsing, month-name translation, NUIP disambiguation,
location and parent-name assembly, notes consolidation and office-number
synchronization.

Every function here is pure. Missing inputs produce missing outputs; nothing
is ever filled with a placeholder.
"""

import re
from typing import Dict, List, Any, Optional, Callable, Iterable
from loguru import logger

from registry_filler.utils import is_blank, normalize_for_comparison


MONTH_PREFIXES = {
    "ene": "01", "jan": "01",
    "feb": "02",
    "mar": "03",
    "abr": "04", "apr": "04",
    "may": "05",
    "jun": "06",
    "jul": "07",
    "ago": "08", "aug": "08",
    "sep": "09", "set": "09",
    "oct": "10",
    "nov": "11",
    "dic": "12", "dec": "12",
}

DATE_CONNECTOR_WORDS = ("de", "del")

# A place string longer than this already names the institution
# (e.g. "CLINICA SAN JOSE, CALI - VALLE"), so it is used as-is.
DETAILED_PLACE_MIN_LENGTH = 25

LOCATION_SEPARATOR = " - "

NOTE_SOURCE_KEYS = ("margin_notes", "notas", "notes_combined")

NUMBER_ALIAS_KEYS = ("numero_oficina", "notary_number", "numero")
NUMBER_LABEL_KEYS = ("oficina", "tipo_oficina", "Registry Office")

# Derived date parts: source key -> prefix of the day/month/year keys
DATE_DECOMPOSITIONS = {
    "fecha_nacimiento": "birth",
    "fecha_registro": "reg",
    "fecha_expedicion": "issue",
}

_ISO_DATETIME = re.compile(r"^(\d{4}-\d{1,2}-\d{1,2})T")
_DIGIT_RUN = re.compile(r"\d+")
_ASCII_LETTER = re.compile(r"[A-Za-z]")


def normalize_month(raw: Any) -> Any:
    """
    Convert a month to its two-digit form.

    Numeric months are zero-padded. Spanish and English month names are
    matched on their first three letters, ignoring case and trailing dots.
    Anything unrecognized is returned unchanged.
    """
    text = str(raw).strip() if raw is not None else ""
    if text.isdigit():
        return text.zfill(2)

    prefix = text.lower().replace(".", "")[:3]
    if len(prefix) == 3 and prefix in MONTH_PREFIXES:
        return MONTH_PREFIXES[prefix]
    return raw


def _split_spoken_date(text: str) -> Optional[List[str]]:
    """Split "19 de agosto de 2000" style dates into day, month and year tokens."""
    tokens = [token.strip(",.") for token in text.split()]
    tokens = [t for t in tokens if t and t.lower() not in DATE_CONNECTOR_WORDS]
    if len(tokens) != 3:
        return None

    first, second, third = tokens
    # "agosto 19 2000": month name leads
    if not first.isdigit() and second.isdigit() and str(normalize_month(first)).isdigit():
        return [second, first, third]
    return [first, second, third]


def parse_date(raw: Any) -> Optional[Dict[str, str]]:
    """
    Split a date string into day, month and year.

    Args:
        raw: Date such as "19/08/2000", "19-08-2000", "2000-08-19" or
            "19 de agosto de 2000"

    Returns:
        {"day", "month", "year"} with a zero-padded day and a two-digit
        month, or None when the value does not resolve to three parts
    """
    if is_blank(raw):
        return None

    text = str(raw).strip()
    iso_match = _ISO_DATETIME.match(text)
    if iso_match:
        text = iso_match.group(1)

    parts = None
    if "/" in text or "-" in text:
        separator = "/" if "/" in text else "-"
        pieces = [p.strip() for p in text.split(separator)]
        if len(pieces) == 3:
            if len(pieces[0]) == 4:
                year, month, day = pieces
                parts = [day, month, year]
            else:
                parts = pieces

    if parts is None:
        parts = _split_spoken_date(text)
    if parts is None:
        return None

    day, month, year = parts
    month = str(normalize_month(month))
    if not (day.isdigit() and month.isdigit() and year.isdigit()):
        return None
    if not (1 <= int(day) <= 31 and 1 <= int(month) <= 12):
        return None

    return {"day": day.zfill(2), "month": month, "year": year}


def is_alphanumeric(value: Any) -> bool:
    """True when the value contains at least one ASCII letter."""
    if value is None:
        return False
    return bool(_ASCII_LETTER.search(str(value)))


def _present(data: Dict[str, str], key: str) -> Optional[str]:
    value = data.get(key)
    if is_blank(value):
        return None
    return str(value).strip()


def resolve_identifier(primary: Any, secondary: Any, legacy: Any) -> Optional[str]:
    """
    Pick one identifier out of three competing sources.

    An alphanumeric primary wins, then any non-empty primary, then the
    secondary (numeric) value, then the legacy value.

    Returns:
        The chosen value, or None when every candidate is empty
    """
    if not is_blank(primary) and is_alphanumeric(str(primary).strip()):
        return str(primary).strip()
    for candidate in (primary, secondary, legacy):
        if not is_blank(candidate):
            return str(candidate).strip()
    return None


def assemble_location(place: Any, parts: Iterable[Any]) -> Optional[str]:
    """
    Build a location string.

    A detailed place (longer than DETAILED_PLACE_MIN_LENGTH) is returned
    verbatim. Otherwise the non-empty country, department and municipality
    parts are joined with LOCATION_SEPARATOR; a short place is the last resort.
    """
    place_text = None if is_blank(place) else str(place).strip()
    if place_text and len(place_text) > DETAILED_PLACE_MIN_LENGTH:
        return place_text

    present_parts = [str(p).strip() for p in parts if not is_blank(p)]
    if present_parts:
        return LOCATION_SEPARATOR.join(present_parts)
    return place_text


def assemble_full_name(surnames: Any, given_names: Any) -> Optional[str]:
    """Join surnames and given names with one space, skipping empty sides."""
    pieces = [str(p).strip() for p in (surnames, given_names) if not is_blank(p)]
    if not pieces:
        return None
    return " ".join(pieces)


class MissingCodeBackfillRule:
    """
    Append a 10-digit code to note lines that announce it but omit it.

    Certificates with a replaced identifier carry a "NUIP NUEVO" margin note;
    the extractor sometimes returns the phrase without the number, which then
    sits in one of the auxiliary line fields.
    """

    def __init__(self,
                 marker_pattern: str = r"NUIP\s+NUEVO",
                 code_pattern: str = r"(?<!\d)\d{10}(?!\d)",
                 auxiliary_keys: Optional[List[str]] = None):
        self.marker = re.compile(marker_pattern, re.IGNORECASE)
        self.code = re.compile(code_pattern)
        self.auxiliary_keys = auxiliary_keys or (
            [f"notes_line{i}" for i in range(1, 8)] + ["serial_indicator"]
        )

    def needs_backfill(self, line: str) -> bool:
        return bool(self.marker.search(line)) and not self.code.search(line)

    def find_code(self, data: Dict[str, str]) -> Optional[str]:
        """Return the code only when exactly one distinct candidate exists."""
        found = []
        for key in self.auxiliary_keys:
            value = data.get(key)
            if is_blank(value):
                continue
            for code in self.code.findall(str(value)):
                if code not in found:
                    found.append(code)
        if len(found) == 1:
            return found[0]
        if len(found) > 1:
            logger.debug(f"Ambiguous note code candidates {found}, leaving note unchanged")
        return None

    def __call__(self, line: str, data: Dict[str, str]) -> str:
        if not self.needs_backfill(line):
            return line
        code = self.find_code(data)
        if code is None:
            return line
        logger.debug(f"Backfilled note code {code} into line: {line}")
        return f"{line} {code}"


NoteRule = Callable[[str, Dict[str, str]], str]

DEFAULT_NOTE_RULES = (MissingCodeBackfillRule(),)


def consolidate_notes(data: Dict[str, Any],
                      rules: Optional[Iterable[NoteRule]] = None) -> List[str]:
    """
    Collect note lines from every note-bearing key.

    Lines are taken from NOTE_SOURCE_KEYS in order, passed through each rule,
    and exact duplicates are dropped while keeping first-seen order.
    """
    rules = DEFAULT_NOTE_RULES if rules is None else tuple(rules)
    lines: List[str] = []

    for key in NOTE_SOURCE_KEYS:
        value = data.get(key)
        if is_blank(value):
            continue
        for raw_line in str(value).split("\n"):
            line = raw_line.strip()
            if not line:
                continue
            for rule in rules:
                line = rule(line, data)
            if line not in lines:
                lines.append(line)

    return lines


def extract_first_number(value: Any) -> Optional[str]:
    """Return the first contiguous digit run in a value, if any."""
    if is_blank(value):
        return None
    match = _DIGIT_RUN.search(str(value))
    return match.group(0) if match else None


def _flatten_value(key: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value if v is not None and str(v).strip()]
        lowered = key.lower()
        separator = "\n" if ("note" in lowered or "nota" in lowered) else ", "
        return separator.join(items)
    return str(value)


def coerce_field_set(raw: Dict[str, Any]) -> Dict[str, str]:
    """
    Coerce raw extraction output into a flat string mapping.

    None values are dropped, lists are joined and one level of nested
    category dictionaries is flattened without overwriting top-level keys.
    """
    coerced: Dict[str, str] = {}
    nested: List[Dict[str, Any]] = []

    for key, value in (raw or {}).items():
        if isinstance(value, dict):
            nested.append(value)
            continue
        text = _flatten_value(key, value)
        if text is not None:
            coerced[str(key)] = text

    for category in nested:
        for key, value in category.items():
            if isinstance(value, dict) or key in coerced:
                continue
            text = _flatten_value(key, value)
            if text is not None:
                coerced[str(key)] = text

    return coerced


def _derive_identifier(data: Dict[str, str]) -> None:
    resolved = resolve_identifier(data.get("nuip_top"), data.get("nuip_bottom"), data.get("nuip"))
    if resolved is None:
        return
    data["nuip_resolved"] = resolved
    data["nuip"] = resolved


def _derive_locations(data: Dict[str, str]) -> None:
    birth_place = _present(data, "lugar_nacimiento") or _present(data, "Place of Birth")
    birth_parts = [data.get("pais_nacimiento"), data.get("departamento_nacimiento"),
                   data.get("municipio_nacimiento")]
    birth_location = assemble_location(birth_place, birth_parts)
    if birth_location:
        data["birth_location_combined"] = birth_location

    registry_parts = [data.get("pais_registro"), data.get("departamento_registro"),
                      data.get("municipio_registro")]
    registry_location = assemble_location(None, registry_parts)
    if registry_location:
        data["registry_location_combined"] = registry_location


def _derive_parent_names(data: Dict[str, str]) -> None:
    for prefix, target in (("padre", "father_full_name"), ("madre", "mother_full_name")):
        surnames = _present(data, f"{prefix}_apellidos")
        if surnames is None:
            surnames = assemble_full_name(data.get(f"{prefix}_primer_apellido"),
                                          data.get(f"{prefix}_segundo_apellido"))
        full_name = assemble_full_name(surnames, data.get(f"{prefix}_nombres"))
        if full_name:
            data[target] = full_name


def _derive_dates(data: Dict[str, str]) -> None:
    for source_key, prefix in DATE_DECOMPOSITIONS.items():
        parsed = parse_date(data.get(source_key))
        if parsed is None:
            continue
        for part, value in parsed.items():
            target = f"{prefix}_{part}"
            if is_blank(data.get(target)):
                data[target] = value


def _sync_office_number(data: Dict[str, str]) -> None:
    number = None
    for key in NUMBER_ALIAS_KEYS + NUMBER_LABEL_KEYS:
        number = extract_first_number(data.get(key))
        if number:
            break
    if number is None:
        return
    for key in NUMBER_ALIAS_KEYS:
        data[key] = number


def _drop_duplicate_official(data: Dict[str, str]) -> None:
    authorizing = _present(data, "authorizing_official")
    acknowledgment = _present(data, "acknowledgment_official")
    if authorizing and acknowledgment and (
            normalize_for_comparison(authorizing) == normalize_for_comparison(acknowledgment)):
        logger.info(f"Dropping acknowledgment_official duplicated from authorizing_official: {acknowledgment}")
        del data["acknowledgment_official"]


def normalize_extracted_data(raw: Dict[str, Any],
                             note_rules: Optional[Iterable[NoteRule]] = None) -> Dict[str, str]:
    """
    Produce the normalized field set used for filling and verification.

    The input is never modified. Applying this function to its own output
    returns the same mapping.

    Args:
        raw: Extraction output (string values, possibly nested or listed)
        note_rules: Line rules applied during notes consolidation

    Returns:
        Flat mapping of string keys to string values with derived keys added
    """
    data = coerce_field_set(raw)

    if is_blank(data.get("serial_indicator")) and not is_blank(data.get("indicador_serial")):
        data["serial_indicator"] = str(data["indicador_serial"]).strip()

    _derive_identifier(data)
    _derive_locations(data)
    _derive_parent_names(data)
    _derive_dates(data)
    _sync_office_number(data)
    _drop_duplicate_official(data)

    notes = consolidate_notes(data, note_rules)
    if notes:
        data["notes_combined"] = "\n".join(notes)

    logger.debug(f"Normalized {len(raw or {})} raw keys into {len(data)} fields")
    return data


def merge_field_sets(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, str]:
    """
    Merge a newer extraction into an existing field set.

    Empty or missing update values never replace a present value.
    """
    merged = coerce_field_set(base)
    for key, value in coerce_field_set(update).items():
        if is_blank(value) and not is_blank(merged.get(key)):
            continue
        merged[key] = value
    return merged


EMPTY_MARKER = "[EMPTY]"


def apply_field_correction(data: Dict[str, Any], key: str, value: Any) -> Dict[str, str]:
    """
    Overwrite exactly one key with a corrected value.

    The "[EMPTY]" marker, None and blank strings clear the key to an empty,
    still present value.
    """
    corrected = coerce_field_set(data)
    text = "" if value is None else str(value).strip()
    if text == EMPTY_MARKER:
        text = ""
    corrected[key] = text
    logger.info(f"Corrected field '{key}' -> '{text}'")
    return corrected
