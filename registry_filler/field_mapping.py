"""
Field Mapping Module

Resolves canonical extracted-field keys to the literal form-field names of a
specific PDF template. The template's own field names are the only vocabulary
a mapping may point to.
"""

import re
from typing import Dict, List, Any, Optional, Iterable, Tuple
from loguru import logger

from registry_filler.utils import normalize_field_name


# Canonical key -> search patterns matched against the template's field names
FIELD_PATTERNS = {
    # Registrant
    "nombres": ["names", "given_names", "reg_names", "first_names", "nombre"],
    "apellidos": ["surnames", "apellidos"],
    "primer_apellido": ["first_surname", "reg_1_surname", "surname1", "apellido1"],
    "segundo_apellido": ["second_surname", "reg_2_surname", "surname2", "apellido2"],

    # Identifiers
    "nuip_resolved": ["nuip"],
    "nuip": ["nuip", "id_basic_part"],
    "nuip_top": ["nuip", "id_basic_part", "id_add_part"],
    "serial_indicator": ["serial_indicator", "serial", "indicativo"],
    "codigo": ["reg_code", "qr_code", "codigo"],
    "acta": ["birth_cert_number", "cert_number"],

    # Personal data
    "sexo": ["sex", "sexo", "gender"],
    "grupo_sanguineo": ["blood_type", "tipo_sangre"],
    "factor_rh": ["rh_factor", "rh"],

    # Birth
    "fecha_nacimiento": ["date_of_birth", "birth_date", "fecha_nacimiento"],
    "birth_day": ["birth_day"],
    "birth_month": ["birth_month"],
    "birth_year": ["birth_year"],
    "hora_nacimiento": ["birth_time", "hora_nacimiento"],
    "birth_location_combined": ["birth_country_dept_munic", "place_of_birth", "birth_place"],
    "lugar_nacimiento": ["township_birth", "birth_place", "place_of_birth", "birth_country_dept_munic"],
    "pais_nacimiento": ["country_birth", "birth_country"],
    "departamento_nacimiento": ["dept_birth", "birth_department"],
    "municipio_nacimiento": ["muni_birth", "birth_municipality"],

    # Father
    "father_full_name": ["father_surnames_names"],
    "padre_nombres": ["father_names"],
    "padre_apellidos": ["father_surnames"],
    "padre_identificacion": ["father_doc_number", "father_id_doc", "father_id"],
    "padre_tipo_documento": ["father_id_type", "father_doc_type", "father_type_id"],
    "padre_nacionalidad": ["father_nationality"],

    # Mother
    "mother_full_name": ["mother_surnames_names"],
    "madre_nombres": ["mother_names"],
    "madre_apellidos": ["mother_surnames"],
    "madre_identificacion": ["mother_doc_number", "mother_id_doc", "mother_id_number"],
    "madre_tipo_documento": ["mother_id_type", "mother_doc_type", "mother_type_id"],
    "madre_nacionalidad": ["mother_nationality"],

    # Declarant and witnesses
    "declarante_nombres": ["declarant_surnames_names", "declarant_name"],
    "declarante_identificacion": ["declarant_id_doc", "declarant_id"],
    "testigo1_nombres": ["witness1_surnames_names", "witness1_name"],
    "testigo1_identificacion": ["witness1_id_doc", "witness1_id"],
    "testigo2_nombres": ["witness2_surnames_names", "witness2_name"],
    "testigo2_identificacion": ["witness2_id_doc", "witness2_id"],

    # Registry office
    "registry_location_combined": ["country_dept_munic"],
    "tipo_oficina": ["office_type", "type_office", "tipo_oficina"],
    "oficina": ["office", "office_type", "registry_office", "reg_office"],
    "numero_oficina": ["notary_number", "office_number", "office_num"],
    "pais_registro": ["country_office"],
    "departamento_registro": ["dept_office"],
    "municipio_registro": ["muni_office"],
    "fecha_registro": ["date_registration", "date_registered", "reg_date"],
    "reg_day": ["reg_day"],
    "reg_month": ["reg_month"],
    "reg_year": ["reg_year"],

    # Issue date
    "fecha_expedicion": ["issue_date", "date_of_issue", "expedition_date"],
    "issue_day": ["issue_day", "expedition_day"],
    "issue_month": ["issue_month", "expedition_month"],
    "issue_year": ["issue_year", "expedition_year"],

    # Notes
    "notes_combined": ["notes", "space for notes"],
    "notas": ["notes", "space for notes"],
    "margin_notes": ["notes", "space for notes"],

    # Officials
    "authorizing_official": ["official_name&signature", "official_name", "funcionario"],
    "acknowledgment_official": ["ack_official_name&signature", "ack_official"],
    "funcionario_nombre": ["official_name&signature", "name_director"],

    # Prior document and book references
    "tipo_documento_anterior": ["prior_doc", "prior_document"],
    "tomo": ["tomo", "volume"],
    "folio": ["folio"],
    "libro": ["libro", "book"],
}

_ROLE_TOKENS = ["witness", "testigo", "declarant", "declarante", "father", "mother", "padre", "madre"]
_ACKNOWLEDGMENT_TOKENS = ["acknowledgment", "reconocimiento", "ack_"]

# Canonical key -> substrings that disqualify a field name for that key
FIELD_EXCLUSIONS = {
    "nombres": _ROLE_TOKENS,
    "apellidos": _ROLE_TOKENS,
    "primer_apellido": _ROLE_TOKENS,
    "segundo_apellido": _ROLE_TOKENS,
    "authorizing_official": _ACKNOWLEDGMENT_TOKENS,
    "funcionario_nombre": _ACKNOWLEDGMENT_TOKENS,
    "oficina": ["dept", "muni", "country", "num", "type"],
}

# Directional filters: registry data never lands in birth fields
POST_FILTERS = {
    "registry_location_combined": ["birth"],
}

_BIRTH_TOKENS = ["birth", "nacimiento"]
_REGISTRY_TOKENS = ["reg"]
_ISSUE_TOKENS = ["issue", "expedi"]
_FATHER_TOKENS = ["father", "padre", "dad"]
_MOTHER_TOKENS = ["mother", "madre", "mom"]

# Canonical key -> a field must contain one of these tokens. Stops role- or
# date-specific patterns ("birth_day", "father_names") from claiming generic
# fields such as "day" or "names" through containment.
FIELD_REQUIREMENTS = {
    "fecha_nacimiento": _BIRTH_TOKENS + ["dob"],
    "birth_day": _BIRTH_TOKENS,
    "birth_month": _BIRTH_TOKENS,
    "birth_year": _BIRTH_TOKENS,
    "hora_nacimiento": _BIRTH_TOKENS,
    "fecha_registro": _REGISTRY_TOKENS,
    "reg_day": _REGISTRY_TOKENS,
    "reg_month": _REGISTRY_TOKENS,
    "reg_year": _REGISTRY_TOKENS,
    "fecha_expedicion": _ISSUE_TOKENS,
    "issue_day": _ISSUE_TOKENS,
    "issue_month": _ISSUE_TOKENS,
    "issue_year": _ISSUE_TOKENS,
    "father_full_name": _FATHER_TOKENS,
    "padre_nombres": _FATHER_TOKENS,
    "padre_apellidos": _FATHER_TOKENS,
    "padre_identificacion": _FATHER_TOKENS,
    "padre_tipo_documento": _FATHER_TOKENS,
    "padre_nacionalidad": _FATHER_TOKENS,
    "mother_full_name": _MOTHER_TOKENS,
    "madre_nombres": _MOTHER_TOKENS,
    "madre_apellidos": _MOTHER_TOKENS,
    "madre_identificacion": _MOTHER_TOKENS,
    "madre_tipo_documento": _MOTHER_TOKENS,
    "madre_nacionalidad": _MOTHER_TOKENS,
    "declarante_nombres": ["declarant", "declarante"],
    "declarante_identificacion": ["declarant", "declarante"],
    "testigo1_nombres": ["witness1", "testigo1"],
    "testigo1_identificacion": ["witness1", "testigo1"],
    "testigo2_nombres": ["witness2", "testigo2"],
    "testigo2_identificacion": ["witness2", "testigo2"],
}

# Hand-maintained cross-language synonyms used when no resolved mapping fills a key
DEFAULT_FIELD_MAPPINGS = {
    "nombres": ["names", "reg_names", "given_names", "first_names", "nombre", "Given Name(s)"],
    "Given Name(s)": ["names", "reg_names", "given_names"],
    "Registrant's Names": ["names", "reg_names", "given_names"],
    "Names": ["names", "reg_names"],
    "apellidos": ["surnames", "first_surname", "Apellidos"],
    "Surnames": ["surnames", "first_surname"],
    "primer_apellido": ["first_surname", "reg_1_surname", "surname1", "First Surname"],
    "First Surname": ["first_surname", "reg_1_surname"],
    "segundo_apellido": ["second_surname", "reg_2_surname", "surname2", "Second Surname"],
    "Second Surname": ["second_surname", "reg_2_surname"],

    "nuip_resolved": ["nuip", "NUIP"],
    "nuip": ["nuip", "NUIP", "id_basic_part"],
    "serial_indicator": ["serial_indicator", "serial", "indicativo", "Serial Indicator"],
    "Serial Indicator": ["serial_indicator", "serial"],
    "codigo": ["reg_code", "code", "qr_code", "Code"],
    "Code": ["reg_code", "code"],

    "sexo": ["sex", "sexo", "gender", "Sex (in words)"],
    "Sex": ["sex", "sexo"],
    "Sex (in words)": ["sex", "sexo"],
    "grupo_sanguineo": ["blood_type", "blood", "Blood Type"],
    "Blood Type": ["blood_type", "blood"],
    "factor_rh": ["rh_factor", "rh", "Rh Factor"],
    "Rh Factor": ["rh_factor", "rh"],

    "fecha_nacimiento": ["date_of_birth", "birth_date", "Date of Birth"],
    "Date of Birth": ["date_of_birth", "birth_date"],
    "hora_nacimiento": ["time", "birth_time", "hora"],
    "Time": ["time", "birth_time"],
    "birth_location_combined": ["birth_country_dept_munic", "place_of_birth", "birth_place",
                                "Place of Birth", "Lugar de nacimiento"],
    "lugar_nacimiento": ["birth_country_dept_munic", "Place of Birth", "birth_place",
                         "township_birth", "Lugar de nacimiento"],
    "Place of Birth": ["birth_country_dept_munic", "place_of_birth", "birth_place"],

    "father_full_name": ["father_surnames_names", "dad_surnames_names", "father_names"],
    "Father's Surnames and Full Names": ["father_surnames_names", "dad_surnames_names"],
    "Father's Identification Document": ["father_id_doc", "father_doc_number"],
    "Father's Nationality": ["father_nationality"],
    "mother_full_name": ["mother_surnames_names", "mom_surnames_names", "mother_names"],
    "Mother's Surnames and Full Names": ["mother_surnames_names", "mom_surnames_names"],
    "Mother's Identification Document": ["mother_id_doc", "mother_doc_number"],
    "Mother's Nationality": ["mother_nationality"],

    "Declarant's Surnames and Full Names": ["declarant_surnames_names", "declarant_name"],
    "Declarant's Identification Document": ["declarant_id_doc", "declarant_id"],
    "First Witness's Surnames and Full Names": ["witness1_surnames_names", "witness1_name"],
    "First Witness's Identification Document": ["witness1_id_doc", "witness1_id"],
    "Second Witness's Surnames and Full Names": ["witness2_surnames_names", "witness2_name"],
    "Second Witness's Identification Document": ["witness2_id_doc", "witness2_id"],

    "tipo_oficina": ["office_type", "Type of Office", "type_office"],
    "Type of Office": ["office_type", "tipo_oficina"],
    "oficina": ["office_type", "office", "registry_office"],
    "Registry Office": ["reg_office", "office"],
    "numero_oficina": ["notary_number", "office_number", "Number"],
    "notary_number": ["notary_number", "office_number", "Number"],
    "Notary Number": ["notary_number", "office_number", "Number"],
    "registry_location_combined": ["country_dept_munic"],
    "Country - Department - Municipality - Township and/or Police Station": ["country_dept_munic"],
    "Date Registered": ["date_registration", "reg_date"],

    "notes_combined": ["notes1", "notes2", "notes3", "notes4", "notes5"],
    "Notes": ["notes1", "notes", "Space For Notes"],

    "authorizing_official": ["official_name&signature", "official_name", "funcionario",
                             "Name and Signature of Authorizing Official"],
    "Name and Signature of Authorizing Official": ["official_name&signature", "official_name"],
    "acknowledgment_official": ["ack_official_name&signature", "ack_official"],
    "Type of Prior Document or Witness Statement": ["prior_doc", "prior_document"],
    "Live Birth Certificate Number": ["live_birth_cert", "birth_cert_number"],
    "Paternal Recognition": ["paternal_recognition", "recognition"],
}

MIN_CONTAINMENT_LENGTH = 3

_DIGIT_RUN = re.compile(r"\d+")


def field_sort_key(field_name: str) -> Tuple[int, str]:
    """Order field names by their trailing number, then lexically."""
    runs = _DIGIT_RUN.findall(field_name)
    return (int(runs[-1]) if runs else 0, field_name)


def pattern_matches(pattern: str, field_name: str) -> bool:
    """Exact case-insensitive match, or containment in either direction."""
    pattern_lower = pattern.lower()
    field_lower = field_name.lower()
    if pattern_lower == field_lower:
        return True
    if len(pattern_lower) < MIN_CONTAINMENT_LENGTH or len(field_lower) < MIN_CONTAINMENT_LENGTH:
        return False
    return pattern_lower in field_lower or field_lower in pattern_lower


def is_notes_key(key: str) -> bool:
    """True for keys whose multi-line values are spread across several fields."""
    lowered = key.lower()
    return "note" in lowered or "nota" in lowered


class MappingResolver:
    """
    Derives canonical key -> template field mappings from pattern tables.

    The output depends only on the set of field names given: equal inputs
    always produce equal mappings with equal target order.
    """

    def __init__(self,
                 patterns: Optional[Dict[str, List[str]]] = None,
                 exclusions: Optional[Dict[str, List[str]]] = None,
                 post_filters: Optional[Dict[str, List[str]]] = None,
                 requirements: Optional[Dict[str, List[str]]] = None):
        self.patterns = FIELD_PATTERNS if patterns is None else patterns
        self.exclusions = FIELD_EXCLUSIONS if exclusions is None else exclusions
        self.post_filters = POST_FILTERS if post_filters is None else post_filters
        self.requirements = FIELD_REQUIREMENTS if requirements is None else requirements

    def _eligible(self, key: str, field_name: str) -> bool:
        field_lower = field_name.lower()
        if any(token.lower() in field_lower for token in self.exclusions.get(key, [])):
            return False
        if any(token.lower() in field_lower for token in self.post_filters.get(key, [])):
            return False
        required = self.requirements.get(key, [])
        return not required or any(token.lower() in field_lower for token in required)

    def resolve(self, pdf_field_names: Iterable[str],
                claimed: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
        """
        Build the mapping for one template.

        Each field is given to at most one key. Exact name matches are
        claimed first for every key in table order; containment matches
        then only see the fields still unclaimed, so a long pattern such as
        "birth_country_dept_munic" cannot take "country_dept_munic" away
        from the key that names it exactly.

        Args:
            pdf_field_names: Field names read from the template
            claimed: Fields already taken, e.g. by mapping overrides

        Returns:
            Dictionary of canonical key -> sorted field names; keys with
            no match are absent
        """
        field_names = sorted(set(pdf_field_names))
        used = set(claimed or [])
        matched: Dict[str, List[str]] = {key: [] for key in self.patterns}

        for exact_only in (True, False):
            for key, key_patterns in self.patterns.items():
                for pattern in key_patterns:
                    for field_name in field_names:
                        if field_name in used or not self._eligible(key, field_name):
                            continue
                        if exact_only:
                            found = pattern.lower() == field_name.lower()
                        else:
                            found = pattern_matches(pattern, field_name)
                        if found:
                            matched[key].append(field_name)
                            used.add(field_name)

        return {key: sorted(fields, key=field_sort_key) for key, fields in matched.items() if fields}


def resolve_field_mappings(pdf_field_names: Iterable[str],
                           claimed: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
    """Resolve mappings for a template using the built-in pattern tables."""
    return MappingResolver().resolve(pdf_field_names, claimed)


def _build_field_lookup(pdf_field_names: Iterable[str]) -> Dict[str, str]:
    lookup = {}
    for name in pdf_field_names:
        lookup.setdefault(name.lower(), name)
        lookup.setdefault(normalize_field_name(name), name)
    return lookup


def validate_override_targets(overrides: Optional[Dict[str, Any]],
                              pdf_field_names: Iterable[str]) -> Dict[str, List[str]]:
    """
    Keep only override targets that exist in the template.

    Target names are matched case-insensitively, then by normalized name, and
    replaced with the template's own spelling.
    """
    lookup = _build_field_lookup(pdf_field_names)
    valid: Dict[str, List[str]] = {}

    for key, targets in (overrides or {}).items():
        if isinstance(targets, str):
            targets = [targets]
        if not isinstance(targets, (list, tuple)):
            logger.warning(f"Ignoring malformed override for '{key}': {targets!r}")
            continue

        actual = []
        for target in targets:
            name = lookup.get(str(target).lower()) or lookup.get(normalize_field_name(target))
            if name is None:
                logger.debug(f"Override target '{target}' for '{key}' not found in template")
            elif name not in actual:
                actual.append(name)
        if actual:
            valid[key] = actual

    return valid


def merge_mappings(resolved: Dict[str, List[str]],
                   overrides: Optional[Dict[str, Any]],
                   pdf_field_names: Iterable[str]) -> Dict[str, List[str]]:
    """
    Combine persisted overrides with resolved mappings.

    Override entries are added first; a resolved entry replaces an override
    for the same key.
    """
    merged = validate_override_targets(overrides, pdf_field_names)
    merged.update(resolved)
    return merged


def build_template_mappings(pdf_field_names: List[str],
                            overrides: Optional[Dict[str, Any]] = None
                            ) -> Tuple[Dict[str, List[str]], Dict[str, List[str]]]:
    """
    Resolve a template's mappings around its persisted overrides.

    Override targets are claimed before the pattern tables run, so no
    resolved key can take a field an override assigns elsewhere.

    Returns:
        Tuple of (merged mappings, resolved-only mappings)
    """
    valid_overrides = validate_override_targets(overrides, pdf_field_names)
    claimed = {target for targets in valid_overrides.values() for target in targets}
    resolved = resolve_field_mappings(pdf_field_names, claimed)
    return merge_mappings(resolved, valid_overrides, pdf_field_names), resolved


def get_default_targets(key: str) -> List[str]:
    """Look up a key in the static synonym table, exactly, then by normalized name."""
    if key in DEFAULT_FIELD_MAPPINGS:
        return list(DEFAULT_FIELD_MAPPINGS[key])

    normalized = normalize_field_name(key)
    for default_key, targets in DEFAULT_FIELD_MAPPINGS.items():
        if normalize_field_name(default_key) == normalized:
            return list(targets)
    return []


def analyze_template_mappings(pdf_field_names: List[str],
                              overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Report how a template's fields are covered.

    Args:
        pdf_field_names: Field names read from the template
        overrides: Optional persisted per-template mapping overrides

    Returns:
        Dictionary with the merged mappings, the source of each mapping,
        a field -> key reverse map and the template fields nothing maps to
    """
    merged, resolved = build_template_mappings(pdf_field_names, overrides)

    sources = {key: ("resolved" if key in resolved else "override") for key in merged}

    reverse_mappings: Dict[str, str] = {}
    for key, targets in merged.items():
        for target in targets:
            reverse_mappings.setdefault(target, key)

    unmapped = [name for name in pdf_field_names if name not in reverse_mappings]

    logger.info(f"Mapping analysis: {len(merged)} keys mapped, "
                f"{len(unmapped)}/{len(pdf_field_names)} template fields unmapped")
    if unmapped and len(unmapped) <= 10:
        logger.debug(f"Unmapped template fields: {', '.join(unmapped)}")

    return {
        "mappings": merged,
        "mapping_sources": sources,
        "reverse_mappings": reverse_mappings,
        "unmapped_pdf_fields": unmapped,
    }
