"""
Registry Form Filling Module

This module writes normalized civil registry data into the text fields of an
interactive PDF template. Each value is routed through an ordered list of
strategies (identity, resolved mapping, static defaults, date decomposition,
fuzzy name match); the first value written to a physical field wins.
"""

import re
from io import BytesIO
from typing import Dict, List, Any, Optional, Tuple, Callable
from loguru import logger
from pypdf import PdfReader, PdfWriter
from pypdf.generic import NameObject, TextStringObject

from registry_filler.utils import sanitize_pdf_text, normalize_field_name, is_blank
from registry_filler.normalize_fields import parse_date
from registry_filler.field_mapping import (
    FIELD_EXCLUSIONS, build_template_mappings, get_default_targets,
    is_notes_key, field_sort_key
)


DEFAULT_FONT_SIZE = 10

TEXT_FIELD_TYPE = "/Tx"

# Composite and high-confidence keys claim their fields before anything else
PRIORITY_KEYS = [
    "nuip_resolved", "nuip",
    "birth_location_combined", "registry_location_combined",
    "father_full_name", "mother_full_name",
    "notes_combined",
    "nombres", "apellidos", "primer_apellido", "segundo_apellido",
    "fecha_nacimiento", "fecha_registro", "fecha_expedicion",
]

BIRTH_PLACE_KEYS = ["birth_location_combined", "lugar_nacimiento", "Place of Birth",
                    "Lugar Nacimiento", "birth_place"]

DATE_KEY_TOKENS = ("fecha", "date", "dob")
LITERAL_DATE_KEYS = ("Date of Issue",)

_FONT_SIZE_OPERATOR = re.compile(r"(/[^\s/]+\s+)(\d+(?:\.\d+)?)(\s+Tf)")


class TemplateLoadError(Exception):
    """Raised when a template cannot be parsed or has no usable text fields."""


def _collect_fields(field_refs, parent_name: str = "", parent_type=None,
                    index: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Walk an AcroForm field tree, keyed by fully qualified field name."""
    if index is None:
        index = {}

    for field_ref in field_refs or []:
        field = field_ref.get_object()
        partial_name = field.get("/T")
        if partial_name is not None and parent_name:
            name = f"{parent_name}.{partial_name}"
        else:
            name = str(partial_name) if partial_name is not None else parent_name
        field_type = field.get("/FT", parent_type)

        kids = field.get("/Kids")
        named_kids = [k for k in kids or [] if "/T" in k.get_object()]
        if named_kids:
            _collect_fields(named_kids, name, field_type, index)
        elif name and name not in index:
            index[name] = (field, field_type)

    return index


def _form_fields(root) -> List[Any]:
    acro_form = root.get("/AcroForm")
    if acro_form is None:
        return []
    return acro_form.get_object().get("/Fields", [])


def load_template(pdf_bytes: bytes) -> Tuple[PdfWriter, Dict[str, Any]]:
    """
    Parse a template into a writable document and its field index.

    Raises:
        TemplateLoadError: when the bytes are empty or unreadable, or the
            form holds no text fields
    """
    if not pdf_bytes:
        raise TemplateLoadError("Template PDF is empty")

    try:
        reader = PdfReader(BytesIO(pdf_bytes))
        writer = PdfWriter(clone_from=reader)
        index = _collect_fields(_form_fields(writer.root_object))
    except Exception as e:
        raise TemplateLoadError(f"Template PDF could not be read: {e}") from e

    text_fields = [name for name, (_, field_type) in index.items() if field_type == TEXT_FIELD_TYPE]
    if not text_fields:
        raise TemplateLoadError("Template PDF contains no fillable text fields")

    return writer, index


def list_template_fields(pdf_bytes: bytes) -> List[Dict[str, str]]:
    """
    List the form fields of a template in document order.

    Returns:
        List of {"name", "type"} dictionaries; an empty list when the
        document has no form
    """
    reader = PdfReader(BytesIO(pdf_bytes))
    index = _collect_fields(_form_fields(reader.trailer["/Root"]))

    type_names = {"/Tx": "text", "/Btn": "button", "/Ch": "choice", "/Sig": "signature"}
    return [
        {"name": name, "type": type_names.get(str(field_type), "unknown")}
        for name, (_, field_type) in index.items()
    ]


def set_font_size(field, font_size: float) -> bool:
    """
    Force the font size in a field's default appearance string.

    Widgets that carry their own /DA are updated too. Returns False when
    neither the field nor its widgets define one.
    """
    targets = [field] + [kid.get_object() for kid in field.get("/Kids", [])]
    size_text = f"{font_size:g}"
    changed = False

    for target in targets:
        appearance = target.get("/DA")
        if appearance is None:
            continue
        updated, count = _FONT_SIZE_OPERATOR.subn(rf"\g<1>{size_text}\g<3>", str(appearance))
        if count:
            target[NameObject("/DA")] = TextStringObject(updated)
            changed = True

    return changed


class FillSession:
    """Write state for one document: which physical fields hold which value."""

    def __init__(self, writer: PdfWriter, field_index: Dict[str, Any], font_size: float):
        self.writer = writer
        self.field_index = field_index
        self.font_size = font_size
        self.field_names = list(field_index.keys())
        self._by_lower = {}
        for name in self.field_names:
            self._by_lower.setdefault(name.lower(), name)

        self.written: Dict[str, str] = {}
        self.written_by: Dict[str, str] = {}
        self.protected = set()
        self.filled_fields: List[Dict[str, Any]] = []
        self.field_mapping_log: List[Dict[str, Any]] = []
        self.processing_errors: List[str] = []

    def lookup(self, name: str) -> Optional[str]:
        """Return the template's own spelling of a field name, if it exists."""
        if name in self.field_index:
            return name
        return self._by_lower.get(str(name).lower())

    def set_field(self, name: str, value: Any, source_key: str, strategy: str) -> bool:
        """
        Write one value to one field.

        Returns True only for a new write. Unknown fields, non-text fields,
        fields already written and blank values are refused.
        """
        field_name = self.lookup(name)
        if field_name is None:
            return False

        if field_name in self.written:
            if self.written[field_name] != sanitize_pdf_text(value).strip():
                reason = "protected" if field_name in self.protected else "already filled"
                logger.debug(f"Blocked overwrite of '{field_name}' ({reason}) by '{source_key}' via {strategy}")
            return False

        field, field_type = self.field_index[field_name]
        if field_type != TEXT_FIELD_TYPE:
            logger.debug(f"Skipping non-text field '{field_name}' ({field_type}) for '{source_key}'")
            return False

        text = sanitize_pdf_text(value).strip()
        if not text:
            return False

        try:
            field[NameObject("/V")] = TextStringObject(text)
            if not set_font_size(field, self.font_size):
                logger.debug(f"Field '{field_name}' has no appearance string, keeping default font size")
        except Exception as e:
            message = f"Failed to write field '{field_name}' from '{source_key}': {e}"
            logger.warning(message)
            self.processing_errors.append(message)
            return False

        self.written[field_name] = text
        self.written_by[field_name] = source_key
        self.filled_fields.append({
            "field_name": field_name,
            "value": text,
            "source_key": source_key,
        })
        self.field_mapping_log.append({
            "form_field": field_name,
            "matched_data": source_key,
            "final_value": text,
            "method": strategy,
        })
        logger.debug(f"Filled '{field_name}' from '{source_key}' via {strategy}: {text[:50]}")
        return True

    def fill_targets(self, targets: List[str], value: str, key: str, strategy: str) -> int:
        """
        Fan a value out to several fields.

        Note-like keys spread their lines over the targets in order, with any
        surplus lines joined into the last target. Every other key writes the
        same value to each target.
        """
        existing = []
        for target in targets:
            name = self.lookup(target)
            if name is not None and name not in existing:
                existing.append(name)
        if not existing:
            return 0

        if is_notes_key(key) and len(existing) > 1:
            lines = [line.strip() for line in str(value).split("\n") if line.strip()]
            if len(lines) > len(existing):
                lines = lines[:len(existing) - 1] + ["\n".join(lines[len(existing) - 1:])]
            return sum(
                self.set_field(target, line, key, strategy)
                for target, line in zip(existing, lines)
            )

        return sum(self.set_field(target, value, key, strategy) for target in existing)


def fill_by_identity(session: FillSession, key: str, value: str, mappings: Dict[str, List[str]]) -> int:
    """The key itself names a template field."""
    return session.fill_targets([key], value, key, "identity")


def fill_by_mapping(session: FillSession, key: str, value: str, mappings: Dict[str, List[str]]) -> int:
    """Resolved and override mappings."""
    targets = mappings.get(key)
    if not targets:
        normalized = normalize_field_name(key)
        for mapped_key, mapped_targets in mappings.items():
            if normalize_field_name(mapped_key) == normalized:
                targets = mapped_targets
                break
    if not targets:
        return 0
    return session.fill_targets(targets, value, key, "mapping")


def fill_by_defaults(session: FillSession, key: str, value: str, mappings: Dict[str, List[str]]) -> int:
    """Static cross-language synonym table."""
    targets = get_default_targets(key)
    if not targets:
        return 0
    return session.fill_targets(targets, value, key, "defaults")


def is_date_key(key: str) -> bool:
    lowered = key.lower()
    return key in LITERAL_DATE_KEYS or any(token in lowered for token in DATE_KEY_TOKENS)


def date_part_prefixes(key: str) -> List[str]:
    """Split-field families a date key feeds, chosen from what the date describes."""
    lowered = key.lower()
    if "nacimiento" in lowered or "birth" in lowered or "dob" in lowered:
        return ["birth_"]
    if "registro" in lowered or "registry" in lowered or "reg_" in lowered:
        return ["reg_"]
    if "expedicion" in lowered or "issue" in lowered:
        return ["issue_", ""]
    return [""]


def fill_date_parts(session: FillSession, key: str, value: str, mappings: Dict[str, List[str]]) -> int:
    """Populate split day/month/year fields from a date value."""
    if not is_date_key(key):
        return 0
    parsed = parse_date(value)
    if parsed is None:
        return 0

    written = 0
    for prefix in date_part_prefixes(key):
        for part in ("day", "month", "year"):
            written += session.set_field(f"{prefix}{part}", parsed[part], key, "date_parts")
    return written


def fill_by_fuzzy(session: FillSession, key: str, value: str, mappings: Dict[str, List[str]]) -> int:
    """Normalized-name match: exact first, then a field name containing the key."""
    normalized_key = normalize_field_name(key)
    if len(normalized_key) < 3:
        return 0

    excluded_tokens = [t.lower() for t in FIELD_EXCLUSIONS.get(key, [])]
    candidates = [
        name for name in sorted(session.field_names, key=field_sort_key)
        if not any(token in name.lower() for token in excluded_tokens)
    ]
    normalized = {name: normalize_field_name(name) for name in candidates}

    for name in candidates:
        if normalized[name] == normalized_key:
            return int(session.set_field(name, value, key, "fuzzy"))
    for name in candidates:
        if normalized_key in normalized[name]:
            return int(session.set_field(name, value, key, "fuzzy"))
    return 0


Strategy = Callable[[FillSession, str, str, Dict[str, List[str]]], int]

# (name, function, runs even when an earlier strategy already wrote this key)
DEFAULT_STRATEGIES: List[Tuple[str, Strategy, bool]] = [
    ("identity", fill_by_identity, True),
    ("mapping", fill_by_mapping, True),
    ("defaults", fill_by_defaults, False),
    ("date_parts", fill_date_parts, True),
    ("fuzzy", fill_by_fuzzy, False),
]


def birth_place_candidates(field_names: List[str]) -> List[str]:
    """Template fields that look like a place-of-birth box, best first."""
    ranked = []
    for name in field_names:
        lowered = name.lower()
        if "registro" in lowered or "registry" in lowered:
            continue
        if ("place" in lowered and "birth" in lowered) or ("lugar" in lowered and "nacimiento" in lowered):
            rank = 0
        elif "birth" in lowered and "country" in lowered:
            rank = 1
        elif "birth" in lowered and "department" in lowered:
            rank = 2
        else:
            continue
        ranked.append((rank, field_sort_key(name), name))
    return [name for _, _, name in sorted(ranked)]


def order_keys(data: Dict[str, Any]) -> List[str]:
    """Priority keys first, then the remaining keys in input order."""
    ordered = [key for key in PRIORITY_KEYS if key in data]
    ordered.extend(key for key in data if key not in PRIORITY_KEYS)
    return ordered


class RegistryFormFiller:
    """
    Fills civil registry PDF templates from normalized extracted data.

    A filler holds configuration only; every call works on its own copy of
    the template, so one instance can serve many documents.
    """

    def __init__(self, font_size: float = DEFAULT_FONT_SIZE,
                 strategies: Optional[List[Tuple[str, Strategy, bool]]] = None):
        self.font_size = font_size
        self.strategies = strategies or DEFAULT_STRATEGIES

    def fill_registry_form(self, template_bytes: bytes, extracted_data: Dict[str, Any],
                           overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Fill a template with normalized field data.

        Args:
            template_bytes: Template PDF content
            extracted_data: Normalized field set
            overrides: Optional persisted per-template mapping overrides

        Returns:
            Dictionary with the filled PDF bytes, the fill count and details
        """
        if not extracted_data:
            logger.error("No extracted data supplied for form filling")
            return self._create_error_result("No extracted data available for this document")

        try:
            writer, field_index = load_template(template_bytes)
        except TemplateLoadError as e:
            logger.error(f"Template load failed: {e}")
            return self._create_error_result(str(e))

        logger.info(f"Template loaded: {len(field_index)} form fields")

        field_names = list(field_index.keys())
        mappings, _ = build_template_mappings(field_names, overrides)
        logger.info(f"Resolved mappings for {len(mappings)} keys")

        session = FillSession(writer, field_index, self.font_size)
        self._fill_birth_place(session, extracted_data)

        for key in order_keys(extracted_data):
            value = extracted_data[key]
            if is_blank(value):
                continue
            self._fill_key(session, key, str(value), mappings)

        pdf_bytes = self._render(session)
        filled_count = len(session.written)
        total_fields = len(field_index)

        logger.info(f"Filled {filled_count}/{total_fields} fields")

        return {
            "status": "completed",
            "pdf_bytes": pdf_bytes,
            "filled_count": filled_count,
            "total_fields": total_fields,
            "fill_rate": filled_count / total_fields if total_fields > 0 else 0,
            "filled_field_details": session.filled_fields,
            "field_mapping_log": session.field_mapping_log,
            "mappings": mappings,
            "processing_errors": session.processing_errors,
        }

    def _fill_key(self, session: FillSession, key: str, value: str,
                  mappings: Dict[str, List[str]]) -> int:
        written = 0
        for name, strategy, always_run in self.strategies:
            if written and not always_run:
                continue
            try:
                written += strategy(session, key, value, mappings)
            except Exception as e:
                message = f"Strategy {name} failed for '{key}': {e}"
                logger.warning(message)
                session.processing_errors.append(message)
        return written

    def _fill_birth_place(self, session: FillSession, extracted_data: Dict[str, Any]) -> None:
        """Place of birth goes in first and cannot be overwritten afterwards."""
        value = next((extracted_data[k] for k in BIRTH_PLACE_KEYS if not is_blank(extracted_data.get(k))), None)
        if value is None:
            return

        for field_name in birth_place_candidates(session.field_names):
            if session.set_field(field_name, value, "place_of_birth", "birth_place"):
                session.protected.add(field_name)
                logger.info(f"Place of birth written to '{field_name}'")
                return

        logger.warning("No suitable template field found for place of birth")

    def _render(self, session: FillSession) -> bytes:
        writer = session.writer

        for page in writer.pages:
            if "/Annots" not in page or not session.written:
                continue
            try:
                writer.update_page_form_field_values(page, session.written)
            except Exception as e:
                logger.warning(f"Could not regenerate field appearances on a page: {e}")

        # Viewers rebuild anything the appearance pass could not draw
        writer.set_need_appearances_writer(True)

        output = BytesIO()
        writer.write(output)
        return output.getvalue()

    def _create_error_result(self, error_message: str) -> Dict[str, Any]:
        return {
            "status": "error",
            "error_message": error_message,
            "pdf_bytes": None,
            "filled_count": 0,
            "total_fields": 0,
            "fill_rate": 0,
            "filled_field_details": [],
            "field_mapping_log": [],
            "mappings": {},
            "processing_errors": [error_message],
        }


def fill_registry_form(template_bytes: bytes, extracted_data: Dict[str, Any],
                       overrides: Optional[Dict[str, Any]] = None,
                       font_size: float = DEFAULT_FONT_SIZE) -> Dict[str, Any]:
    """
    Fill a registry template with normalized extracted data.

    Args:
        template_bytes: Template PDF content
        extracted_data: Normalized field set
        overrides: Optional persisted per-template mapping overrides
        font_size: Font size forced on every written field

    Returns:
        Dictionary containing filling results
    """
    filler = RegistryFormFiller(font_size=font_size)
    return filler.fill_registry_form(template_bytes, extracted_data, overrides)
