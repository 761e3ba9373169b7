"""
Document Verification Module

Reads the text fields back out of a generated registry document and checks
them against the normalized field set, which is always the source of truth.
Discrepancies are repaired by regenerating the whole document.
"""

from io import BytesIO
from typing import Dict, List, Any, Optional, Tuple
from loguru import logger
from pypdf import PdfReader

from registry_filler.utils import (
    sanitize_pdf_text, normalize_for_comparison, normalize_field_name, is_blank
)
from registry_filler.fill_registry_form import fill_registry_form, DEFAULT_FONT_SIZE


DERIVED_KEY_SUFFIXES = ("_combined", "_resolved", "_top", "_raw")
DERIVED_KEY_PREFIXES = ("notes_line",)


def read_field_values(pdf_bytes: bytes) -> Dict[str, str]:
    """
    Read the current value of every text field in a PDF.

    Returns:
        Dictionary of field name -> value (empty string when unset)
    """
    reader = PdfReader(BytesIO(pdf_bytes))
    fields = reader.get_fields() or {}

    values = {}
    for name, field in fields.items():
        if field.get("/FT") != "/Tx":
            continue
        value = field.get("/V")
        values[name] = "" if value is None else str(value)
    return values


def is_verifiable_key(key: str) -> bool:
    """Derived working keys are not independent facts and are not checked."""
    lowered = key.lower()
    return not (lowered.endswith(DERIVED_KEY_SUFFIXES) or lowered.startswith(DERIVED_KEY_PREFIXES))


def _comparable(value: Any) -> str:
    return normalize_for_comparison(sanitize_pdf_text(value))


def find_field_with_value(expected: Any, field_values: Dict[str, str]) -> Optional[Tuple[str, str]]:
    """Find a filled field whose value equals, contains or is contained by the expected value."""
    normalized_expected = _comparable(expected)
    if not normalized_expected:
        return None

    for field_name, actual in field_values.items():
        normalized_actual = _comparable(actual)
        if not normalized_actual:
            continue
        if (normalized_actual == normalized_expected
                or normalized_expected in normalized_actual
                or normalized_actual in normalized_expected):
            return field_name, actual
    return None


def verify_field_values(extracted_data: Dict[str, Any], field_values: Dict[str, str]) -> Dict[str, Any]:
    """
    Classify every verifiable key as matched, mismatched or unmapped.

    Args:
        extracted_data: Normalized field set
        field_values: Text field values read from the document

    Returns:
        Verification report with counts and detail lists
    """
    matches: List[Dict[str, str]] = []
    mismatches: List[Dict[str, str]] = []
    unmapped: List[Dict[str, str]] = []

    fields_by_name = {}
    for field_name in field_values:
        fields_by_name.setdefault(normalize_field_name(field_name), field_name)

    for key, value in extracted_data.items():
        if is_blank(value) or not is_verifiable_key(key):
            continue
        expected = str(value).strip()

        value_match = find_field_with_value(expected, field_values)
        if value_match:
            matches.append({"extractedKey": key, "pdfField": value_match[0], "value": expected})
            continue

        named_field = fields_by_name.get(normalize_field_name(key))
        if named_field is None:
            unmapped.append({"extractedKey": key, "expectedValue": expected})
            continue

        actual = field_values[named_field]
        if _comparable(actual) == _comparable(expected):
            matches.append({"extractedKey": key, "pdfField": named_field, "value": expected})
        else:
            mismatches.append({
                "extractedKey": key,
                "expectedValue": expected,
                "pdfField": named_field,
                "actualValue": actual,
            })

    logger.info(f"Verification complete: {len(matches)} matches, "
                f"{len(mismatches)} mismatches, {len(unmapped)} unmapped")

    return {
        "total_extracted_fields": len(extracted_data),
        "matches": len(matches),
        "mismatches": len(mismatches),
        "unmapped": len(unmapped),
        "details": {
            "matches": matches,
            "mismatches": mismatches,
            "unmapped": unmapped,
        },
        "pdf_fields": list(field_values.keys()),
    }


def verify_document(pdf_bytes: bytes, extracted_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Verify a generated document against its source data.

    Returns:
        Result dictionary with status "completed" and a "verification"
        report, or status "error" with an error message
    """
    if not extracted_data:
        return {"status": "error", "error_message": "No extracted data to verify against", "verification": None}
    if not pdf_bytes:
        return {"status": "error", "error_message": "No generated document to verify", "verification": None}

    try:
        field_values = read_field_values(pdf_bytes)
    except Exception as e:
        logger.error(f"Could not read generated document: {e}")
        return {"status": "error", "error_message": f"Could not read generated document: {e}",
                "verification": None}

    return {"status": "completed", "verification": verify_field_values(extracted_data, field_values)}


def auto_correct(template_bytes: bytes, extracted_data: Dict[str, Any],
                 overrides: Optional[Dict[str, Any]] = None,
                 font_size: float = DEFAULT_FONT_SIZE,
                 max_attempts: int = 1) -> Dict[str, Any]:
    """
    Regenerate a document from scratch and verify the new copy.

    The existing document is never patched; each attempt fills a fresh copy
    of the template from the same normalized data.

    Returns:
        The last fill result with its "verification" report and the number
        of "attempts" made
    """
    fill_result: Dict[str, Any] = {}
    attempts = 0

    for attempts in range(1, max(1, max_attempts) + 1):
        logger.info(f"Regenerating document (attempt {attempts}/{max_attempts})")
        fill_result = fill_registry_form(template_bytes, extracted_data, overrides, font_size)
        if fill_result["status"] != "completed":
            break

        verification = verify_document(fill_result["pdf_bytes"], extracted_data)
        fill_result["verification"] = verification.get("verification")
        if verification["status"] == "completed" and verification["verification"]["mismatches"] == 0:
            break

    fill_result["attempts"] = attempts
    return fill_result
