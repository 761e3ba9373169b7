"""
Utility functions for the civil registry form filling pipeline.

This module provides logging setup, JSON persistence helpers, the text
normalization used when writing to and comparing against PDF form fields,
and data-quality validation for extracted registry data.
"""

import os
import json
import re
from typing import Dict, List, Any, Optional
from pathlib import Path
from loguru import logger


# Typographic punctuation that the PDF text encoding cannot represent
PDF_TEXT_REPLACEMENTS = {
    "\u2018": "'", "\u2019": "'", "\u201B": "'",
    "\u201C": '"', "\u201D": '"', "\u201E": '"',
    "\u2032": "'", "\u2033": '"',
    "\u00B4": "'", "\u0060": "'",
    "\u2013": "-", "\u2014": "-", "\u2015": "-",
    "\u2026": "...",
    "\u00A0": " ", "\u2002": " ", "\u2003": " ",
    "\u2022": "*", "\u2023": ">",
}

_NON_LATIN1 = re.compile(r"[^\x00-\xFF]")
_WHITESPACE_RUN = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


NO_REQUEST = "-"

CONSOLE_FORMAT = ("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
                  "<magenta>{extra[request_id]}</magenta> | <cyan>{module}</cyan> - <level>{message}</level>")
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | {name}:{function}:{line} - {message}"


def setup_logging(log_file: Optional[str] = None, level: str = "INFO",
                  rotation: str = "10 MB", retention: Optional[str] = None):
    """
    Configure console and optional file logging for registry processing.

    Every record carries a ``request_id`` extra field so batch runs can be
    traced per request; it reads "-" outside ``logger.contextualize``.

    Args:
        log_file: Optional path to a DEBUG-level log file
        level: Console log level
        rotation: Size or interval at which the log file rotates
        retention: How long rotated log files are kept (None keeps all)

    Returns:
        Logger instance
    """
    logger.remove()
    logger.configure(extra={"request_id": NO_REQUEST})
    logger.add(sink=lambda msg: print(msg, end=""), format=CONSOLE_FORMAT, level=level)

    if log_file:
        ensure_directory_exists(os.path.dirname(log_file) or ".")
        logger.add(log_file, format=FILE_FORMAT, level="DEBUG",
                   rotation=rotation, retention=retention, encoding="utf-8")

    return logger


def ensure_directory_exists(directory_path: str) -> None:
    """
    Ensure that a directory exists, creating it if necessary.

    Args:
        directory_path: Path to the directory to create
    """
    Path(directory_path).mkdir(parents=True, exist_ok=True)


def sanitize_pdf_text(text: Any) -> str:
    """
    Make a value safe for a Latin-1 encoded PDF text field.

    Typographic punctuation is replaced by its plain equivalent, then every
    character outside the Latin-1 range is dropped.
    """
    if text is None:
        return ""
    result = str(text)
    for char, replacement in PDF_TEXT_REPLACEMENTS.items():
        result = result.replace(char, replacement)
    return _NON_LATIN1.sub("", result)


def normalize_field_name(name: str) -> str:
    """Lowercase a field name and strip everything that is not a letter or digit."""
    return _NON_ALNUM.sub("", str(name or "").lower())


def normalize_for_comparison(value: Any) -> str:
    """Trim, lowercase and collapse whitespace runs for value comparison."""
    return _WHITESPACE_RUN.sub(" ", str(value or "").strip().lower())


def is_blank(value: Any) -> bool:
    """True for None and for values that are empty once stripped."""
    return value is None or str(value).strip() == ""


def validate_extracted_data(extracted_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate extracted registry data for completeness and format.

    Problems are reported, never raised: a document with warnings or errors
    can still be filled and reviewed by a person.

    Args:
        extracted_data: Flat dictionary of extracted field values

    Returns:
        Dictionary with validation results
    """
    validation_results = {
        "is_valid": True,
        "errors": [],
        "warnings": []
    }

    def has_any(aliases: List[str]) -> bool:
        return any(not is_blank(extracted_data.get(alias)) for alias in aliases)

    # Registrant names may arrive under Spanish or English keys
    if not has_any(["nombres", "Given Name(s)", "Registrant's Names", "names", "reg_names", "primer_nombre"]):
        validation_results["errors"].append("Missing required field: nombres")

    if not has_any(["apellidos", "Registrant's Surnames", "surnames", "First Surname", "primer_apellido"]):
        validation_results["errors"].append("Missing required field: apellidos")

    birth_date = extracted_data.get("fecha_nacimiento")
    if not is_blank(birth_date):
        if not re.match(r"^\d{1,2}[/\-]\d{1,2}[/\-]\d{4}$", str(birth_date).strip()):
            validation_results["warnings"].append(
                f"Unexpected date format for fecha_nacimiento: {birth_date}"
            )

    if "nuip" in extracted_data and is_blank(extracted_data.get("nuip")):
        if is_blank(extracted_data.get("nuip_top")) and is_blank(extracted_data.get("nuip_bottom")):
            validation_results["warnings"].append("NUIP field is empty")

    # Check for OCR garbage in long values
    for field_name, value in extracted_data.items():
        if isinstance(value, str) and len(value) > 10:
            meaningful = sum(c.isalnum() or c.isspace() for c in value) / len(value)
            if meaningful < 0.5:
                validation_results["warnings"].append(
                    f"Suspicious OCR result in {field_name}: {value[:50]}..."
                )

    validation_results["is_valid"] = len(validation_results["errors"]) == 0
    return validation_results


def load_json_safely(file_path: str) -> Optional[Dict[str, Any]]:
    """
    Safely load JSON file with error handling.

    Args:
        file_path: Path to the JSON file

    Returns:
        Dictionary containing JSON data or None if failed
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Failed to load JSON file {file_path}: {e}")
        return None


def save_json_safely(data: Dict[str, Any], file_path: str) -> bool:
    """
    Safely save data to JSON file with error handling.

    Args:
        data: Dictionary to save
        file_path: Path to save the JSON file

    Returns:
        True if successful, False otherwise
    """
    try:
        ensure_directory_exists(os.path.dirname(file_path) or ".")
        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save JSON file {file_path}: {e}")
        return False


def get_request_directories(input_dir: str, data_file: str, template_file: str) -> List[str]:
    """
    Get list of request directories from input directory.

    A directory qualifies when it holds both the extracted data file and
    the template PDF.

    Args:
        input_dir: Input directory containing one folder per request
        data_file: Name of the extracted data JSON inside each folder
        template_file: Name of the template PDF inside each folder

    Returns:
        Sorted list of request directory paths
    """
    if not os.path.exists(input_dir):
        return []

    request_dirs = []
    for item in os.listdir(input_dir):
        item_path = os.path.join(input_dir, item)
        if os.path.isdir(item_path):
            if (os.path.exists(os.path.join(item_path, data_file))
                    and os.path.exists(os.path.join(item_path, template_file))):
                request_dirs.append(item_path)

    return sorted(request_dirs)
