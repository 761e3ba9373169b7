"""
Tests for reading generated documents back and checking them against their data.
"""

from registry_filler.fill_registry_form import fill_registry_form
from registry_filler.normalize_fields import normalize_extracted_data
from registry_filler.verify_document import (
    verify_field_values, verify_document, auto_correct, read_field_values,
    is_verifiable_key, find_field_with_value
)


class TestVerifyFieldValues:

    def test_value_found_in_any_field(self):
        report = verify_field_values({"nombres": "Ana  Maria"}, {"reg_names": "ANA MARIA", "other": ""})
        assert report["matches"] == 1
        assert report["details"]["matches"][0] == {
            "extractedKey": "nombres", "pdfField": "reg_names", "value": "Ana  Maria"
        }

    def test_value_contained_in_composite_field(self):
        report = verify_field_values({"municipio_nacimiento": "CALI"},
                                     {"birth_country_dept_munic": "COLOMBIA - VALLE - CALI"})
        assert report["matches"] == 1

    def test_mismatch_on_same_named_field(self):
        report = verify_field_values({"sexo": "FEMENINO"}, {"sexo": "MASCULINO"})
        assert report["mismatches"] == 1
        assert report["details"]["mismatches"][0] == {
            "extractedKey": "sexo",
            "expectedValue": "FEMENINO",
            "pdfField": "sexo",
            "actualValue": "MASCULINO",
        }

    def test_unmapped_when_no_field_holds_value(self):
        report = verify_field_values({"tomo": "44"}, {"folio": "", "sexo": "F"})
        assert report["unmapped"] == 1
        assert report["details"]["unmapped"][0] == {"extractedKey": "tomo", "expectedValue": "44"}

    def test_empty_field_is_a_mismatch_not_a_match(self):
        report = verify_field_values({"folio": "12"}, {"folio": ""})
        assert report["mismatches"] == 1

    def test_blank_and_derived_keys_skipped(self):
        data = {
            "nombres": "",
            "notes_combined": "A",
            "nuip_resolved": "X",
            "nuip_top": "X",
            "notes_line1": "B",
            "birth_location_combined": "CALI",
        }
        report = verify_field_values(data, {"reg_names": ""})
        assert report["matches"] == report["mismatches"] == report["unmapped"] == 0
        assert report["total_extracted_fields"] == len(data)

    def test_expected_value_compared_after_sanitizing(self):
        report = verify_field_values({"nombres": "ANA “LA NEGRA”"}, {"reg_names": "ANA \"LA NEGRA\""})
        assert report["matches"] == 1

    def test_pdf_fields_listed(self):
        report = verify_field_values({}, {"a": "", "b": "x"})
        assert report["pdf_fields"] == ["a", "b"]


def test_is_verifiable_key():
    assert is_verifiable_key("nombres")
    assert not is_verifiable_key("registry_location_combined")
    assert not is_verifiable_key("nuip_resolved")
    assert not is_verifiable_key("notes_line4")


def test_find_field_with_value_ignores_empty_fields():
    assert find_field_with_value("ANA", {"a": "", "b": "  "}) is None
    assert find_field_with_value("", {"a": "ANA"}) is None
    assert find_field_with_value("ana", {"a": "", "b": "ANA"}) == ("b", "ANA")


def test_filled_sample_document_has_no_mismatches(birth_certificate_template, sample_extraction):
    normalized = normalize_extracted_data(sample_extraction)
    result = fill_registry_form(birth_certificate_template, normalized)

    verification = verify_document(result["pdf_bytes"], normalized)
    assert verification["status"] == "completed"
    report = verification["verification"]
    assert report["mismatches"] == 0
    assert report["matches"] > 0


class TestVerifyDocumentErrors:

    def test_no_data(self, make_template):
        result = verify_document(make_template(["a_box"]), {})
        assert result["status"] == "error"
        assert result["verification"] is None

    def test_no_document(self):
        result = verify_document(b"", {"nombres": "ANA"})
        assert result["status"] == "error"

    def test_unreadable_document(self):
        result = verify_document(b"garbage bytes", {"nombres": "ANA"})
        assert result["status"] == "error"
        assert "Could not read" in result["error_message"]


class TestAutoCorrect:

    def test_regenerated_document_matches_data(self, make_template):
        template = make_template(["sexo"])
        stale = fill_registry_form(template, {"sexo": "MASCULINO"})

        data = {"sexo": "FEMENINO"}
        before = verify_document(stale["pdf_bytes"], data)["verification"]
        assert before["mismatches"] == 1

        corrected = auto_correct(template, data)
        assert corrected["status"] == "completed"
        assert corrected["attempts"] == 1
        assert corrected["verification"]["mismatches"] == 0
        assert read_field_values(corrected["pdf_bytes"])["sexo"] == "FEMENINO"

    def test_fill_error_stops_attempts(self):
        corrected = auto_correct(b"", {"sexo": "FEMENINO"}, max_attempts=3)
        assert corrected["status"] == "error"
        assert corrected["attempts"] == 1
