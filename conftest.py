"""
Shared pytest fixtures: fillable PDF templates built on the fly with reportlab.
"""

import io
import json
import pytest
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas


BIRTH_CERTIFICATE_FIELDS = [
    "nuip", "serial_indicator",
    "reg_names", "first_surname", "second_surname",
    "sex", "blood_type", "rh_factor",
    "birth_day", "birth_month", "birth_year",
    "birth_country_dept_munic", "country_dept_munic",
    "office_type", "notary_number",
    "reg_day", "reg_month", "reg_year",
    "father_surnames_names", "father_id_doc",
    "mother_surnames_names", "mother_id_doc",
    "declarant_surnames_names", "witness1_surnames_names",
    "notes1", "notes2", "notes3",
    "official_name&signature", "ack_official_name&signature",
]

SAMPLE_EXTRACTION = {
    "nuip_top": "V2A0001156",
    "nuip_bottom": "1112083468",
    "nuip": "",
    "serial_indicator": "63521234",
    "nombres": "MARIA JOSE",
    "primer_apellido": "PEREZ",
    "segundo_apellido": "GOMEZ",
    "sexo": "FEMENINO",
    "grupo_sanguineo": "O",
    "factor_rh": "+",
    "fecha_nacimiento": "19/08/2000",
    "pais_nacimiento": "COLOMBIA",
    "departamento_nacimiento": "VALLE",
    "municipio_nacimiento": "CALI",
    "pais_registro": "COLOMBIA",
    "departamento_registro": "VALLE",
    "municipio_registro": "CALI",
    "oficina": "NOTARIA 5 CALI",
    "tipo_oficina": "NOTARIA",
    "padre_nombres": "JUAN",
    "padre_apellidos": "PEREZ LOPEZ",
    "padre_identificacion": "CC 16123456",
    "madre_nombres": "ANA",
    "madre_apellidos": "GOMEZ RUIZ",
    "madre_identificacion": "CC 31987654",
    "testigo1_nombres": "CARLOS RUIZ",
    "notas": "NUIP NUEVO\nLINE A",
    "notes_combined": "LINE A\nLINE B",
    "authorizing_official": "LUIS TORRES",
    "acknowledgment_official": "luis  torres",
    "fecha_registro": "2000-09-01",
}


def build_template(text_fields, checkbox_fields=()):
    """Create a one-column form with a text box per name (and optional checkboxes)."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=letter)
    form = pdf.acroForm

    y = 740
    for name in text_fields:
        pdf.drawString(40, y + 5, name)
        form.textfield(name=name, tooltip=name, x=220, y=y, width=320, height=18,
                       fontSize=12, borderStyle='inset', forceBorder=True)
        y -= 24
        if y < 60:
            pdf.showPage()
            form = pdf.acroForm
            y = 740

    for name in checkbox_fields:
        pdf.drawString(40, y + 5, name)
        form.checkbox(name=name, tooltip=name, x=220, y=y, size=14, buttonStyle='check')
        y -= 24

    pdf.save()
    return buffer.getvalue()


@pytest.fixture
def make_template():
    return build_template


@pytest.fixture
def birth_certificate_template():
    return build_template(BIRTH_CERTIFICATE_FIELDS)


@pytest.fixture
def sample_extraction():
    return dict(SAMPLE_EXTRACTION)


@pytest.fixture
def request_dir(tmp_path, birth_certificate_template, sample_extraction):
    """A request folder laid out the way the pipeline expects it."""
    folder = tmp_path / "requests" / "REQ-001"
    folder.mkdir(parents=True)
    (folder / "extracted_data.json").write_text(json.dumps(sample_extraction), encoding="utf-8")
    (folder / "template.pdf").write_bytes(birth_certificate_template)
    return folder
