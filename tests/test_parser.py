# tests/test_parser.py
import pytest

from risk_ingest.errors import ParseError
from risk_ingest.models import RecordType
from risk_ingest.parser import detect_delimiter, normalize_header, parse_rows

from conftest import MATERNAL_CSV


def test_normalize_header_equivalence():
    assert normalize_header("  Risk Score ") == "risk_score"
    assert normalize_header("risk_score") == "risk_score"
    assert normalize_header("PATIENT ID") == "patient_id"


def test_detect_delimiter():
    assert detect_delimiter("a,b,c") == ","
    assert detect_delimiter("a;b;c") == ";"
    assert detect_delimiter("a;b,c") == ","


def test_rows_keyed_by_normalized_header_in_file_order():
    rows = list(parse_rows(MATERNAL_CSV, RecordType.maternal))
    assert [r["patient_id"] for r in rows] == ["M001", "M002", "M003"]
    assert rows[0]["risk_factors"] == "anemia, hypertension"
    assert rows[1]["risk_score"] == ""


def test_blank_lines_and_unknown_columns_are_dropped():
    text = "patient_id,name,age,risk_factors,ward\n\nP1,Ana,30,anemia,B2\n   \nP2,Bia,31,none,C1\n"
    rows = list(parse_rows(text, RecordType.maternal))
    assert len(rows) == 2
    assert "ward" not in rows[0]


def test_semicolon_file_and_bom():
    text = "\ufeffchild_id;name;risk_factors\nC1;Davi;jaundice\n"
    rows = list(parse_rows(text, RecordType.pediatric))
    assert rows == [{"child_id": "C1", "name": "Davi", "risk_factors": "jaundice"}]


def test_short_row_leaves_columns_out():
    rows = list(parse_rows("patient_id,name,age,risk_factors\nP1,Ana\n", RecordType.maternal))
    assert rows == [{"patient_id": "P1", "name": "Ana"}]


def test_empty_file_is_a_parse_error():
    with pytest.raises(ParseError):
        list(parse_rows("\n\n", RecordType.maternal))


def test_header_without_known_columns_is_a_parse_error():
    with pytest.raises(ParseError):
        list(parse_rows("foo,bar\n1,2\n", RecordType.pediatric))


def test_row_with_extra_cells_is_a_parse_error():
    with pytest.raises(ParseError):
        list(parse_rows("patient_id,name\nP1,Ana,extra\n", RecordType.maternal))


def test_bad_quoting_is_a_parse_error():
    with pytest.raises(ParseError):
        list(parse_rows('patient_id,name\nP1,"Ana"x\n', RecordType.maternal))


def test_parse_is_lazy():
    rows = parse_rows("patient_id,name\nP1,Ana\nP2,Bia,extra\n", RecordType.maternal)
    assert next(rows) == {"patient_id": "P1", "name": "Ana"}
    with pytest.raises(ParseError):
        next(rows)


def test_blank_line_inside_quoted_field_is_kept():
    text = 'patient_id,name,age,risk_factors\n\nP1,Ana,30,"anemia\n\nhypertension"\n'
    rows = list(parse_rows(text, RecordType.maternal))
    assert len(rows) == 1
    assert rows[0]["risk_factors"] == "anemia\n\nhypertension"


def test_only_blank_quoted_cells_is_a_parse_error():
    with pytest.raises(ParseError):
        list(parse_rows('""\n', RecordType.maternal))
