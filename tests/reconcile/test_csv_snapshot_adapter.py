import io

import pytest

from registry_app.reconcile.adapters import SnapshotCSVAdapter
from registry_app.reconcile.adapters.csv_snapshot import CSVHeaderError, SnapshotTooLargeError
from registry_app.reconcile.errors import SnapshotValidationError


def _adapter(text: str, **kwargs) -> SnapshotCSVAdapter:
    return SnapshotCSVAdapter(io.StringIO(text, newline=""), **kwargs)


def test_reads_valid_snapshot_with_aliases_and_normalization():
    text = "\ufeffExternalId,Name,DOB,Gender\nA1, Ali ,1980-05-06,male\nA2,Sara,,\n"

    adapter = _adapter(text)
    rows = adapter.read_snapshot()

    assert [row.external_id for row in rows] == ["A1", "A2"]
    assert rows[0].fields == {"name": "Ali", "date_of_birth": "1980-05-06", "gender": "MALE"}
    assert rows[1].fields["gender"] is None
    assert adapter.managed_fields == ("name", "date_of_birth", "gender")


def test_blank_rows_are_skipped():
    adapter = _adapter("external_id,name\nA1,Ali\n,\n\nA2,Sara\n")

    rows = adapter.read_snapshot()

    assert len(rows) == 2
    assert adapter.statistics.rows_skipped_blank == 1


def test_missing_required_column_is_rejected():
    with pytest.raises(CSVHeaderError) as excinfo:
        _adapter("external_id,gender\nA1,MALE\n").read_snapshot()

    assert excinfo.value.missing == ("name",)


def test_community_columns_are_forbidden_in_snapshots():
    with pytest.raises(CSVHeaderError) as excinfo:
        _adapter("external_id,name,date_of_death,photoUrlThumb\nA1,Ali,2023-01-01,x\n").read_snapshot()

    assert set(excinfo.value.forbidden) == {"date_of_death", "photoUrlThumb"}


def test_unknown_and_duplicate_columns_are_rejected():
    with pytest.raises(CSVHeaderError) as excinfo:
        _adapter("external_id,name,nickname,id\nA1,Ali,Al,A1\n").read_snapshot()

    assert excinfo.value.unexpected == ("nickname",)
    assert excinfo.value.duplicates == ("external_id",)


def test_row_errors_are_collected_with_line_numbers():
    text = "external_id,name,gender,date_of_birth\nA1,Ali,MALE,1980-01-01\n,Nameless,,\nA3,,UNKNOWN,01/02/1990\n"

    with pytest.raises(SnapshotValidationError) as excinfo:
        _adapter(text).read_snapshot()

    errors = excinfo.value.errors
    assert {error["line"] for error in errors} == {3, 4}
    messages = [error["message"] for error in errors if error["line"] == 4]
    assert any(message.startswith("name:") for message in messages)
    assert any(message.startswith("gender:") for message in messages)
    assert any(message.startswith("date_of_birth:") for message in messages)


def test_reported_errors_are_capped():
    body = "".join(f"E{index},,\n" for index in range(10))

    with pytest.raises(SnapshotValidationError) as excinfo:
        _adapter("external_id,name,gender\n" + body, max_reported_errors=3).read_snapshot()

    assert len(excinfo.value.errors) == 3
    assert excinfo.value.identifiers["truncated"] is True


def test_row_with_extra_values_is_invalid():
    with pytest.raises(SnapshotValidationError) as excinfo:
        _adapter("external_id,name\nA1,Ali,extra\n").read_snapshot()

    assert "more value(s) than the header" in excinfo.value.errors[0]["message"]


def test_max_rows_limit():
    body = "".join(f"E{index},Person {index}\n" for index in range(5))

    with pytest.raises(SnapshotTooLargeError):
        _adapter("external_id,name\n" + body, max_rows=4).read_snapshot()


def test_quoted_fields_with_commas_and_quotes():
    rows = _adapter('external_id,name\nA1,"Doe, ""Jr"" John"\n').read_snapshot()

    assert rows[0].fields["name"] == 'Doe, "Jr" John'


def test_empty_file_reports_missing_headers():
    with pytest.raises(CSVHeaderError) as excinfo:
        _adapter("").read_snapshot()

    assert set(excinfo.value.missing) == {"external_id", "name"}
