import csv
from io import StringIO

import pytest

from conftest import make_csv
from csv_exports import build_error_export, build_template, export_rows
from entity_resolver import CreationPolicy
from reconciliation import analyze_upload


def read_csv(text):
    return list(csv.reader(StringIO(text)))


def test_grade_six_template_lists_subjects_alphabetically():
    subjects = [{"id": 1, "name": "Quran"}, {"id": 2, "name": "Hadith"}]

    filename, content = build_template(6, subjects)

    header, sample = read_csv(content)
    assert ",".join(header) == "School Code,School Name,Location,Region,Student Number,Student Name,Hadith,Quran"
    assert len(sample) == len(header)
    assert sample[-2:] == ["0", "0"]
    assert filename.endswith("grade6.csv")
    assert not content.startswith("\ufeff")


def test_template_without_subjects_keeps_fixed_columns():
    _filename, content = build_template(3, [])
    assert read_csv(content)[0] == ["School Code", "School Name", "Location", "Region", "Student Number", "Student Name"]


@pytest.fixture
def mixed_analysis(repo):
    rows = [
        ["", "Al Noor School", "Alpha", "North", "", "Ahmed Ali", "85", ""],
        ["", "Bright Future", "Alpha", "North", "", "Sara Hassan", "90", ""],
        ["", "Ghost School", "Alpha", "", "", "Omar Said", "70", ""],
        ["", "Al Noor School", "Alpha", "North", "", "Layla Noor", "", ""],
        ["", "Al Noor School", "Alpha", "North", "", "Ahmed Ali", "150", ""],
    ]
    return analyze_upload(make_csv(rows), grade=6, exam_year_id=repo.ids["year"], repository=repo)


def test_error_export_has_bom_row_numbers_and_original_columns(mixed_analysis):
    _filename, content = build_error_export(mixed_analysis, "invalid")

    assert content.startswith("\ufeff")
    header, *rows = read_csv(content[1:])
    assert header[0] == "Row" and header[-1] == "Issue"
    assert header[1:-1] == mixed_analysis.headers
    assert len(rows) == 1
    assert rows[0][0] == "6"
    assert rows[0][header.index("Quran")] == "150"
    assert "Quran" in rows[0][-1]


def test_unmatched_export_lists_new_and_unresolved_schools(mixed_analysis):
    rows = export_rows(mixed_analysis, "unmatched")

    assert [row.row_number for row, _issue in rows] == [3, 4]
    assert "will be created" in rows[0][1]
    assert "Region is blank" in rows[1][1]


def test_unmatched_students_export_only_covers_resolved_locations(mixed_analysis):
    rows = export_rows(mixed_analysis, "unmatchedstudents")
    assert [row.row_number for row, _issue in rows] == [3, 5]


def test_no_marks_export(mixed_analysis):
    rows = export_rows(mixed_analysis, "nomarks")

    assert [row.row_number for row, _issue in rows] == [5]
    assert "no subject marks" in rows[0][1]


def test_unmatched_students_export_reports_disabled_creation(repo):
    rows = [["", "Al Noor School", "Alpha", "North", "", "Sara Hassan", "90", ""]]
    analysis = analyze_upload(make_csv(rows), grade=6, exam_year_id=1, repository=repo,
                              policy=CreationPolicy(students=False))

    [(row, issue)] = export_rows(analysis, "unmatchedstudents")

    assert "creation is disabled" in issue


def test_unknown_export_kind_is_rejected(mixed_analysis):
    with pytest.raises(ValueError):
        build_error_export(mixed_analysis, "everything")
