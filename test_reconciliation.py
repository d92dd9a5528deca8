import json

import pytest

from conftest import make_csv
from entity_resolver import CreationPolicy
from reconciliation import (
    ROW_INVALID_MARKS,
    ROW_MATCHED,
    ROW_NO_MARKS,
    ROW_UNMATCHED_LOCATION,
    ROW_UNMATCHED_STUDENT,
    UploadAnalysis,
    analyze_upload,
)
from upload_errors import ParseError

THREE_ROWS = [
    ["", "Al Noor School", "Alpha", "North", "", "Ahmed Ali", "85", ""],
    ["BF1", "Bright Future School", "Alpha", "North", "G6-001", "Sara Hassan", "90", ""],
    ["", "Al Noor School", "Alpha", "North", "", "Ahmed Ali", "150", ""],
]


def conservation_holds(summary):
    return summary["total_rows"] == (
        summary["matched_rows"]
        + summary["unmatched_location_rows"]
        + summary["unmatched_student_rows"]
        + summary["invalid_marks_rows"]
        + summary["no_marks_rows"]
        + summary["structural_error_rows"]
    )


def test_three_row_upload_preview_counts(repo):
    analysis = analyze_upload(make_csv(THREE_ROWS), grade=6, exam_year_id=repo.ids["year"], repository=repo)
    summary = analysis.summary()

    assert summary["matched_rows"] == 2
    assert summary["new_schools_count"] == 1
    assert summary["new_students_count"] == 1
    assert summary["invalid_marks_rows"] == 1
    assert summary["existing_schools_count"] == 1
    assert summary["existing_students_count"] == 1
    assert summary["new_regions_count"] == 0
    assert summary["can_confirm"] is True
    assert conservation_holds(summary)
    assert [row.classification for row in analysis.rows] == [ROW_MATCHED, ROW_MATCHED, ROW_INVALID_MARKS]
    assert analysis.rows[2].errors[0]["kind"] == "invalid_mark"


def test_every_row_lands_in_exactly_one_category(repo):
    repo.add_school(repo.ids["alpha"], "Twin School")
    repo.add_school(repo.ids["alpha"], "Twin School")
    repo.add_student(repo.ids["al_noor"], "Ahmed", "Ali", grade=6)
    rows = [
        ["", "Al Noor School", "Alpha", "North", "", "Omar Said", "70", ""],
        ["", "Twin School", "Alpha", "North", "", "Omar Said", "70", ""],
        ["", "Al Noor School", "Alpha", "North", "", "Ahmed Ali", "70", ""],
        ["", "Al Noor School", "Alpha", "North", "", "Layla Noor", "", ""],
        ["", "Al Noor School", "Alpha", "North", "", "Layla Noor", "x", ""],
        ["", "Al Noor School", "Alpha", "North", "", "Too Short"],
    ]

    analysis = analyze_upload(make_csv(rows), grade=6, exam_year_id=repo.ids["year"], repository=repo)
    summary = analysis.summary()

    assert [row.classification for row in analysis.rows] == [
        ROW_MATCHED, ROW_UNMATCHED_LOCATION, ROW_UNMATCHED_STUDENT, ROW_NO_MARKS, ROW_INVALID_MARKS,
    ]
    assert summary["structural_error_rows"] == 1
    assert summary["total_rows"] == 6
    assert conservation_holds(summary)


def test_new_entity_counts_are_distinct(repo):
    rows = [
        ["", "Bright Future", "Beta", "East", "", "Sara Hassan", "90", ""],
        ["", "BRIGHT future", "beta", "east", "", "Sara  Hassan", "", "40"],
        ["", "Bright Future", "Beta", "East", "", "Mona Adel", "75", ""],
    ]

    summary = analyze_upload(make_csv(rows), grade=6, exam_year_id=1, repository=repo).summary()

    assert summary["new_regions_count"] == 1
    assert summary["new_clusters_count"] == 1
    assert summary["new_schools_count"] == 1
    assert summary["new_students_count"] == 2


def test_unknown_headers_are_ignored_and_arabic_headers_bind(repo):
    headers = ["School Name", "Location", "Region", "Student Name", "الحديث", "Total", "Grade"]
    content = make_csv([["Al Noor School", "Alpha", "North", "Ahmed Ali", "44", "44", "D"]], headers=headers)

    analysis = analyze_upload(content, grade=6, exam_year_id=1, repository=repo)

    assert [column.subject_id for column in analysis.subject_columns] == [repo.ids["hadith"]]
    assert analysis.ignored_columns == ["Total", "Grade"]
    assert analysis.rows[0].scores == {repo.ids["hadith"]: 44.0}


def test_missing_student_name_header_is_a_parse_error(repo):
    content = make_csv([["Al Noor School", "85"]], headers=["School Name", "Quran"])
    with pytest.raises(ParseError, match="Student Name"):
        analyze_upload(content, grade=6, exam_year_id=1, repository=repo)


def test_disabled_school_creation_counts_row_as_unmatched(repo):
    policy = CreationPolicy(schools=False)
    rows = [["", "Bright Future", "Alpha", "North", "", "Sara Hassan", "90", ""]]

    analysis = analyze_upload(make_csv(rows), grade=6, exam_year_id=1, repository=repo, policy=policy)
    summary = analysis.summary()

    assert summary["unmatched_location_rows"] == 1
    assert summary["can_confirm"] is False
    assert analysis.rows[0].errors[0]["reason"] == "unknown_school"


def test_blank_region_rows_allow_confirm_with_hints(repo):
    rows = [["", "Al Noor School", "Alpha", "", "", "Ahmed Ali", "85", ""]]

    summary = analyze_upload(make_csv(rows), grade=6, exam_year_id=1, repository=repo).summary()

    assert summary["unmatched_location_rows"] == 1
    assert summary["hintable_rows"] == 1
    assert summary["can_confirm"] is True


def test_analysis_round_trips_through_json(repo):
    analysis = analyze_upload(make_csv(THREE_ROWS), grade=6, exam_year_id=repo.ids["year"], repository=repo)

    restored = UploadAnalysis.from_dict(json.loads(json.dumps(analysis.to_dict())))

    assert restored.summary() == analysis.summary()
    assert restored.rows[0].scores == analysis.rows[0].scores
    assert restored.rows[1].resolution == analysis.rows[1].resolution
