"""CSV template and per-classification error exports."""

import csv
from io import StringIO

from csv_rows import BYTE_ORDER_MARK
from reconciliation import ROW_INVALID_MARKS, ROW_NO_MARKS
from row_schema import TEMPLATE_HEADERS

EXPORT_KINDS = ('unmatched', 'unmatchedstudents', 'nomarks', 'invalid')
TEMPLATE_SAMPLE = ['SCH001', 'Example School', 'Example Location', 'Example Region', '1001', 'First Last']
SAMPLE_SCORE = '0'


def _render(rows):
    output = StringIO()
    writer = csv.writer(output)
    writer.writerows(rows)
    return output.getvalue()


def template_subject_names(subjects):
    names = {(subject.get('name') or '').strip() for subject in subjects}
    return sorted((name for name in names if name), key=str.casefold)


def build_template(grade, subjects):
    """Return ``(filename, csv_text)`` for a grade's upload template."""
    subject_names = template_subject_names(subjects)
    headers = TEMPLATE_HEADERS + subject_names
    sample = TEMPLATE_SAMPLE + [SAMPLE_SCORE for _ in subject_names]
    return f'comprehensive_results_template_grade{grade}.csv', _render([headers, sample])


def _messages(row, kinds):
    return '; '.join(error['message'] for error in row.errors if error.get('kind') in kinds)


def _unmatched_school_rows(analysis):
    for row in analysis.rows:
        school = row.resolution.school
        if school.matched:
            continue
        if school.to_create:
            yield row, f'New school "{row.row.school_name}" will be created on confirm.'
        else:
            yield row, _messages(row, ('unresolved_location',)) or school.message


def _unmatched_student_rows(analysis):
    for row in analysis.rows:
        student = row.resolution.student
        if not row.resolution.location_resolved or student.matched:
            continue
        if student.to_create:
            yield row, f'New student "{row.row.student_name}" will be created on confirm.'
        else:
            yield row, _messages(row, ('unresolved_student',)) or student.message


def _classified_rows(analysis, classification, kinds):
    for row in analysis.rows_in(classification):
        yield row, _messages(row, kinds)


def export_rows(analysis, kind):
    if kind == 'unmatched':
        return list(_unmatched_school_rows(analysis))
    if kind == 'unmatchedstudents':
        return list(_unmatched_student_rows(analysis))
    if kind == 'nomarks':
        return list(_classified_rows(analysis, ROW_NO_MARKS, ('no_marks',)))
    if kind == 'invalid':
        return list(_classified_rows(analysis, ROW_INVALID_MARKS, ('invalid_mark',)))
    raise ValueError(f'Unknown export kind "{kind}".')


def build_error_export(analysis, kind):
    """Return ``(filename, csv_text)`` with the rows of one classification.

    Columns are the row number, the upload's own headers and the issue, so a
    corrected file can be pasted straight back into the original sheet.
    """
    lines = [['Row'] + list(analysis.headers) + ['Issue']]
    for row, issue in export_rows(analysis, kind):
        lines.append([row.row_number] + [row.values.get(header, '') for header in analysis.headers] + [issue])
    return f'results_upload_{kind}_rows.csv', BYTE_ORDER_MARK + _render(lines)
