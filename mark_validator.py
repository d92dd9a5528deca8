"""Subject mark validation and grade derivation."""

import math
from dataclasses import dataclass, field
from typing import Dict, List

from upload_errors import InvalidMarkError, NoValidMarksError

MARKS_VALID = 'valid'
MARKS_INVALID = 'invalid'
MARKS_NONE = 'no_marks'

# Minimum percentage of the subject's max score for each letter grade.
GRADE_BANDS = (
    (80, 'A'),
    (70, 'B'),
    (60, 'C'),
    (50, 'D'),
    (40, 'E'),
)
FAIL_GRADE = 'F'


def grade_for_score(score, max_score=100):
    """Letter grade for a score against the shared grade-band table."""
    max_score = float(max_score or 100)
    percentage = float(score or 0) * 100.0 / max_score
    for minimum, letter in GRADE_BANDS:
        if percentage >= minimum:
            return letter
    return FAIL_GRADE


def passed(score, passing_score=50):
    return float(score or 0) >= float(passing_score)


@dataclass
class MarkValidation:
    status: str
    scores: Dict[int, float] = field(default_factory=dict)
    errors: List[InvalidMarkError] = field(default_factory=list)

    @property
    def is_valid(self):
        return self.status == MARKS_VALID


def parse_mark(raw_value, column, row_number):
    """Parse one cell. Returns None for a blank cell."""
    text = (raw_value or '').strip()
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        raise InvalidMarkError(row_number, f'Row {row_number}: {column.name} mark "{text}" is not a number.',
                               subject=column.name, value=text)
    if not math.isfinite(value):
        raise InvalidMarkError(row_number, f'Row {row_number}: {column.name} mark "{text}" is invalid.',
                               subject=column.name, value=text)
    if value < 0 or value > column.max_score:
        raise InvalidMarkError(row_number, f'Row {row_number}: {column.name} must be 0..{column.max_score:g}, got {text}.',
                               subject=column.name, value=text)
    return value


def validate_marks(row, subject_columns):
    """Classify a bound row's subject cells.

    Any invalid cell makes the whole row ``invalid``. A row with no valid
    cell at all is ``no_marks``. Blank cells are simply absent.
    """
    scores = {}
    errors = []
    for column in subject_columns:
        try:
            value = parse_mark(row.marks.get(column.header), column, row.row_number)
        except InvalidMarkError as exc:
            errors.append(exc)
            continue
        if value is not None:
            scores[column.subject_id] = value
    if errors:
        return MarkValidation(status=MARKS_INVALID, scores=scores, errors=errors)
    if not scores:
        return MarkValidation(status=MARKS_NONE)
    return MarkValidation(status=MARKS_VALID, scores=scores)


def no_marks_error(row_number):
    return NoValidMarksError(row_number, f'Row {row_number}: no subject marks entered.')
