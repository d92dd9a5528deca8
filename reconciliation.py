"""Preview pass of the comprehensive results upload.

``analyze_upload`` parses the sheet, binds it to the grade's subjects,
resolves every row against a read-only snapshot and validates its marks. The
resulting ``UploadAnalysis`` is what the session store keeps between preview
and confirm, so everything on it round-trips through ``to_dict``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from csv_rows import parse_delimited
from entity_resolver import CreationPolicy, EntityResolver, ReferenceIndex, RowResolution
from mark_validator import MARKS_INVALID, MARKS_NONE, MARKS_VALID, no_marks_error, validate_marks
from row_schema import ResultRow, RowSchema, SubjectColumn
from upload_errors import UnresolvedLocationError, UnresolvedStudentError

logger = logging.getLogger(__name__)

ROW_MATCHED = 'matched'
ROW_UNMATCHED_LOCATION = 'unmatched_location'
ROW_UNMATCHED_STUDENT = 'unmatched_student'
ROW_INVALID_MARKS = 'invalid_marks'
ROW_NO_MARKS = 'no_marks'
RESOLVED_CLASSIFICATIONS = (ROW_MATCHED, ROW_INVALID_MARKS, ROW_NO_MARKS)


@dataclass
class RowAnalysis:
    """Everything the preview learned about one data row."""

    row_number: int
    values: Dict[str, str]
    row: ResultRow
    resolution: RowResolution
    mark_status: str
    scores: Dict[int, float] = field(default_factory=dict)
    errors: List[dict] = field(default_factory=list)
    classification: str = ROW_MATCHED

    @property
    def resolved(self):
        return self.classification in RESOLVED_CLASSIFICATIONS

    @property
    def writes_results(self):
        return self.classification == ROW_MATCHED

    @property
    def issue(self):
        return '; '.join(error['message'] for error in self.errors)

    def to_dict(self):
        return {
            'row_number': self.row_number,
            'values': dict(self.values),
            'row': {
                'school_code': self.row.school_code,
                'school_name': self.row.school_name,
                'cluster_name': self.row.cluster_name,
                'region_name': self.row.region_name,
                'student_number': self.row.student_number,
                'student_name': self.row.student_name,
                'marks': dict(self.row.marks),
            },
            'resolution': self.resolution.to_dict(),
            'mark_status': self.mark_status,
            # JSON object keys are strings, so keep scores as pairs.
            'scores': [[subject_id, score] for subject_id, score in self.scores.items()],
            'errors': list(self.errors),
            'classification': self.classification,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            row_number=data['row_number'],
            values=dict(data['values']),
            row=ResultRow(row_number=data['row_number'], **data['row']),
            resolution=RowResolution.from_dict(data['resolution']),
            mark_status=data['mark_status'],
            scores={int(subject_id): float(score) for subject_id, score in data['scores']},
            errors=list(data['errors']),
            classification=data['classification'],
        )


@dataclass
class UploadAnalysis:
    grade: int
    exam_year_id: int
    filename: str
    headers: List[str]
    subject_columns: List[SubjectColumn]
    ignored_columns: List[str]
    rows: List[RowAnalysis]
    structural_errors: List[dict]
    policy: CreationPolicy
    created_at: Optional[str] = None

    @property
    def total_rows(self):
        return len(self.rows) + len(self.structural_errors)

    def rows_in(self, *classifications):
        return [row for row in self.rows if row.classification in classifications]

    def summary(self):
        return summarize(self)

    def to_dict(self):
        return {
            'grade': self.grade,
            'exam_year_id': self.exam_year_id,
            'filename': self.filename,
            'headers': list(self.headers),
            'subject_columns': [column.to_dict() for column in self.subject_columns],
            'ignored_columns': list(self.ignored_columns),
            'rows': [row.to_dict() for row in self.rows],
            'structural_errors': list(self.structural_errors),
            'policy': self.policy.to_dict(),
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            grade=int(data['grade']),
            exam_year_id=int(data['exam_year_id']),
            filename=data.get('filename') or '',
            headers=list(data['headers']),
            subject_columns=[SubjectColumn.from_dict(item) for item in data['subject_columns']],
            ignored_columns=list(data['ignored_columns']),
            rows=[RowAnalysis.from_dict(item) for item in data['rows']],
            structural_errors=list(data['structural_errors']),
            policy=CreationPolicy.from_dict(data.get('policy')),
            created_at=data.get('created_at'),
        )


def classify_row(resolution, mark_status):
    if not resolution.location_resolved:
        return ROW_UNMATCHED_LOCATION
    if resolution.student.unresolved:
        return ROW_UNMATCHED_STUDENT
    if mark_status == MARKS_INVALID:
        return ROW_INVALID_MARKS
    if mark_status == MARKS_NONE:
        return ROW_NO_MARKS
    return ROW_MATCHED


def _location_error(row_number, resolution):
    for tier_name, tier in resolution.tiers()[:3]:
        if tier.unresolved and tier.reason != 'parent_unresolved':
            return UnresolvedLocationError(
                row_number, f'Row {row_number}: {tier.message}', tier=tier_name, reason=tier.reason)
    return UnresolvedLocationError(row_number, f'Row {row_number}: location could not be resolved.')


def analyze_row(parsed_row, schema, resolver):
    row = schema.bind(parsed_row)
    resolution = resolver.resolve(row)
    marks = validate_marks(row, schema.subject_columns)
    classification = classify_row(resolution, marks.status)

    errors = []
    if classification == ROW_UNMATCHED_LOCATION:
        errors.append(_location_error(row.row_number, resolution).to_dict())
    elif classification == ROW_UNMATCHED_STUDENT:
        errors.append(UnresolvedStudentError(
            row.row_number,
            f'Row {row.row_number}: {resolution.student.message}',
            reason=resolution.student.reason,
        ).to_dict())
    # Mark problems are kept for every row so the exports stay complete after a location hint.
    errors.extend(error.to_dict() for error in marks.errors)
    if marks.status == MARKS_NONE:
        errors.append(no_marks_error(row.row_number).to_dict())

    return RowAnalysis(
        row_number=row.row_number,
        values=parsed_row.values,
        row=row,
        resolution=resolution,
        mark_status=marks.status,
        scores=marks.scores if marks.status == MARKS_VALID else {},
        errors=errors,
        classification=classification,
    )


def analyze_upload(content, grade, exam_year_id, repository, policy=None, filename=''):
    """Run the read-only preview pass and return an ``UploadAnalysis``.

    Raises ``ParseError`` when the sheet cannot be used at all.
    """
    policy = policy or CreationPolicy()
    table = parse_delimited(content)
    snapshot = repository.load_snapshot(grade)
    schema = RowSchema.from_headers(table.headers, snapshot.subjects)
    resolver = EntityResolver(ReferenceIndex(snapshot, grade), policy)

    rows = [analyze_row(parsed_row, schema, resolver) for parsed_row in table.rows]
    analysis = UploadAnalysis(
        grade=int(grade),
        exam_year_id=int(exam_year_id),
        filename=filename,
        headers=[header for header in table.headers if header],
        subject_columns=schema.subject_columns,
        ignored_columns=schema.ignored_columns,
        rows=rows,
        structural_errors=[error.to_dict() for error in table.structural_errors],
        policy=policy,
        created_at=datetime.now().isoformat(timespec='seconds'),
    )
    logger.info(
        'Analyzed results upload %s: grade=%s exam_year=%s rows=%s',
        filename or '<unnamed>', grade, exam_year_id, analysis.total_rows,
    )
    return analysis


def _distinct(rows, tier_name):
    existing, new = set(), set()
    for row in rows:
        tier = getattr(row.resolution, tier_name)
        if tier.matched:
            existing.add(tier.key)
        elif tier.to_create:
            new.add(tier.key)
    return len(existing), len(new)


def summarize(analysis):
    """Aggregate counters shown on the preview screen.

    Entity counters only consider rows that resolve fully, so they describe
    exactly what confirm would match or create without location hints.
    """
    counts = {name: 0 for name in (
        ROW_MATCHED, ROW_UNMATCHED_LOCATION, ROW_UNMATCHED_STUDENT, ROW_INVALID_MARKS, ROW_NO_MARKS)}
    for row in analysis.rows:
        counts[row.classification] += 1

    summary = {
        'total_rows': analysis.total_rows,
        'matched_rows': counts[ROW_MATCHED],
        'unmatched_location_rows': counts[ROW_UNMATCHED_LOCATION],
        'unmatched_student_rows': counts[ROW_UNMATCHED_STUDENT],
        'invalid_marks_rows': counts[ROW_INVALID_MARKS],
        'no_marks_rows': counts[ROW_NO_MARKS],
        'structural_error_rows': len(analysis.structural_errors),
        'hintable_rows': sum(1 for row in analysis.rows_in(ROW_UNMATCHED_LOCATION) if row.resolution.hintable),
    }
    resolved = analysis.rows_in(*RESOLVED_CLASSIFICATIONS)
    summary['resolved_rows'] = len(resolved)
    for tier_name, label in (('region', 'regions'), ('cluster', 'clusters'),
                             ('school', 'schools'), ('student', 'students')):
        existing, new = _distinct(resolved, tier_name)
        summary[f'existing_{label}_count'] = existing
        summary[f'new_{label}_count'] = new
    summary['subject_columns'] = [column.name for column in analysis.subject_columns]
    summary['ignored_columns'] = list(analysis.ignored_columns)
    summary['can_confirm'] = summary['resolved_rows'] > 0 or summary['hintable_rows'] > 0
    return summary
