"""Explicit row model for comprehensive results sheets.

A sheet carries a closed set of location/student columns plus one column per
subject. Subject columns are only accepted when they name a live Subject of
the target grade; anything else is ignored and reported.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from name_matching import normalize_header, normalize_name
from upload_errors import ParseError

FIELD_HEADERS = {
    'school_code': ('school code', 'code'),
    'school_name': ('school name', 'school'),
    'cluster_name': ('location', 'cluster'),
    'region_name': ('region',),
    'student_number': ('student number', 'index number'),
    'student_name': ('student name', 'name'),
}
REQUIRED_FIELDS = ('school_name', 'student_name')
TEMPLATE_HEADERS = ['School Code', 'School Name', 'Location', 'Region', 'Student Number', 'Student Name']


@dataclass
class SubjectColumn:
    header: str
    subject_id: int
    name: str
    max_score: float = 100
    passing_score: float = 50

    def to_dict(self):
        return {
            'header': self.header,
            'subject_id': self.subject_id,
            'name': self.name,
            'max_score': self.max_score,
            'passing_score': self.passing_score,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(**data)


@dataclass
class ResultRow:
    """One bound data row: known fields plus raw subject cells keyed by header."""

    row_number: int
    school_code: str = ''
    school_name: str = ''
    cluster_name: str = ''
    region_name: str = ''
    student_number: str = ''
    student_name: str = ''
    marks: Dict[str, str] = field(default_factory=dict)


def subject_lookup(subjects):
    """Map normalized Latin and Arabic subject names to subject records."""
    lookup = {}
    for subject in subjects:
        for label in (subject.get('name'), subject.get('arabic_name')):
            key = normalize_name(label)
            if key:
                lookup.setdefault(key, subject)
    return lookup


@dataclass
class RowSchema:
    field_headers: Dict[str, str]
    subject_columns: List[SubjectColumn]
    ignored_columns: List[str]

    @classmethod
    def from_headers(cls, headers, subjects):
        """Bind sheet headers to known fields and to the grade's subjects."""
        alias_to_field = {alias: name for name, aliases in FIELD_HEADERS.items() for alias in aliases}
        by_subject = subject_lookup(subjects)
        field_headers = {}
        subject_columns = []
        seen_subjects = set()
        ignored = []
        for header in headers:
            if not header:
                continue
            field_name = alias_to_field.get(normalize_header(header))
            if field_name and field_name not in field_headers:
                field_headers[field_name] = header
                continue
            subject = by_subject.get(normalize_name(header))
            if subject and subject['id'] not in seen_subjects:
                seen_subjects.add(subject['id'])
                subject_columns.append(SubjectColumn(
                    header=header,
                    subject_id=subject['id'],
                    name=subject.get('name') or header,
                    max_score=float(subject.get('max_score') or 100),
                    passing_score=float(subject.get('passing_score') or 50),
                ))
                continue
            ignored.append(header)

        missing = [name for name in REQUIRED_FIELDS if name not in field_headers]
        if missing:
            labels = ', '.join(f'"{FIELD_HEADERS[name][0].title()}"' for name in missing)
            raise ParseError(f'CSV must include {labels} column(s).')
        return cls(field_headers=field_headers, subject_columns=subject_columns, ignored_columns=ignored)

    def bind(self, parsed_row):
        values = parsed_row.values
        known = {name: (values.get(header) or '').strip() for name, header in self.field_headers.items()}
        marks = {column.header: (values.get(column.header) or '').strip() for column in self.subject_columns}
        return ResultRow(row_number=parsed_row.row_number, marks=marks, **known)

