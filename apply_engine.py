"""Confirm pass: materialize an analyzed upload.

Every row is applied in its own transaction. Entities are looked up again
right before they are created, so anything created since the preview (by an
earlier row of this batch or by other traffic) is matched instead of
duplicated, and re-applying the same file only updates results.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from entity_resolver import TIER_MATCHED
from mark_validator import MARKS_INVALID, MARKS_NONE, MARKS_VALID, grade_for_score
from name_matching import normalize_name, split_student_name, student_name_key
from reconciliation import ROW_UNMATCHED_LOCATION
from reference_repository import RESULT_PUBLISHED
from upload_errors import AmbiguousMatchError, RowApplyError, UnresolvedLocationError, UnresolvedStudentError

logger = logging.getLogger(__name__)

SUMMARY_COUNTERS = (
    'regions_created',
    'clusters_created',
    'schools_created',
    'students_created',
    'students_matched',
    'results_created',
    'results_updated',
    'results_locked',
    'rows_applied',
    'rows_failed',
    'rows_skipped_no_marks',
    'rows_skipped_invalid_marks',
    'rows_skipped_unmatched',
    'rows_resolved_by_hint',
)


def _optional_id(value):
    text = str(value if value is not None else '').strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        raise ValueError(f'"{text}" is not a valid id.')


@dataclass
class LocationHints:
    """Confirm-time defaults for rows with a blank Region or Location cell."""

    default_region_id: Optional[int] = None
    default_cluster_id: Optional[int] = None

    @classmethod
    def from_values(cls, default_region_id=None, default_cluster_id=None):
        return cls(
            default_region_id=_optional_id(default_region_id),
            default_cluster_id=_optional_id(default_cluster_id),
        )

    def __bool__(self):
        return self.default_region_id is not None or self.default_cluster_id is not None


class ApplyEngine:
    def __init__(self, repository, analysis, provisioner=None, hints=None):
        self.repository = repository
        self.analysis = analysis
        self.policy = analysis.policy
        self.provisioner = provisioner
        self.hints = hints or LocationHints()
        self.counts = Counter()
        self.row_errors = []
        self.credentials = []
        # Ids known to be committed, keyed by tier scope and normalized name.
        self._known_ids = {}

    def run(self):
        for row in self.analysis.rows:
            self._apply_row(row)
        summary = {name: self.counts[name] for name in SUMMARY_COUNTERS}
        summary['total_rows'] = self.analysis.total_rows
        summary['structural_error_rows'] = len(self.analysis.structural_errors)
        summary['row_errors'] = self.row_errors
        summary['credentials'] = self.credentials
        logger.info(
            'Applied results upload %s: rows_applied=%s results_created=%s results_updated=%s row_errors=%s',
            self.analysis.filename or '<unnamed>',
            summary['rows_applied'], summary['results_created'], summary['results_updated'], len(self.row_errors),
        )
        return summary

    def _applicable(self, row):
        if row.resolved:
            return True
        return row.classification == ROW_UNMATCHED_LOCATION and row.resolution.hintable and bool(self.hints)

    def _apply_row(self, row):
        if not self._applicable(row):
            self.counts['rows_skipped_unmatched'] += 1
            return

        tally = Counter()
        pending_ids = {}
        created_schools = []
        notices = []
        try:
            with self.repository.transaction() as c:
                self._write_row(c, row, tally, pending_ids, created_schools, notices)
        except Exception as exc:
            logger.warning('Results upload row %s failed: %s', row.row_number, exc)
            self.counts['rows_failed'] += 1
            self.row_errors.append(RowApplyError(
                row.row_number, f'Row {row.row_number}: {exc}', error=type(exc).__name__).to_dict())
            return

        # Only committed work is counted or remembered.
        self.counts.update(tally)
        self.row_errors.extend(notices)
        self._known_ids.update(pending_ids)
        self.counts['rows_applied'] += 1
        if not row.resolved:
            self.counts['rows_resolved_by_hint'] += 1
        if row.mark_status == MARKS_NONE:
            self.counts['rows_skipped_no_marks'] += 1
        elif row.mark_status == MARKS_INVALID:
            self.counts['rows_skipped_invalid_marks'] += 1
        for school_id, school_name in created_schools:
            if self.provisioner is not None:
                self.credentials.append(self.provisioner.provision(school_id, school_name))

    def _write_row(self, c, row, tally, pending_ids, created_schools, notices):
        fields = row.row
        resolution = row.resolution
        if not normalize_name(fields.school_name):
            raise UnresolvedLocationError(row.row_number, 'School name is blank.')
        if not student_name_key(*split_student_name(fields.student_name)):
            raise UnresolvedStudentError(row.row_number, 'Student name is blank.')
        region_id = self._region_id(c, row, tally, pending_ids)
        cluster_id = self._cluster_id(c, row, region_id, tally, pending_ids)

        if resolution.school.status == TIER_MATCHED:
            school_id = resolution.school.id
        else:
            school_id, created = self._find_or_create(
                c, ('school', cluster_id, normalize_name(fields.school_name)), pending_ids,
                find=lambda: self.repository.find_schools(c, cluster_id, fields.school_name),
                create=lambda: self.repository.create_school(c, {
                    'name': fields.school_name,
                    'code': fields.school_code,
                    'address': fields.cluster_name,
                    'region_id': region_id,
                    'cluster_id': cluster_id,
                }),
                allowed=self.policy.schools,
                label=f'school "{fields.school_name}"',
                row_number=row.row_number,
            )
            if created:
                tally['schools_created'] += 1
                created_schools.append((school_id, fields.school_name))

        student_id = self._student_id(c, row, school_id, tally, pending_ids)
        if row.mark_status == MARKS_VALID:
            self._upsert_results(c, row, student_id, tally, notices)

    def _find_or_create(self, c, key, pending_ids, find, create, allowed, label, row_number):
        """Return ``(id, created)`` for one entity scope, creating it only if still missing."""
        if key in self._known_ids:
            return self._known_ids[key], False
        if key in pending_ids:
            return pending_ids[key], False
        found = find()
        if len(found) > 1:
            raise AmbiguousMatchError(f'More than one {label} exists; fix the duplicates first.')
        if found:
            pending_ids[key] = int(found[0]['id'])
            return pending_ids[key], False
        if not allowed:
            raise UnresolvedLocationError(row_number, f'{label} does not exist and creation is disabled.')
        pending_ids[key] = create()
        return pending_ids[key], True

    def _hint_cluster(self, c, row_number):
        if self.hints.default_cluster_id is None:
            return None
        cluster = self.repository.get_cluster(c, self.hints.default_cluster_id)
        if cluster is None:
            raise UnresolvedLocationError(
                row_number, f'Default location {self.hints.default_cluster_id} does not exist.')
        return cluster

    def _region_id(self, c, row, tally, pending_ids):
        fields = row.row
        tier = row.resolution.region
        if tier.status == TIER_MATCHED:
            return tier.id
        if fields.region_name:
            region_id, created = self._find_or_create(
                c, ('region', normalize_name(fields.region_name)), pending_ids,
                find=lambda: self.repository.find_regions(c, fields.region_name),
                create=lambda: self.repository.create_region(c, fields.region_name),
                allowed=self.policy.regions,
                label=f'region "{fields.region_name}"',
                row_number=row.row_number,
            )
            if created:
                tally['regions_created'] += 1
            return region_id
        if self.hints.default_region_id is not None:
            region = self.repository.get_region(c, self.hints.default_region_id)
            if region is None:
                raise UnresolvedLocationError(
                    row.row_number, f'Default region {self.hints.default_region_id} does not exist.')
            return int(region['id'])
        cluster = self._hint_cluster(c, row.row_number)
        if cluster is None:
            raise UnresolvedLocationError(row.row_number, 'Region is blank and no default region was given.')
        return int(cluster['region_id'])

    def _cluster_id(self, c, row, region_id, tally, pending_ids):
        fields = row.row
        tier = row.resolution.cluster
        if tier.status == TIER_MATCHED:
            return tier.id
        if fields.cluster_name:
            cluster_id, created = self._find_or_create(
                c, ('cluster', region_id, normalize_name(fields.cluster_name)), pending_ids,
                find=lambda: self.repository.find_clusters(c, region_id, fields.cluster_name),
                create=lambda: self.repository.create_cluster(c, region_id, fields.cluster_name),
                allowed=self.policy.clusters,
                label=f'location "{fields.cluster_name}"',
                row_number=row.row_number,
            )
            if created:
                tally['clusters_created'] += 1
            return cluster_id
        cluster = self._hint_cluster(c, row.row_number)
        if cluster is None:
            raise UnresolvedLocationError(row.row_number, 'Location is blank and no default location was given.')
        if int(cluster['region_id']) != int(region_id):
            raise UnresolvedLocationError(
                row.row_number, f'Default location {cluster["id"]} is not in the row\'s region.')
        return int(cluster['id'])

    def _student_id(self, c, row, school_id, tally, pending_ids):
        tier = row.resolution.student
        if tier.status == TIER_MATCHED:
            tally['students_matched'] += 1
            return tier.id
        first_name, last_name = split_student_name(row.row.student_name)
        key = student_name_key(first_name, last_name)
        if not key:
            raise UnresolvedStudentError(row.row_number, 'Student name is blank.')

        def create():
            index_number = (row.row.student_number or '').strip() or None
            if index_number and self.repository.index_number_in_use(c, index_number):
                index_number = None
            return self.repository.create_student(c, {
                'index_number': index_number,
                'first_name': first_name,
                'last_name': last_name,
                'grade': self.analysis.grade,
                'school_id': school_id,
                'exam_year_id': self.analysis.exam_year_id,
            })

        student_id, created = self._find_or_create(
            c, ('student', school_id, key), pending_ids,
            find=lambda: self.repository.find_students(c, school_id, self.analysis.grade, first_name, last_name),
            create=create,
            allowed=self.policy.students,
            label=f'student "{row.row.student_name}"',
            row_number=row.row_number,
        )
        tally['students_created' if created else 'students_matched'] += 1
        return student_id

    def _upsert_results(self, c, row, student_id, tally, notices):
        exam_year_id = self.analysis.exam_year_id
        for column in self.analysis.subject_columns:
            if column.subject_id not in row.scores:
                continue
            score = row.scores[column.subject_id]
            fields = {
                'student_id': student_id,
                'subject_id': column.subject_id,
                'exam_year_id': exam_year_id,
                'total_score': score,
                'grade': grade_for_score(score, column.max_score),
            }
            existing = self.repository.get_result(c, student_id, column.subject_id, exam_year_id)
            if existing is None:
                self.repository.insert_result(c, fields)
                tally['results_created'] += 1
            elif existing.get('status') == RESULT_PUBLISHED:
                tally['results_locked'] += 1
                notices.append(RowApplyError(
                    row.row_number,
                    f'Row {row.row_number}: {column.name} result is published and was not changed.',
                    error='ResultLocked',
                    subject=column.name,
                ).to_dict())
            else:
                self.repository.update_result(c, existing['id'], fields)
                tally['results_updated'] += 1


def has_applicable_rows(analysis, hints=None):
    """True when confirming ``analysis`` with ``hints`` would write anything."""
    summary = analysis.summary()
    return summary['resolved_rows'] > 0 or (summary['hintable_rows'] > 0 and bool(hints))


def apply_analysis(analysis, repository, provisioner=None, hints=None):
    return ApplyEngine(repository, analysis, provisioner=provisioner, hints=hints).run()


def apply_session(token, store, repository, provisioner=None, hints=None):
    """Consume the session behind ``token`` and apply it.

    Session errors propagate before anything is written.
    """
    analysis = store.consume(token)
    return apply_analysis(analysis, repository, provisioner=provisioner, hints=hints)
