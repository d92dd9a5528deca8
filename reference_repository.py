"""PostgreSQL access to the entity tables the upload reconciles against.

Preview reads one ``ReferenceSnapshot`` per upload. Confirm works through
``transaction()`` handles, re-reading each scope immediately before it
creates anything so rows created by other traffic since the preview are
matched instead of duplicated.
"""

import re
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from db import db_connection, db_execute
from name_matching import normalize_name, student_name_key


RESULT_PENDING = 'pending'
RESULT_VALIDATED = 'validated'
RESULT_PUBLISHED = 'published'

SCHOOL_DEFAULTS = {
    'registrar_name': 'Auto Import',
    'school_type': 'LBS',
    'status': 'approved',
}


@dataclass
class ReferenceSnapshot:
    regions: List[dict] = field(default_factory=list)
    clusters: List[dict] = field(default_factory=list)
    schools: List[dict] = field(default_factory=list)
    students: List[dict] = field(default_factory=list)
    subjects: List[dict] = field(default_factory=list)


def _rows(cursor):
    return [dict(row) for row in cursor.fetchall()]


def make_code(name, length=6):
    """Short unique-ish code for provisioned regions/clusters/schools."""
    prefix = re.sub(r'[^A-Za-z0-9]+', '', name or '').upper()[:3] or 'GEN'
    return f'{prefix}{secrets.token_hex(length // 2).upper()}'[:10]


def _same_name(records, name, key='name'):
    target = normalize_name(name)
    return [record for record in records if target and normalize_name(record.get(key)) == target]


class PostgresReferenceRepository:
    """Entity reads and writes used by the results upload pipeline."""

    def load_snapshot(self, grade):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(c, 'SELECT id, name FROM regions ORDER BY id')
            regions = _rows(c)
            db_execute(c, 'SELECT id, name, region_id FROM clusters ORDER BY id')
            clusters = _rows(c)
            db_execute(c, 'SELECT id, name, cluster_id, region_id FROM schools ORDER BY id')
            schools = _rows(c)
            db_execute(
                c,
                '''SELECT id, first_name, last_name, school_id, grade
                   FROM students
                   WHERE grade = ?
                   ORDER BY id''',
                (grade,),
            )
            students = _rows(c)
        return ReferenceSnapshot(
            regions=regions,
            clusters=clusters,
            schools=schools,
            students=students,
            subjects=self.load_subjects(grade),
        )

    def load_subjects(self, grade):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''SELECT id, name, arabic_name, grade, max_score, passing_score
                   FROM subjects
                   WHERE grade = ? AND COALESCE(is_active, TRUE)
                   ORDER BY name''',
                (grade,),
            )
            return _rows(c)

    def get_exam_year(self, exam_year_id):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(c, 'SELECT id, year, name FROM exam_years WHERE id = ?', (exam_year_id,))
            row = c.fetchone()
        return dict(row) if row else None

    @contextmanager
    def transaction(self):
        """One unit of work; committed on success, rolled back on error."""
        with db_connection(commit=True) as conn:
            yield conn.cursor()

    # Regions and clusters

    def get_region(self, c, region_id):
        db_execute(c, 'SELECT id, name FROM regions WHERE id = ?', (region_id,))
        row = c.fetchone()
        return dict(row) if row else None

    def find_regions(self, c, name):
        db_execute(c, 'SELECT id, name FROM regions')
        return _same_name(_rows(c), name)

    def create_region(self, c, name):
        db_execute(
            c,
            'INSERT INTO regions (name, code) VALUES (?, ?) RETURNING id',
            (name.strip(), make_code(name)),
        )
        return int(c.fetchone()[0])

    def get_cluster(self, c, cluster_id):
        db_execute(c, 'SELECT id, name, region_id FROM clusters WHERE id = ?', (cluster_id,))
        row = c.fetchone()
        return dict(row) if row else None

    def find_clusters(self, c, region_id, name):
        db_execute(c, 'SELECT id, name, region_id FROM clusters WHERE region_id = ?', (region_id,))
        return _same_name(_rows(c), name)

    def create_cluster(self, c, region_id, name):
        db_execute(
            c,
            'INSERT INTO clusters (name, code, region_id) VALUES (?, ?, ?) RETURNING id',
            (name.strip(), make_code(name), region_id),
        )
        return int(c.fetchone()[0])

    # Schools and students

    def find_schools(self, c, cluster_id, name):
        db_execute(c, 'SELECT id, name, cluster_id, region_id FROM schools WHERE cluster_id = ?', (cluster_id,))
        return _same_name(_rows(c), name)

    def create_school(self, c, fields):
        name = fields['name'].strip()
        db_execute(
            c,
            '''INSERT INTO schools
               (name, code, registrar_name, email, address, school_type, region_id, cluster_id,
                status, is_email_verified, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (
                name,
                (fields.get('code') or '').strip() or make_code(name),
                SCHOOL_DEFAULTS['registrar_name'],
                f'import_{secrets.token_hex(6)}@temp.local',
                (fields.get('address') or '').strip() or 'Unknown',
                SCHOOL_DEFAULTS['school_type'],
                fields['region_id'],
                fields['cluster_id'],
                SCHOOL_DEFAULTS['status'],
                True,
                datetime.now(),
            ),
        )
        return int(c.fetchone()[0])

    def find_students(self, c, school_id, grade, first_name, last_name):
        db_execute(
            c,
            'SELECT id, first_name, last_name, school_id, grade FROM students WHERE school_id = ? AND grade = ?',
            (school_id, grade),
        )
        target = student_name_key(first_name, last_name)
        return [
            row for row in _rows(c)
            if target and student_name_key(row.get('first_name'), row.get('last_name')) == target
        ]

    def index_number_in_use(self, c, index_number):
        db_execute(c, 'SELECT 1 FROM students WHERE index_number = ? LIMIT 1', (index_number,))
        return c.fetchone() is not None

    def create_student(self, c, fields):
        db_execute(
            c,
            '''INSERT INTO students
               (index_number, first_name, last_name, grade, school_id, exam_year_id, status, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (
                fields.get('index_number') or None,
                fields['first_name'],
                fields.get('last_name') or '',
                fields['grade'],
                fields['school_id'],
                fields['exam_year_id'],
                'approved',
                datetime.now(),
            ),
        )
        return int(c.fetchone()[0])

    # Results

    def get_result(self, c, student_id, subject_id, exam_year_id):
        db_execute(
            c,
            '''SELECT id, status, total_score
               FROM student_results
               WHERE student_id = ? AND subject_id = ? AND exam_year_id = ?
               FOR UPDATE''',
            (student_id, subject_id, exam_year_id),
        )
        row = c.fetchone()
        return dict(row) if row else None

    def insert_result(self, c, fields):
        db_execute(
            c,
            '''INSERT INTO student_results
               (student_id, subject_id, exam_year_id, exam_score, total_score, grade, status, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (
                fields['student_id'],
                fields['subject_id'],
                fields['exam_year_id'],
                fields['total_score'],
                fields['total_score'],
                fields['grade'],
                RESULT_PENDING,
                datetime.now(),
            ),
        )
        return int(c.fetchone()[0])

    def update_result(self, c, result_id, fields):
        # Status is left alone so a validated result never regresses.
        db_execute(
            c,
            '''UPDATE student_results
               SET exam_score = ?, total_score = ?, grade = ?, updated_at = ?
               WHERE id = ?''',
            (fields['total_score'], fields['total_score'], fields['grade'], datetime.now(), result_id),
        )

    # School logins

    def find_user(self, c, username):
        db_execute(c, 'SELECT id, username FROM users WHERE LOWER(username) = LOWER(?) LIMIT 1', (username,))
        row = c.fetchone()
        return dict(row) if row else None

    def create_user(self, c, username, password_hash, role, school_id):
        db_execute(
            c,
            '''INSERT INTO users (username, password_hash, role, school_id)
               VALUES (?, ?, ?, ?)''',
            (username, password_hash, role, str(school_id)),
        )
