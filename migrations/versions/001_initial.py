"""Initial schema for the examination results upload.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the location hierarchy, rosters, results and upload sessions."""

    op.execute('''CREATE TABLE IF NOT EXISTS regions (
                    id SERIAL PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    code TEXT UNIQUE NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Cluster names are only unique inside their region
    op.execute('''CREATE TABLE IF NOT EXISTS clusters (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    code TEXT NOT NULL,
                    region_id INTEGER NOT NULL REFERENCES regions(id) ON DELETE RESTRICT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS exam_years (
                    id SERIAL PRIMARY KEY,
                    year INTEGER NOT NULL,
                    name TEXT,
                    is_active BOOLEAN DEFAULT TRUE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS schools (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    code TEXT NOT NULL,
                    registrar_name TEXT,
                    email TEXT UNIQUE,
                    phone TEXT,
                    address TEXT,
                    school_type TEXT DEFAULT 'LBS',
                    region_id INTEGER NOT NULL REFERENCES regions(id) ON DELETE RESTRICT,
                    cluster_id INTEGER NOT NULL REFERENCES clusters(id) ON DELETE RESTRICT,
                    status TEXT DEFAULT 'pending',
                    is_email_verified BOOLEAN DEFAULT FALSE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS students (
                    id SERIAL PRIMARY KEY,
                    index_number TEXT UNIQUE,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL DEFAULT '',
                    grade INTEGER NOT NULL,
                    school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
                    exam_year_id INTEGER REFERENCES exam_years(id),
                    status TEXT DEFAULT 'pending',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS subjects (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    code TEXT UNIQUE NOT NULL,
                    arabic_name TEXT,
                    grade INTEGER NOT NULL,
                    max_score NUMERIC(6, 2) DEFAULT 100,
                    passing_score NUMERIC(6, 2) DEFAULT 50,
                    is_active BOOLEAN DEFAULT TRUE
                )''')

    # Status only moves forward: pending -> validated -> published
    op.execute('''CREATE TABLE IF NOT EXISTS student_results (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    exam_year_id INTEGER NOT NULL REFERENCES exam_years(id) ON DELETE CASCADE,
                    first_term_score NUMERIC(6, 2),
                    exam_score NUMERIC(6, 2),
                    total_score NUMERIC(6, 2),
                    grade TEXT,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'validated', 'published')),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Logins, including those provisioned for schools created by an upload
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT DEFAULT 'school_admin',
                    school_id TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS reconciliation_sessions (
                    token TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    touched_at TIMESTAMP NOT NULL,
                    consumed_at TIMESTAMP
                )''')

    op.execute('CREATE UNIQUE INDEX IF NOT EXISTS uq_clusters_region_name ON clusters(region_id, LOWER(name))')
    op.execute('CREATE INDEX IF NOT EXISTS idx_schools_cluster ON schools(cluster_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_students_school_grade ON students(school_id, grade)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_subjects_grade ON subjects(grade)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_users_username_lower ON users(LOWER(username))')
    op.execute('CREATE INDEX IF NOT EXISTS idx_reconciliation_sessions_touched ON reconciliation_sessions(touched_at)')
    op.execute('''CREATE UNIQUE INDEX IF NOT EXISTS uq_student_results_student_subject_year
                  ON student_results(student_id, subject_id, exam_year_id)''')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS reconciliation_sessions CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
    op.execute('DROP TABLE IF EXISTS student_results CASCADE')
    op.execute('DROP TABLE IF EXISTS subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS students CASCADE')
    op.execute('DROP TABLE IF EXISTS schools CASCADE')
    op.execute('DROP TABLE IF EXISTS exam_years CASCADE')
    op.execute('DROP TABLE IF EXISTS clusters CASCADE')
    op.execute('DROP TABLE IF EXISTS regions CASCADE')
