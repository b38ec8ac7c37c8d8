"""Initial schema for the academic results pipeline.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the results tables, their natural keys and lookup indexes."""

    # Band tables: rules is a list of {min_score, max_score, grade_label, remark, gpa_value};
    # overrides maps subject_name to its own band list.
    op.execute('''CREATE TABLE IF NOT EXISTS grading_schemes (
                    id SERIAL PRIMARY KEY,
                    scheme_name TEXT NOT NULL UNIQUE,
                    rules JSONB NOT NULL DEFAULT '[]'::jsonb,
                    overrides JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # components is an ordered list of {name, max_score}
    op.execute('''CREATE TABLE IF NOT EXISTS assessment_structures (
                    id SERIAL PRIMARY KEY,
                    structure_name TEXT NOT NULL,
                    components JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS academic_classes (
                    id SERIAL PRIMARY KEY,
                    class_name TEXT NOT NULL,
                    grading_scheme_id INTEGER REFERENCES grading_schemes(id) ON DELETE SET NULL,
                    assessment_structure_id INTEGER REFERENCES assessment_structures(id) ON DELETE SET NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Single row for the school-wide defaults.
    op.execute('''CREATE TABLE IF NOT EXISTS school_config (
                    id SERIAL PRIMARY KEY,
                    active_grading_scheme_id INTEGER REFERENCES grading_schemes(id) ON DELETE SET NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS academic_class_students (
                    id SERIAL PRIMARY KEY,
                    class_id INTEGER NOT NULL REFERENCES academic_classes(id) ON DELETE CASCADE,
                    student_id INTEGER NOT NULL,
                    term_id INTEGER NOT NULL,
                    enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(class_id, student_id, term_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS teaching_assignments (
                    id SERIAL PRIMARY KEY,
                    class_id INTEGER NOT NULL REFERENCES academic_classes(id) ON DELETE CASCADE,
                    subject_name TEXT NOT NULL,
                    term_id INTEGER NOT NULL,
                    teacher_id INTEGER,
                    submitted_at TIMESTAMP,
                    is_locked BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(class_id, subject_name, term_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS score_entries (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL,
                    class_id INTEGER NOT NULL REFERENCES academic_classes(id) ON DELETE CASCADE,
                    subject_name TEXT NOT NULL,
                    term_id INTEGER NOT NULL,
                    component_scores JSONB NOT NULL DEFAULT '{}'::jsonb,
                    total_score DOUBLE PRECISION,
                    grade_label TEXT,
                    remark TEXT,
                    gpa_value DOUBLE PRECISION,
                    ungraded_reason TEXT,
                    entered_by_user_id INTEGER,
                    last_modified_by_user_id INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(student_id, class_id, subject_name, term_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS student_term_reports (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL,
                    term_id INTEGER NOT NULL,
                    class_id INTEGER,
                    average_score DOUBLE PRECISION,
                    total_score DOUBLE PRECISION,
                    subjects_count INTEGER NOT NULL DEFAULT 0,
                    position_in_class INTEGER,
                    class_size INTEGER,
                    percentile DOUBLE PRECISION,
                    is_published BOOLEAN NOT NULL DEFAULT FALSE,
                    published_at TIMESTAMP,
                    computed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(student_id, term_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS audit_log (
                    id SERIAL PRIMARY KEY,
                    actor_user_id INTEGER,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_score_entries_class_term ON score_entries(class_id, term_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_score_entries_student_term ON score_entries(student_id, term_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_assignments_class_term ON teaching_assignments(class_id, term_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_class_students_student_term ON academic_class_students(student_id, term_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_reports_term_published ON student_term_reports(term_id, is_published)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_audit_log_resource ON audit_log(resource_type, resource_id)')


def downgrade() -> None:
    """Drop the results tables."""
    for table in (
        'audit_log',
        'student_term_reports',
        'score_entries',
        'teaching_assignments',
        'academic_class_students',
        'school_config',
        'academic_classes',
        'assessment_structures',
        'grading_schemes',
    ):
        op.execute(f'DROP TABLE IF EXISTS {table}')
