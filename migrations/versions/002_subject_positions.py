"""Per-subject position on score entries.

Revision ID: 002_subject_positions
Revises: 001_initial
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '002_subject_positions'
down_revision = '001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add the subject rank written by class recomputation."""
    op.execute('ALTER TABLE score_entries ADD COLUMN IF NOT EXISTS subject_position INTEGER')
    op.execute('ALTER TABLE score_entries ADD COLUMN IF NOT EXISTS subject_class_size INTEGER')


def downgrade() -> None:
    """Drop the subject rank columns."""
    op.execute('ALTER TABLE score_entries DROP COLUMN IF EXISTS subject_class_size')
    op.execute('ALTER TABLE score_entries DROP COLUMN IF EXISTS subject_position')
