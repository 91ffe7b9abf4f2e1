"""create_grading_tables

Revision ID: a7c3e9f1d2b4
Revises:
Create Date: 2026-10-19 10:12:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a7c3e9f1d2b4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    print("--- [Grader] Creating quiz / submission snapshot tables ---")
    op.create_table(
        'quiz',
        sa.Column('quiz_id', sa.String(64), nullable=False),
        sa.Column('document', JSONType, nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('quiz_id')
    )
    op.create_table(
        'submission',
        sa.Column('submission_id', sa.String(64), nullable=False),
        sa.Column('quiz_id', sa.String(64), nullable=False),
        sa.Column('student_id', sa.String(64), nullable=False),
        sa.Column('answers', JSONType, nullable=False),
        sa.Column('graded_answers', JSONType, nullable=True),
        sa.Column('status', sa.String(20), nullable=False),  # submitted / queued / processing / completed / error
        sa.Column('total_score', sa.Integer(), nullable=True),
        sa.Column('max_score', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('submission_id')
    )
    op.create_index('ix_submission_quiz_id', 'submission', ['quiz_id'])
    op.create_index('ix_submission_student_id', 'submission', ['student_id'])

    print("--- [Grader] Creating shuffle_assignment / grading_job tables ---")
    op.create_table(
        'shuffle_assignment',
        sa.Column('student_id', sa.String(64), nullable=False),
        sa.Column('quiz_id', sa.String(64), nullable=False),
        sa.Column('assignment', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('student_id', 'quiz_id')
    )
    op.create_table(
        'grading_job',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('submission_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),  # queued / active / completed / failed
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('submission_id', name='uq_grading_job_submission')
    )
    op.create_index('ix_grading_job_status_run_at', 'grading_job', ['status', 'run_at'])
    print("--- [Grader] Grading tables created successfully ---")


def downgrade() -> None:
    print("--- [Grader] Dropping grading tables ---")
    op.drop_index('ix_grading_job_status_run_at', table_name='grading_job')
    op.drop_table('grading_job')
    op.drop_table('shuffle_assignment')
    op.drop_index('ix_submission_student_id', table_name='submission')
    op.drop_index('ix_submission_quiz_id', table_name='submission')
    op.drop_table('submission')
    op.drop_table('quiz')
    print("--- [Grader] Grading tables dropped ---")
