"""Initial migration - create all tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates all database tables for Baton Attendance:
- sessions: Class sessions owned by a teacher (ACTIVE -> ENDED)
- enrollments: Students who joined a session, with the exit-verified flag
- chains: Custody chains with holder, hop count and optimistic-lock version
- scan_log: Append-only log of every hand-off attempt
- snapshots: Named timestamp markers for bounded traces
- final_statuses: Attendance verdicts written once per ended session

Timestamps are stored as naive UTC.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Sessions Table ────────────────────────────────────────
    op.create_table(
        'sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('teacher_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('state', sa.Text(), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sessions_teacher_id', 'sessions', ['teacher_id'])

    # ── Enrollments Table ─────────────────────────────────────
    op.create_table(
        'enrollments',
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sessions.id'), primary_key=True),
        sa.Column('student_id', sa.Text(), primary_key=True),
        sa.Column('enrolled_at', sa.DateTime(), nullable=False),
        sa.Column('exit_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('exit_verified_at', sa.DateTime(), nullable=True),
    )

    # ── Chains Table ──────────────────────────────────────────
    op.create_table(
        'chains',
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sessions.id'), primary_key=True),
        sa.Column('chain_id', sa.String(36), primary_key=True),
        sa.Column('phase', sa.Text(), nullable=False),
        sa.Column('chain_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('state', sa.Text(), nullable=False, server_default='ACTIVE'),
        sa.Column('initial_holder_id', sa.Text(), nullable=False),
        sa.Column('holder_id', sa.Text(), nullable=True),
        sa.Column('final_holder_id', sa.Text(), nullable=True),
        sa.Column('hop_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('break_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_chains_session_phase_state', 'chains', ['session_id', 'phase', 'state'])

    # One ACTIVE chain per student, session and phase
    op.create_index('ux_chains_active_holder', 'chains', ['session_id', 'phase', 'holder_id'],
                    unique=True,
                    postgresql_where=sa.text("state = 'ACTIVE'"),
                    sqlite_where=sa.text("state = 'ACTIVE'"))

    # ── Scan Log Table ────────────────────────────────────────
    op.create_table(
        'scan_log',
        sa.Column('seq', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(36), nullable=False),
        sa.Column('chain_id', sa.String(36), nullable=False),
        sa.Column('from_student_id', sa.Text(), nullable=False),
        sa.Column('to_student_id', sa.Text(), nullable=False),
        sa.Column('attempted_at', sa.DateTime(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.Column('outcome', sa.Text(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['session_id', 'chain_id'],
                                ['chains.session_id', 'chains.chain_id']),
    )

    # Ordered reads per chain: insertion sequence
    op.create_index('ix_scan_log_chain', 'scan_log', ['session_id', 'chain_id', 'seq'])

    # ── Snapshots Table ───────────────────────────────────────
    op.create_table(
        'snapshots',
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sessions.id'), primary_key=True),
        sa.Column('snapshot_id', sa.String(36), primary_key=True),
        sa.Column('snapshot_index', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('label', sa.Text(), nullable=True),
        sa.Column('taken_at', sa.DateTime(), nullable=False),
    )

    # ── Final Statuses Table ──────────────────────────────────
    op.create_table(
        'final_statuses',
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sessions.id'), primary_key=True),
        sa.Column('student_id', sa.Text(), primary_key=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('entry_participation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('exit_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('late_participation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_table('final_statuses')
    op.drop_table('snapshots')
    op.drop_index('ix_scan_log_chain', table_name='scan_log')
    op.drop_table('scan_log')
    op.drop_index('ux_chains_active_holder', table_name='chains')
    op.drop_index('ix_chains_session_phase_state', table_name='chains')
    op.drop_table('chains')
    op.drop_table('enrollments')
    op.drop_index('ix_sessions_teacher_id', table_name='sessions')
    op.drop_table('sessions')
