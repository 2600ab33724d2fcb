"""Initial CumpliRos schema

Revision ID: a1c4e7f20b91
Revises:
Create Date: 2026-10-18T09:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = 'a1c4e7f20b91'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    'role': ('OWNER', 'ADMIN', 'ACCOUNTANT', 'MANAGER'),
    'plan': ('BASIC', 'PROFESSIONAL', 'STUDIO'),
    'obligationtype': ('TAX', 'PERMIT', 'INSURANCE', 'INSPECTION', 'DECLARATION', 'RENEWAL', 'OTHER'),
    'obligationstatus': ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'OVERDUE', 'NOT_APPLICABLE'),
    'periodicity': (
        'WEEKLY', 'BIWEEKLY', 'MONTHLY', 'BIMONTHLY', 'QUARTERLY',
        'SEMIANNUAL', 'ANNUAL', 'BIENNIAL', 'ONE_TIME',
    ),
    'templateseverity': ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL'),
    'taskstatus': ('OPEN', 'IN_PROGRESS', 'BLOCKED', 'COMPLETED', 'CANCELLED'),
    'reviewstatus': ('PENDING', 'APPROVED', 'REJECTED'),
    'invitationstatus': ('PENDING', 'ACCEPTED', 'EXPIRED', 'CANCELLED'),
}


def _enum(name: str):
    # Types are created once up front; 'role' is shared by two tables
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _ts(name: str, nullable: bool = True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # --- users & sessions ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'refresh_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False, unique=True),
        _ts('expires_at', nullable=False),
        _ts('revoked_at'),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refresh_tokens_user_id', 'refresh_tokens', ['user_id'])

    op.create_table(
        'password_reset_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False, unique=True),
        _ts('expires_at', nullable=False),
        _ts('used_at'),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_password_reset_tokens_user_id', 'password_reset_tokens', ['user_id'])

    # --- jurisdictions & template catalog ---
    op.create_table(
        'jurisdictions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('country', sa.String(10), nullable=False, server_default='AR'),
        sa.Column('province', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_jurisdictions_code', 'jurisdictions', ['code'], unique=True)

    op.create_table(
        'obligation_templates',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('jurisdiction_id', sa.String(), sa.ForeignKey('jurisdictions.id'), nullable=False),
        sa.Column('template_key', sa.String(), nullable=False),
        sa.Column('rubric', sa.String(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', _enum('obligationtype'), nullable=False),
        sa.Column('default_periodicity', _enum('periodicity'), nullable=False),
        sa.Column('default_due_rule', sa.String(), nullable=True),
        sa.Column('requires_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('required_evidence_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('severity', _enum('templateseverity'), nullable=False, server_default='MEDIUM'),
        sa.Column('references', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('changelog', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_obligation_templates_template_key', 'obligation_templates', ['template_key'], unique=True)
    op.create_index(
        'idx_template_jurisdiction_rubric', 'obligation_templates', ['jurisdiction_id', 'rubric', 'is_active']
    )

    op.create_table(
        'checklist_template_items',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'template_id', sa.String(),
            sa.ForeignKey('obligation_templates.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_checklist_template_items_template_id', 'checklist_template_items', ['template_id'])

    # --- organisations & membership ---
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('cuit', sa.String(13), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('plan', _enum('plan'), nullable=False, server_default='BASIC'),
        sa.Column('threshold_yellow_days', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('threshold_red_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('jurisdiction_id', sa.String(), sa.ForeignKey('jurisdictions.id'), nullable=True),
        sa.Column('retention_months', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_organizations_cuit', 'organizations', ['cuit'], unique=True)
    op.create_index('ix_organizations_active', 'organizations', ['active'])

    op.create_table(
        'user_orgs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'organization_id', sa.String(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('role', _enum('role'), nullable=False),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'organization_id', name='uq_user_org'),
    )
    op.create_index('ix_user_orgs_user_id', 'user_orgs', ['user_id'])
    op.create_index('ix_user_orgs_organization_id', 'user_orgs', ['organization_id'])

    op.create_table(
        'invitations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'organization_id', sa.String(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', _enum('role'), nullable=False),
        sa.Column('token', sa.String(), nullable=False, unique=True),
        sa.Column('status', _enum('invitationstatus'), nullable=False, server_default='PENDING'),
        sa.Column('invited_by_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        _ts('expires_at', nullable=False),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invitations_organization_id', 'invitations', ['organization_id'])
    op.create_index('ix_invitations_email', 'invitations', ['email'])

    op.create_table(
        'locations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'organization_id', sa.String(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('address', sa.String(500), nullable=True),
        sa.Column('rubric', sa.String(255), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_locations_organization_id', 'locations', ['organization_id'])

    # --- obligations, tasks, reviews, documents ---
    op.create_table(
        'obligations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'organization_id', sa.String(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('location_id', sa.String(), sa.ForeignKey('locations.id'), nullable=True),
        sa.Column('template_id', sa.String(), sa.ForeignKey('obligation_templates.id'), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', _enum('obligationtype'), nullable=False),
        sa.Column('status', _enum('obligationstatus'), nullable=False, server_default='PENDING'),
        _ts('due_date', nullable=False),
        sa.Column('recurrence_rule', sa.String(100), nullable=True),
        sa.Column('requires_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('required_evidence_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('owner_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_obligation_org_status', 'obligations', ['organization_id', 'status'])
    op.create_index('idx_obligation_org_due', 'obligations', ['organization_id', 'due_date'])
    op.create_index('idx_obligation_status_due', 'obligations', ['status', 'due_date'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('obligation_id', sa.String(), sa.ForeignKey('obligations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('assigned_to_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', _enum('taskstatus'), nullable=False, server_default='OPEN'),
        _ts('due_date'),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_obligation_id', 'tasks', ['obligation_id'])

    op.create_table(
        'task_items',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('done', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('order', sa.Integer(), nullable=False, server_default='0'),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_items_task_id', 'task_items', ['task_id'])

    op.create_table(
        'reviews',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('obligation_id', sa.String(), sa.ForeignKey('obligations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('reviewer_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', _enum('reviewstatus'), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_reviews_obligation_id', 'reviews', ['obligation_id'])

    op.create_table(
        'documents',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'organization_id', sa.String(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('obligation_id', sa.String(), sa.ForeignKey('obligations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('uploaded_by_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_key', sa.String(500), nullable=False, unique=True),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        _ts('uploaded_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_documents_organization_id', 'documents', ['organization_id'])
    op.create_index('ix_documents_obligation_id', 'documents', ['obligation_id'])
    op.create_index('ix_documents_task_id', 'documents', ['task_id'])
    op.create_index('ix_documents_uploaded_at', 'documents', ['uploaded_at'])

    # --- audit & job bookkeeping ---
    op.create_table(
        'audit_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'organization_id', sa.String(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        _ts('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_org_created', 'audit_events', ['organization_id', 'created_at'])
    op.create_index('idx_audit_entity', 'audit_events', ['entity_type', 'entity_id'])

    op.create_table(
        'job_runs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('job_name', sa.String(50), nullable=False),
        sa.Column('period_key', sa.String(20), nullable=False),
        _ts('started_at', nullable=False),
        _ts('finished_at'),
        sa.Column('summary', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_name', 'period_key', name='uq_job_run_period'),
    )

    # Default jurisdiction, referenced by organisations created before any catalog load
    op.execute(
        "INSERT INTO jurisdictions (id, code, name, country, province, is_active) VALUES "
        "('00000000-0000-0000-0000-000000000001', 'ar-sf-rosario', 'Rosario', 'AR', 'Santa Fe', true)"
    )


def downgrade() -> None:
    for table in (
        'job_runs', 'audit_events', 'documents', 'reviews', 'task_items', 'tasks', 'obligations',
        'locations', 'invitations', 'user_orgs', 'organizations', 'checklist_template_items',
        'obligation_templates', 'jurisdictions', 'password_reset_tokens', 'refresh_tokens', 'users',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in ENUMS:
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
