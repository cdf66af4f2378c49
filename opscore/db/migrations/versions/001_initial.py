"""initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates tenancy, request workflow, audit and outbox tables.
Status columns are plain VARCHAR (non-native enums).
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

ROLES = ('employee', 'manager', 'ceo', 'admin')
REQUEST_STATUSES = ('open', 'closed', 'rejected', 'archived')
STEP_STATUSES = (
    'queued', 'in_progress', 'done_pending_approval', 'on_hold', 'info_required',
    'approved', 'returned', 'rejected', 'canceled',
)
APPROVAL_MODES = ('manual', 'auto')
OUTBOX_STATUSES = ('queued', 'processing', 'sent', 'failed')


def _enum(values, name, length=32):
    return sa.Enum(*values, name=name, native_enum=False, length=length)


def upgrade() -> None:
    op.create_table('companies',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )

    op.create_table('departments',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('code', sa.String(50)),
        sa.Column('accepts_external_requests', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('company_id', 'name', name='uq_department_company_name'),
    )

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('full_name', sa.String(255)),
        sa.Column('job_title', sa.String(255)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_system_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('active_company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table('memberships',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('role', _enum(ROLES, 'membershiprole'), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('company_id', 'user_id', name='uq_membership_company_user'),
        sa.CheckConstraint(
            "(role IN ('admin', 'ceo') AND department_id IS NULL) OR "
            "(role IN ('employee', 'manager') AND department_id IS NOT NULL)",
            name='ck_membership_department_by_role',
        ),
    )

    op.create_table('request_types',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('default_priority', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('company_id', 'name', name='uq_request_type_company_name'),
        sa.CheckConstraint('default_priority BETWEEN 1 AND 4', name='ck_request_type_priority'),
    )

    op.create_table('department_request_type_settings',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('request_type_id', sa.Integer(), sa.ForeignKey('request_types.id'), nullable=False),
        sa.Column('approval_mode', _enum(APPROVAL_MODES, 'approvalmode', 16), nullable=False),
        sa.Column('auto_close', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('default_next_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('department_id', 'request_type_id', name='uq_dept_request_type_setting'),
    )

    op.create_table('requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('reference_code', sa.String(32), unique=True, index=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('request_type_id', sa.Integer(), sa.ForeignKey('request_types.id'), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('requester_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('origin_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2)),
        sa.Column('currency', sa.String(3)),
        sa.Column('cost_center', sa.String(100)),
        sa.Column('project_code', sa.String(100)),
        sa.Column('external_ref', sa.String(255)),
        sa.Column('category', sa.String(100)),
        sa.Column('risk_level', sa.String(20)),
        sa.Column('request_status', _enum(REQUEST_STATUSES, 'requeststatus'), nullable=False, index=True),
        sa.Column('workflow_status', sa.String(32)),
        sa.Column('current_step_id', sa.Integer(), nullable=True),
        sa.Column('due_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('closed_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint('priority BETWEEN 1 AND 4', name='ck_request_priority'),
    )
    op.create_index('ix_requests_company_status', 'requests', ['company_id', 'request_status'])

    op.create_table('request_steps',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=False, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('step_no', sa.Integer(), nullable=False),
        sa.Column('from_department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False, index=True),
        sa.Column('assigned_to', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('status', _enum(STEP_STATUSES, 'stepstatus'), nullable=False, index=True),
        sa.Column('resume_status', _enum(STEP_STATUSES, 'stepstatus'), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('started_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('completion_notes', sa.Text()),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approval_notes', sa.Text()),
        sa.Column('auto_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('returned_at', sa.DateTime(timezone=True)),
        sa.Column('return_reason', sa.Text()),
        sa.Column('status_notes', sa.Text()),
        sa.Column('status_changed_at', sa.DateTime(timezone=True)),
        sa.Column('due_at', sa.DateTime(timezone=True)),
        sa.Column('related_step_id', sa.Integer(), sa.ForeignKey('request_steps.id'), nullable=True),
        sa.UniqueConstraint('request_id', 'step_no', name='uq_request_step_no'),
    )
    op.create_foreign_key(
        'fk_request_current_step', 'requests', 'request_steps', ['current_step_id'], ['id']
    )

    op.create_table('request_comments',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=False, index=True),
        sa.Column('step_id', sa.Integer(), sa.ForeignKey('request_steps.id'), nullable=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )

    op.create_table('request_attachments',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=False, index=True),
        sa.Column('step_id', sa.Integer(), sa.ForeignKey('request_steps.id'), nullable=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('uploaded_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('storage_bucket', sa.String(255), nullable=False, server_default='request-attachments'),
        sa.Column('storage_path', sa.String(1024), nullable=False),
        sa.Column('file_name', sa.String(500), nullable=False),
        sa.Column('mime_type', sa.String(255)),
        sa.Column('byte_size', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )

    op.create_table('audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('table_name', sa.String(100), nullable=False, index=True),
        sa.Column('action', sa.String(10), nullable=False),
        sa.Column('record_pk', sa.String(64)),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=True, index=True),
        sa.Column('step_id', sa.Integer(), sa.ForeignKey('request_steps.id'), nullable=True),
        sa.Column('old_data', sa.JSON()),
        sa.Column('new_data', sa.JSON()),
        sa.Column('changed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_audit_log_company_changed_at', 'audit_log', ['company_id', 'changed_at'])

    op.create_table('request_events',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=False, index=True),
        sa.Column('step_id', sa.Integer(), sa.ForeignKey('request_steps.id'), nullable=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('message', sa.Text()),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('meta_data', sa.JSON()),
    )

    op.create_table('notification_outbox',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False, index=True),
        sa.Column('channel', sa.String(20), nullable=False, server_default='email'),
        sa.Column('to_email', sa.String(255)),
        sa.Column('subject', sa.String(500)),
        sa.Column('body', sa.Text()),
        sa.Column('status', _enum(OUTBOX_STATUSES, 'outboxstatus', 16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True)),
        sa.Column('locked_at', sa.DateTime(timezone=True)),
        sa.Column('locked_by', sa.String(100)),
        sa.Column('error', sa.Text()),
        sa.Column('sent_at', sa.DateTime(timezone=True)),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_outbox_status_next_attempt', 'notification_outbox', ['status', 'next_attempt_at'])


def downgrade() -> None:
    op.drop_index('ix_outbox_status_next_attempt', table_name='notification_outbox')
    op.drop_table('notification_outbox')
    op.drop_table('request_events')
    op.drop_index('ix_audit_log_company_changed_at', table_name='audit_log')
    op.drop_table('audit_log')
    op.drop_table('request_attachments')
    op.drop_table('request_comments')
    op.drop_constraint('fk_request_current_step', 'requests', type_='foreignkey')
    op.drop_table('request_steps')
    op.drop_index('ix_requests_company_status', table_name='requests')
    op.drop_table('requests')
    op.drop_table('department_request_type_settings')
    op.drop_table('request_types')
    op.drop_table('memberships')
    op.drop_table('users')
    op.drop_table('departments')
    op.drop_table('companies')
