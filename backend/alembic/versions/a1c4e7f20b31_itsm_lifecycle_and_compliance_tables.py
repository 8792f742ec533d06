"""ITSM lifecycle records, incident links, audit log and compliance measurements

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-19T09:12:44.310518
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1c4e7f20b31'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIFECYCLE_TABLES = ('changes', 'problems', 'releases', 'service_requests')


def _lifecycle_columns():
    return [
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('state', sa.String(), nullable=False),
        sa.Column('priority', sa.String(), nullable=False, server_default='Medium'),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('requested_by', sa.String(), nullable=True),
        sa.Column('approved_by', sa.String(), nullable=True),
        sa.Column('implemented_by', sa.String(), nullable=True),
        sa.Column('timestamps', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('approvals', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('due_by', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    ]


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False, server_default=''),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.Enum('ADMINISTRATOR', 'OPERATOR', 'USER', name='userrole'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # --- lifecycle records ---
    for table in LIFECYCLE_TABLES:
        op.create_table(table, *_lifecycle_columns())
        op.create_index(f'ix_{table}_state', table, ['state'])
        op.create_index(f'ix_{table}_priority', table, ['priority'])
        op.create_index(f'ix_{table}_category', table, ['category'])

    # --- incident_problem_links ---
    op.create_table(
        'incident_problem_links',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('problem_id', sa.Integer(), sa.ForeignKey('problems.id'), nullable=False),
        sa.Column('incident_ref', sa.String(), nullable=False),
        sa.Column('relationship_type', sa.String(), nullable=False, server_default='caused_by'),
        sa.Column('linked_by', sa.String(), nullable=True),
        sa.Column('linked_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('problem_id', 'incident_ref', name='uq_problem_incident'),
    )
    op.create_index('ix_incident_problem_links_problem_id', 'incident_problem_links', ['problem_id'])

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_type', sa.Enum(
            'ENTITY_CREATED', 'ENTITY_TRANSITIONED', 'ENTITY_DELETED',
            'PROBLEM_LINKED', 'MEASUREMENT_RECORDED', name='auditeventtype',
        ), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('actor_role', sa.String(), nullable=True),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=True),
        sa.Column('from_state', sa.String(), nullable=True),
        sa.Column('to_state', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('idx_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])
    op.create_index('idx_audit_event_timestamp', 'audit_logs', ['event_type', 'timestamp'])

    # --- sla_measurements ---
    op.create_table(
        'sla_measurements',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('service_name', sa.String(), nullable=False),
        sa.Column('metric_name', sa.String(), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('target_value', sa.Float(), nullable=False),
        sa.Column('actual_value', sa.Float(), nullable=True),
        sa.Column('warning_band', sa.Float(), nullable=True),
        sa.Column('unit', sa.String(), nullable=False, server_default=''),
        sa.Column('measured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sla_measurements_service_name', 'sla_measurements', ['service_name'])
    op.create_index('ix_sla_measurements_measured_at', 'sla_measurements', ['measured_at'])

    # --- availability_records ---
    op.create_table(
        'availability_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('service_name', sa.String(), nullable=False),
        sa.Column('availability_target', sa.Float(), nullable=False),
        sa.Column('uptime_percent', sa.Float(), nullable=True),
        sa.Column('warning_band', sa.Float(), nullable=True),
        sa.Column('major_incidents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minor_incidents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('measured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_availability_records_service_name', 'availability_records', ['service_name'])
    op.create_index('ix_availability_records_measured_at', 'availability_records', ['measured_at'])

    # --- capacity_records ---
    op.create_table(
        'capacity_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('resource_name', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('current_usage', sa.Float(), nullable=True),
        sa.Column('max_capacity', sa.Float(), nullable=False),
        sa.Column('threshold_warning', sa.Float(), nullable=False, server_default='80'),
        sa.Column('threshold_critical', sa.Float(), nullable=False, server_default='90'),
        sa.Column('forecast_3_months', sa.Float(), nullable=True),
        sa.Column('forecast_6_months', sa.Float(), nullable=True),
        sa.Column('forecast_12_months', sa.Float(), nullable=True),
        sa.Column('measured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_capacity_records_resource_name', 'capacity_records', ['resource_name'])
    op.create_index('ix_capacity_records_measured_at', 'capacity_records', ['measured_at'])


def downgrade() -> None:
    op.drop_table('capacity_records')
    op.drop_table('availability_records')
    op.drop_table('sla_measurements')
    op.drop_table('audit_logs')
    op.drop_table('incident_problem_links')
    for table in reversed(LIFECYCLE_TABLES):
        op.drop_table(table)
    op.drop_table('users')
    sa.Enum(name='auditeventtype').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='userrole').drop(op.get_bind(), checkfirst=True)
