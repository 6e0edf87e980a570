"""create_monitoring_tables

Revision ID: a1c4e7f20b93
Revises:
Create Date: 2026-10-18 12:00:00.000000

Device registry, motion event log, monitoring sessions, alerts and
notification attempts.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'a1c4e7f20b93'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


contact_role = sa.Enum('patient', 'caregiver', name='contactrole')
motion_event_type = sa.Enum('DETECTED', 'NOT_DETECTED', name='motioneventtype')
session_state = sa.Enum('WATCHING', 'CHECKING_IN', 'ESCALATED', 'RESOLVED', name='sessionstate')
resolution_reason = sa.Enum(
    'motion_resumed', 'acknowledged', 'caregiver_acknowledged', 'manual',
    name='resolutionreason',
)
alert_severity = sa.Enum('low', 'medium', 'high', 'critical', name='alertseverity')
alert_status = sa.Enum('active', 'acknowledged', 'resolved', name='alertstatus')
notification_purpose = sa.Enum('check_in', 'escalation', name='notificationpurpose')
attempt_status = sa.Enum('sent', 'failed', 'retrying', 'exhausted', name='attemptstatus')


def upgrade() -> None:
    # --- registry (read-only for the monitoring core) ---
    op.create_table(
        'devices',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('patient_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(100), nullable=False, server_default=''),
        sa.Column('location', sa.String(100), nullable=False, server_default=''),
        sa.Column('inactivity_threshold_seconds', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('escalation_delay_seconds', sa.Integer(), nullable=False, server_default='600'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_devices_patient_id', 'devices', ['patient_id'])

    op.create_table(
        'care_contacts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('patient_id', sa.String(64), nullable=False),
        sa.Column('role', contact_role, nullable=False),
        sa.Column('display_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('address', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_care_contacts_patient_id', 'care_contacts', ['patient_id'])
    op.create_index('ix_care_contacts_address', 'care_contacts', ['address'])

    # --- motion_events ---
    op.create_table(
        'motion_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('device_id', sa.String(64), nullable=False),
        sa.Column('event_type', motion_event_type, nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('out_of_order', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint(
            'device_id', 'occurred_at', 'event_type',
            name='uq_motion_events_device_occurred_type',
        ),
    )
    op.create_index('ix_motion_events_device_occurred', 'motion_events', ['device_id', 'occurred_at'])

    # --- monitoring_sessions ---
    op.create_table(
        'monitoring_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('device_id', sa.String(64), nullable=False),
        sa.Column('patient_id', sa.String(64), nullable=False),
        sa.Column('state', session_state, nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('inactivity_started_at', sa.DateTime(), nullable=False),
        sa.Column('inactivity_threshold_seconds', sa.Integer(), nullable=False),
        sa.Column('escalation_delay_seconds', sa.Integer(), nullable=False),
        sa.Column('last_event_at', sa.DateTime(), nullable=False),
        sa.Column('checkin_sent_at', sa.DateTime(), nullable=True),
        sa.Column('escalation_started_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolution_reason', resolution_reason, nullable=True),
        sa.Column('delivery_failed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    # At most one unresolved session per device
    op.create_index(
        'uq_monitoring_sessions_device_unresolved', 'monitoring_sessions', ['device_id'],
        unique=True,
        postgresql_where=sa.text('resolved_at IS NULL'),
        sqlite_where=sa.text('resolved_at IS NULL'),
    )
    op.create_index('ix_monitoring_sessions_state', 'monitoring_sessions', ['state'])
    op.create_index('ix_monitoring_sessions_patient', 'monitoring_sessions', ['patient_id'])

    # --- alerts ---
    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(),
                  sa.ForeignKey('monitoring_sessions.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('patient_id', sa.String(64), nullable=False),
        sa.Column('device_id', sa.String(64), nullable=False),
        sa.Column('alert_type', sa.String(40), nullable=False),
        sa.Column('severity', alert_severity, nullable=False),
        sa.Column('status', alert_status, nullable=False),
        sa.Column('message', sa.String(500), nullable=False, server_default=''),
        sa.Column('notified_targets', sa.JSON(), nullable=False),
        sa.Column('delivery_failed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('acknowledged_by', sa.String(100), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_alerts_status', 'alerts', ['status'])
    op.create_index('ix_alerts_patient_created', 'alerts', ['patient_id', 'created_at'])

    # --- notification_attempts ---
    op.create_table(
        'notification_attempts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(),
                  sa.ForeignKey('monitoring_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('alert_id', sa.Integer(),
                  sa.ForeignKey('alerts.id', ondelete='CASCADE'), nullable=True),
        sa.Column('purpose', notification_purpose, nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('target', sa.String(100), nullable=False),
        sa.Column('status', attempt_status, nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(500), nullable=True),
        sa.Column('provider_message_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            'session_id', 'purpose', 'target',
            name='uq_notification_attempts_session_purpose_target',
        ),
    )


def downgrade() -> None:
    op.drop_table('notification_attempts')
    op.drop_index('ix_alerts_patient_created', table_name='alerts')
    op.drop_index('ix_alerts_status', table_name='alerts')
    op.drop_table('alerts')
    op.drop_index('ix_monitoring_sessions_patient', table_name='monitoring_sessions')
    op.drop_index('ix_monitoring_sessions_state', table_name='monitoring_sessions')
    op.drop_index('uq_monitoring_sessions_device_unresolved', table_name='monitoring_sessions')
    op.drop_table('monitoring_sessions')
    op.drop_index('ix_motion_events_device_occurred', table_name='motion_events')
    op.drop_table('motion_events')
    op.drop_index('ix_care_contacts_address', table_name='care_contacts')
    op.drop_index('ix_care_contacts_patient_id', table_name='care_contacts')
    op.drop_table('care_contacts')
    op.drop_index('ix_devices_patient_id', table_name='devices')
    op.drop_table('devices')

    bind = op.get_bind()
    for enum_type in (
        attempt_status, notification_purpose, alert_status, alert_severity,
        resolution_reason, session_state, motion_event_type, contact_role,
    ):
        enum_type.drop(bind, checkfirst=True)
